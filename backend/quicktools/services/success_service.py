"""ゲスト購入完了 (Stripe Checkoutからのブラウザ復帰)

会員 (User) が作成されるのはここだけ。ブラウザからの「成功」は信用せず、
Stripe APIでCheckout Sessionを取り直して支払い済みを確認してから作成する。
失敗理由は粗いコードでしか返さない (PendingCheckoutの有効性を探られないため)。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quicktools.core.clock import utcnow
from quicktools.core.logging import get_logger
from quicktools.core.security import decrypt, verify_hash
from quicktools.models.user import User
from quicktools.services import pending_checkout_service, stripe_service
from quicktools.services.webhook_service import upsert_customer

logger = get_logger(__name__)

MISSING_SESSION = "missing_session"
INVALID_MODE = "invalid_mode"
NOT_PAID = "not_paid"
MISSING_CHECKOUT = "missing_checkout"
EXPIRED_CHECKOUT = "expired_checkout"
VERIFY_FAILED = "verify_failed"


@dataclass
class GuestCheckoutOutcome:
    user: Optional[User] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.user is not None


def _fail(code: str) -> GuestCheckoutOutcome:
    return GuestCheckoutOutcome(error=code)


def _get(obj, key: str):
    value = obj.get(key) if obj is not None else None
    return value if isinstance(value, str) and value else None


def _customer_id(session) -> Optional[str]:
    customer = session.get("customer")
    if isinstance(customer, str) and customer:
        return customer
    if customer is not None and hasattr(customer, "get"):
        return _get(customer, "id")
    return None


def _upsert_pro_user(db: Session, email: str, now: datetime) -> User:
    """会員作成 or 既存会員をProに更新 (flushのみ)

    同一メールの並行作成でunique制約に当たった場合は IntegrityError をそのまま送出し、
    呼び出し側のロールバックで PendingCheckout の消費も取り消す (再試行可能)。
    """
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        user = User(email=email)
        db.add(user)
    user.plan = "pro"
    user.is_pro = True
    user.pro_valid_until = None
    user.last_login_at = now
    db.flush()
    return user


def complete_guest_checkout(
    db: Session,
    session_id: str,
    mode: str,
    token: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GuestCheckoutOutcome:
    """Stripe Checkout Session IDからゲスト購入を確定し会員を返す

    token (success URLに載せた平文トークン) が渡された場合はハッシュ照合も行う。
    """
    if not session_id:
        return _fail(MISSING_SESSION)

    try:
        session = stripe_service.retrieve_checkout_session(session_id)
    except Exception as e:
        logger.warning("Checkout Session取得失敗", extra={"extra_data": stripe_service.sanitize_stripe_error(e)})
        return _fail(VERIFY_FAILED)

    if session.get("mode") != "subscription":
        return _fail(INVALID_MODE)
    if session.get("payment_status") != "paid":
        return _fail(NOT_PAID)

    pending_id = _get(session.get("metadata"), "pendingCheckoutId") or _get(session, "client_reference_id")
    if pending_id is None:
        return _fail(MISSING_CHECKOUT)

    now = now or utcnow()
    pending = pending_checkout_service.get_pending_checkout(db, pending_id, mode)
    if pending is None:
        return _fail(MISSING_CHECKOUT)
    if pending.checkout_session_id and pending.checkout_session_id != session_id:
        logger.warning(f"PendingCheckoutとSessionの不一致: pending={pending_id}")
        return _fail(MISSING_CHECKOUT)
    if token is not None and not verify_hash(token, pending.token_hash):
        logger.warning(f"PendingCheckoutトークン不一致: pending={pending_id}")
        return _fail(MISSING_CHECKOUT)
    if not pending_checkout_service.is_consumable(pending, now):
        return _fail(EXPIRED_CHECKOUT)

    encrypted_email = pending.encrypted_email
    try:
        # 使い捨て: 条件付きUPDATEで勝った1リクエストだけが会員化まで進む
        if not pending_checkout_service.claim(db, pending_id, mode, now):
            db.rollback()
            return _fail(EXPIRED_CHECKOUT)

        email = decrypt(encrypted_email)
        user = _upsert_pro_user(db, email, now)

        customer_id = _customer_id(session)
        if customer_id:
            upsert_customer(db, user.id, customer_id, mode)

        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"ゲスト購入完了: 会員作成が競合 pending_checkout_id={pending_id}")
        return _fail(VERIFY_FAILED)
    except Exception:
        db.rollback()
        raise

    db.refresh(user)
    logger.info(f"ゲスト購入完了: user_id={user.id}, pending_checkout_id={pending_id}")
    return GuestCheckoutOutcome(user=user)
