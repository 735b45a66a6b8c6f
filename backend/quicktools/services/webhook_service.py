"""Stripe Webhook処理

1イベント = 1トランザクション:
  台帳 (stripe_webhook_events) へのINSERT と 業務テーブルの更新 は同時にcommitされる。
  途中で失敗すれば台帳もロールバックされ、Stripeの再送で再処理できる。
"""
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quicktools.core.clock import from_stripe_ts
from quicktools.core.exceptions import WebhookSignatureError
from quicktools.core.logging import get_logger
from quicktools.core.security import decrypt
from quicktools.models.pending_checkout import PendingCheckout
from quicktools.models.stripe_customer import StripeCustomer
from quicktools.models.stripe_subscription import StripeSubscription
from quicktools.models.stripe_webhook_event import StripeWebhookEvent
from quicktools.models.user import User
from quicktools.schemas.billing import WebhookResult
from quicktools.services import entitlement_service, stripe_service

logger = get_logger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = (
    "invoice.payment_failed",
    "invoice.payment_succeeded",
    "invoice.paid",
)


# =========================================================
# ペイロード読み取りヘルパー
# =========================================================

def _as_id(value) -> Optional[str]:
    """Stripe ID (文字列 or 展開済みオブジェクト) → 文字列ID"""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        inner = value.get("id")
        if isinstance(inner, str) and inner:
            return inner
    return None


def _as_str(obj: dict, key: str) -> Optional[str]:
    value = obj.get(key)
    return value if isinstance(value, str) and value else None


def _event_mode(event: dict, endpoint_mode: str) -> str:
    livemode = event.get("livemode")
    if isinstance(livemode, bool):
        return "live" if livemode else "test"
    return endpoint_mode


# =========================================================
# エントリポイント
# =========================================================

def verify_event(payload: bytes, sig_header: Optional[str], secret: str) -> dict:
    """署名検証 (DBアクセス前)。失敗は WebhookSignatureError"""
    if not sig_header:
        raise WebhookSignatureError("Missing stripe-signature")
    try:
        event = stripe_service.construct_webhook_event(payload, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError("Invalid signature") from e
    except ValueError as e:
        raise WebhookSignatureError("Invalid payload") from e
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookSignatureError("Invalid payload")
    return event


def process_webhook(
    db: Session,
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    mode: str,
) -> WebhookResult:
    """署名検証 → 台帳による重複排除 → イベント種別ごとの同期"""
    event = verify_event(payload, sig_header, secret)
    return process_event(db, event, mode)


def process_event(db: Session, event: dict, mode: str) -> WebhookResult:
    """検証済みイベントを1トランザクションで処理"""
    event_id = event["id"]
    event_type = event["type"]
    event_mode = _event_mode(event, mode)

    try:
        db.add(StripeWebhookEvent(event_id=event_id, event_type=event_type, mode=event_mode))
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Stripe webhook重複スキップ: {event_id} ({event_type}, mode={event_mode})")
            return WebhookResult(status="duplicate", event_id=event_id, event_type=event_type)

        if event_mode != mode:
            # 別モードのイベントは台帳に記録するだけで業務データには触れない
            logger.warning(f"Stripe webhookモード不一致: event={event_id}, event_mode={event_mode}, mode={mode}")
        else:
            _dispatch(db, event_type, event.get("data", {}).get("object") or {}, mode)

        db.commit()
    except Exception:
        db.rollback()
        raise

    return WebhookResult(status="processed", event_id=event_id, event_type=event_type)


def _dispatch(db: Session, event_type: str, data: dict, mode: str) -> None:
    if not isinstance(data, dict):
        return
    if event_type == "checkout.session.completed":
        _handle_checkout_completed(db, data, mode)
    elif event_type in SUBSCRIPTION_EVENTS:
        _handle_subscription_changed(db, data, mode)
    elif event_type in INVOICE_EVENTS:
        _handle_invoice(db, data, mode)
    else:
        logger.info(f"未処理のStripeイベント: {event_type}")


# =========================================================
# 共通処理
# =========================================================

def _find_customer(db: Session, stripe_customer_id: str) -> Optional[StripeCustomer]:
    return db.query(StripeCustomer).filter(
        StripeCustomer.stripe_customer_id == stripe_customer_id
    ).first()


def upsert_customer(db: Session, user_id: int, stripe_customer_id: str, mode: str) -> Optional[StripeCustomer]:
    """StripeCustomerをuser_id単位でupsert (flushのみ)

    既存レコードとモードが異なる場合、または他ユーザーに紐付いたCustomer IDの場合は
    何もせずNoneを返す (マージしない)。
    """
    customer = db.query(StripeCustomer).filter(StripeCustomer.user_id == user_id).first()
    if customer is not None and customer.mode != mode:
        logger.warning(f"StripeCustomerモード不一致のため更新しない: user_id={user_id}")
        return None

    owner = _find_customer(db, stripe_customer_id)
    if owner is not None and owner.user_id != user_id:
        logger.warning(f"Stripe Customerが別ユーザーに紐付き済み: customer={stripe_customer_id}")
        return None

    if customer is None:
        customer = StripeCustomer(user_id=user_id, stripe_customer_id=stripe_customer_id, mode=mode)
        db.add(customer)
    else:
        customer.stripe_customer_id = stripe_customer_id
    db.flush()
    return customer


def _resolve_checkout_user(db: Session, session: dict, mode: str) -> Optional[User]:
    """checkout.session.completed の支払者を解決

    ログイン済み購入: metadata.userId (なければ client_reference_id)
    ゲスト購入: client_reference_id は PendingCheckout ID なのでユーザーIDとして扱わない。
      success コールバックで既に会員化済み (used_at あり) の場合のみメールから解決する。
    """
    metadata = session.get("metadata") or {}
    pending_id = _as_str(metadata, "pendingCheckoutId")

    if pending_id is None:
        raw_user_id = _as_str(metadata, "userId") or _as_str(session, "client_reference_id")
        if raw_user_id is None or not raw_user_id.isdigit():
            return None
        return db.query(User).filter(User.id == int(raw_user_id)).first()

    pending = db.query(PendingCheckout).filter(
        PendingCheckout.id == pending_id,
        PendingCheckout.mode == mode,
    ).first()
    if pending is None or pending.used_at is None:
        logger.info(f"checkout.session.completed: ゲスト購入は未会員化のためスキップ pending={pending_id}")
        return None
    email = decrypt(pending.encrypted_email)
    return db.query(User).filter(User.email == email).first()


# =========================================================
# イベントハンドラ
# =========================================================

def _handle_checkout_completed(db: Session, session: dict, mode: str) -> None:
    """checkout.session.completed: Customer紐付け + 暫定Pro (確定は subscription.* で行う)"""
    customer_id = _as_id(session.get("customer"))
    if not customer_id:
        logger.warning("checkout.session.completed: customer なし")
        return

    user = _resolve_checkout_user(db, session, mode)
    if user is None:
        return

    if upsert_customer(db, user.id, customer_id, mode) is None:
        return

    user.plan = "pro"
    user.is_pro = True
    user.pro_valid_until = None
    logger.info(f"Checkout完了: user_id={user.id}, mode={mode}")


def _first_price(subscription: dict) -> tuple[Optional[str], Optional[str]]:
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if not data or not isinstance(data[0], dict):
        return None, None
    price = data[0].get("price")
    if not isinstance(price, dict):
        return None, None
    return _as_str(price, "id"), _as_id(price.get("product"))


def _period_bound(subscription: dict, key: str):
    """current_period_* は新しいAPIバージョンでは items.data[0] 側にある"""
    value = from_stripe_ts(subscription.get(key))
    if value is not None:
        return value
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if data and isinstance(data[0], dict):
        return from_stripe_ts(data[0].get(key))
    return None


def _handle_subscription_changed(db: Session, subscription: dict, mode: str) -> None:
    """customer.subscription.*: サブスクリプション同期 + 権限再計算"""
    stripe_sub_id = _as_str(subscription, "id")
    status = _as_str(subscription, "status")
    customer_id = _as_id(subscription.get("customer"))
    if not stripe_sub_id or not status or not customer_id:
        logger.warning("subscription event: id/status/customer 不足")
        return

    customer = _find_customer(db, customer_id)
    if customer is None:
        logger.info(f"subscription event: 未知のCustomer customer={customer_id}")
        return
    if customer.mode != mode:
        logger.warning(f"subscription event: モード不一致のためスキップ customer={customer_id}")
        return

    sub = db.query(StripeSubscription).filter(StripeSubscription.user_id == customer.user_id).first()
    same_subscription = sub is not None and sub.stripe_subscription_id == stripe_sub_id

    price_id, product_id = _first_price(subscription)
    values = {
        "stripe_subscription_id": stripe_sub_id,
        "stripe_customer_id": customer_id,
        "stripe_product_id": product_id,
        "stripe_price_id": price_id,
        "status": status,
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
        "mode": mode,
        # 終了系の日時はイベントの値をそのまま反映 (Noneで解除される)
        "canceled_at": from_stripe_ts(subscription.get("canceled_at")),
        "ended_at": from_stripe_ts(subscription.get("ended_at")),
        "trial_end": from_stripe_ts(subscription.get("trial_end")),
    }
    # 請求期間は同じサブスクリプションで値が来なかった場合のみ既存値を残す
    for key in ("current_period_start", "current_period_end"):
        value = _period_bound(subscription, key)
        if value is not None or not same_subscription:
            values[key] = value

    if sub is None:
        sub = StripeSubscription(user_id=customer.user_id, **values)
        db.add(sub)
    else:
        for column, value in values.items():
            setattr(sub, column, value)
    db.flush()

    user = db.query(User).filter(User.id == customer.user_id).first()
    if user is None:
        return
    entitlement = entitlement_service.compute_entitlement(sub, mode)
    entitlement_service.apply_entitlement(user, entitlement)
    logger.info(
        f"サブスクリプション同期: user_id={user.id}, status={status}, is_pro={entitlement.is_pro}"
    )


def _handle_invoice(db: Session, invoice: dict, mode: str) -> None:
    """invoice.*: 最新請求の状態のみ記録 (権限の再計算は subscription.* に任せる)"""
    customer_id = _as_id(invoice.get("customer"))
    subscription_id = _as_id(invoice.get("subscription"))
    if subscription_id is None:
        # 新しいAPIバージョンでは parent.subscription_details.subscription
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") if isinstance(parent, dict) else None
        if isinstance(details, dict):
            subscription_id = _as_id(details.get("subscription"))
    if not customer_id or not subscription_id:
        return

    customer = _find_customer(db, customer_id)
    if customer is None or customer.mode != mode:
        return

    updated = db.query(StripeSubscription).filter(
        StripeSubscription.user_id == customer.user_id,
        StripeSubscription.mode == mode,
        StripeSubscription.stripe_subscription_id == subscription_id,
    ).update(
        {
            StripeSubscription.latest_invoice_id: _as_str(invoice, "id"),
            StripeSubscription.latest_invoice_status: _as_str(invoice, "status"),
        },
        synchronize_session=False,
    )
    if updated:
        logger.info(f"請求状態更新: subscription={subscription_id}, status={invoice.get('status')}")
