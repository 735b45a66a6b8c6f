"""ゲスト購入の一時記録 (PendingCheckout) の作成・消費・掃除"""
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from quicktools.core.clock import utcnow
from quicktools.core.config import settings
from quicktools.core.logging import get_logger
from quicktools.core.security import encrypt, generate_token, hash_value
from quicktools.models.pending_checkout import PendingCheckout

logger = get_logger(__name__)


def purge_stale(db: Session, now: Optional[datetime] = None) -> int:
    """期限切れレコードを削除 (個人情報を長く残さない)

    使用済みでも期限内のレコードは残す (再度の success コールバックは expired_checkout)。

    ベストエフォート。失敗しても呼び出し元の処理は続行する。
    """
    now = now or utcnow()
    try:
        deleted = db.query(PendingCheckout).filter(PendingCheckout.expires_at <= now).delete(synchronize_session=False)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"PendingCheckout掃除失敗 (続行): {type(e).__name__}")
        return 0
    if deleted:
        logger.info(f"PendingCheckout掃除: {deleted}件削除")
    return deleted


def create_pending_checkout(
    db: Session,
    email: str,
    mode: str,
    now: Optional[datetime] = None,
) -> tuple[PendingCheckout, str]:
    """PendingCheckoutを作成し (レコード, 平文トークン) を返す

    平文トークンは保存しない。メールは暗号化して保存し、検索用に別途ハッシュを持つ。
    """
    now = now or utcnow()
    token = generate_token(32)
    pending = PendingCheckout(
        encrypted_email=encrypt(email),
        email_lookup_hash=hash_value(email),
        token_hash=hash_value(token),
        mode=mode,
        expires_at=now + timedelta(minutes=settings.PENDING_CHECKOUT_TTL_MINUTES),
    )
    db.add(pending)
    db.commit()
    db.refresh(pending)
    return pending, token


def attach_checkout_session(db: Session, pending_id: str, checkout_session_id: str) -> None:
    """Stripe Checkout Session IDを記録 (追跡用)"""
    db.query(PendingCheckout).filter(PendingCheckout.id == pending_id).update(
        {PendingCheckout.checkout_session_id: checkout_session_id},
        synchronize_session=False,
    )
    db.commit()


def get_pending_checkout(db: Session, pending_id: str, mode: str) -> Optional[PendingCheckout]:
    """同一モードのPendingCheckoutのみ返す"""
    return db.query(PendingCheckout).filter(
        PendingCheckout.id == pending_id,
        PendingCheckout.mode == mode,
    ).first()


def is_consumable(pending: PendingCheckout, now: datetime) -> bool:
    return pending.used_at is None and pending.expires_at > now


def claim(db: Session, pending_id: str, mode: str, now: datetime) -> bool:
    """未使用かつ期限内の場合のみ used_at をセットする条件付きUPDATE

    同時リクエストでも成功するのは1件だけ。commitは呼び出し側 (会員作成と同一トランザクション)。
    """
    updated = db.query(PendingCheckout).filter(
        PendingCheckout.id == pending_id,
        PendingCheckout.mode == mode,
        PendingCheckout.used_at.is_(None),
        PendingCheckout.expires_at > now,
    ).update({PendingCheckout.used_at: now}, synchronize_session=False)
    return updated == 1
