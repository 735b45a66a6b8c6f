import uuid

from sqlalchemy import Column, String, DateTime, Enum as SAEnum, func
from quicktools.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class PendingCheckout(Base):
    """ゲスト購入の一時記録 (決済確認まで会員作成を保留するための使い捨て証明)"""
    __tablename__ = "pending_checkouts"

    id = Column(String(36), primary_key=True, default=_new_id)
    encrypted_email = Column(String(512), nullable=False, comment="AES-256-GCM暗号化メール")
    email_lookup_hash = Column(String(64), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    mode = Column(SAEnum("test", "live", name="stripe_mode"), nullable=False)
    checkout_session_id = Column(String(255), nullable=True, unique=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
