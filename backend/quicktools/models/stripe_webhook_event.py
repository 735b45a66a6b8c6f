from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, UniqueConstraint, func
from quicktools.core.database import Base


class StripeWebhookEvent(Base):
    """処理済みWebhookイベント台帳 (存在 = 処理済み)"""
    __tablename__ = "stripe_webhook_events"
    __table_args__ = (
        UniqueConstraint("event_id", "mode", name="uq_stripe_webhook_events_event_id_mode"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    mode = Column(SAEnum("test", "live", name="stripe_mode"), nullable=False)
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
