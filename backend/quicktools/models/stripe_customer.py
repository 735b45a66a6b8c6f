from sqlalchemy import Column, Integer, String, DateTime, Enum as SAEnum, ForeignKey, func
from quicktools.core.database import Base


class StripeCustomer(Base):
    __tablename__ = "stripe_customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    stripe_customer_id = Column(String(255), nullable=False, unique=True, index=True)
    mode = Column(SAEnum("test", "live", name="stripe_mode"), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
