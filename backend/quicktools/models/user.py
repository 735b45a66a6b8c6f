from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum as SAEnum, func
from quicktools.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    plan = Column(SAEnum("free", "pro", name="user_plan"), nullable=False, default="free")
    is_pro = Column(Boolean, nullable=False, default=False)
    pro_valid_until = Column(DateTime, nullable=True, comment="Pro有効期限 (暫定値。Webhookで確定)")
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
