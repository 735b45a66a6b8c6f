from pydantic import BaseModel
from typing import Literal, Optional
from datetime import datetime


class GuestCheckoutRequest(BaseModel):
    # 形式チェックは正規化後にサービス側で行う (エラー文言を統一するため)
    email: str = ""


class CheckoutResult(BaseModel):
    """Checkout開始結果

    already_pro: 既にPro (何も作成していない)
    portal:      既にPro → Billing Portal URL
    checkout:    新規Checkout Session URL
    """
    kind: Literal["already_pro", "portal", "checkout"]
    url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str


class Entitlement(BaseModel):
    plan: Literal["free", "pro"]
    is_pro: bool
    pro_valid_until: Optional[datetime] = None
    subscription_status: Optional[str] = None
    stripe_mode: Literal["test", "live"]

    model_config = {"frozen": True}


class WebhookResult(BaseModel):
    status: Literal["processed", "duplicate"]
    event_id: str
    event_type: str
