"""Pro権限の算出

compute_entitlement はI/Oを持たない純粋関数。Webhook側の書き込みと
画面/API側の読み出しは必ずこの関数を通し、判定を食い違わせない。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from quicktools.core.clock import utcnow
from quicktools.models.stripe_customer import StripeCustomer
from quicktools.models.stripe_subscription import StripeSubscription
from quicktools.models.user import User
from quicktools.schemas.billing import Entitlement

ACTIVE_STATUSES = ("active", "trialing")
# 決済失敗中でも現在の請求期間が終わるまではProを維持する (画面には警告を出す)
GRACE_STATUSES = ("past_due", "unpaid")


def _free(mode: str, status: Optional[str] = None) -> Entitlement:
    return Entitlement(
        plan="free",
        is_pro=False,
        pro_valid_until=None,
        subscription_status=status,
        stripe_mode=mode,
    )


def _pro(mode: str, valid_until: Optional[datetime], status: Optional[str]) -> Entitlement:
    return Entitlement(
        plan="pro",
        is_pro=True,
        pro_valid_until=valid_until,
        subscription_status=status,
        stripe_mode=mode,
    )


def compute_entitlement(
    subscription: Optional[StripeSubscription],
    mode: str,
    now: Optional[datetime] = None,
) -> Entitlement:
    """サブスクリプション行 (なければNone) から権限を算出"""
    now = now or utcnow()
    if subscription is None:
        return _free(mode)

    status = subscription.status
    period_end = subscription.current_period_end

    # Stripeが終了済みとしているものは即時Free
    if subscription.ended_at and subscription.ended_at <= now:
        return _free(mode, status)

    if status in ACTIVE_STATUSES:
        return _pro(mode, period_end, status)

    if status in GRACE_STATUSES:
        if period_end and period_end > now:
            return _pro(mode, period_end, status)
        return _free(mode, status)

    # canceled / incomplete / incomplete_expired / paused / 未知: Free
    return _free(mode, status)


def get_subscription(db: Session, user_id: int, mode: str) -> Optional[StripeSubscription]:
    return db.query(StripeSubscription).filter(
        StripeSubscription.user_id == user_id,
        StripeSubscription.mode == mode,
    ).first()


def get_customer(db: Session, user_id: int) -> Optional[StripeCustomer]:
    return db.query(StripeCustomer).filter(StripeCustomer.user_id == user_id).first()


def resolve_entitlement(
    db: Session,
    user: User,
    mode: str,
    now: Optional[datetime] = None,
) -> Entitlement:
    """ユーザーの現在の権限 (Checkout開始前の重複購入チェックと読み出しAPIで共用)

    決済確認済みだがサブスクリプションWebhookが未着の間は、同一モードの
    Stripe Customerがあり User.is_pro が立っていれば暫定的にProとみなす。
    """
    subscription = get_subscription(db, user.id, mode)
    entitlement = compute_entitlement(subscription, mode, now)
    if subscription is not None or not user.is_pro:
        return entitlement

    customer = get_customer(db, user.id)
    if customer is not None and customer.mode == mode:
        return _pro(mode, user.pro_valid_until, None)
    return entitlement


def get_entitlement(
    db: Session,
    user_id: int,
    mode: str,
    now: Optional[datetime] = None,
) -> Entitlement:
    """user_id指定の読み出し。存在しないユーザーはFree"""
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        return _free(mode)
    return resolve_entitlement(db, user, mode, now)


def apply_entitlement(user: User, entitlement: Entitlement) -> None:
    """算出結果をUser行に反映 (commitは呼び出し側)"""
    user.plan = entitlement.plan
    user.is_pro = entitlement.is_pro
    user.pro_valid_until = entitlement.pro_valid_until
