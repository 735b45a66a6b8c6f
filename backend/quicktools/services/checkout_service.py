"""Checkout開始: ログイン済み購入 / ゲスト購入 / Billing Portal

Stripeモード (test/live) は呼び出し側で解決して引数で渡す。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from quicktools.core import billing_config
from quicktools.core.config import settings
from quicktools.core.exceptions import (
    CheckoutSessionError,
    InvalidEmailError,
    StripeCustomerNotFoundError,
    StripeModeMismatchError,
)
from quicktools.core.logging import get_logger
from quicktools.models.user import User
from quicktools.schemas.billing import CheckoutResult
from quicktools.services import entitlement_service, pending_checkout_service, stripe_service
from quicktools.services.email_utils import is_valid_email, normalize_email

logger = get_logger(__name__)


def _check_customer_mode(customer, mode: str, user_id: int) -> None:
    if customer is not None and customer.mode != mode:
        logger.warning(f"Stripeモード不一致: user_id={user_id}, customer_mode={customer.mode}, mode={mode}")
        raise StripeModeMismatchError("Stripe mode mismatch for this user")


def _create_portal_url(customer_id: str) -> str:
    try:
        return stripe_service.create_billing_portal_session(
            customer_id, return_url=f"{settings.site_url}/account"
        )
    except Exception as e:
        logger.error("Billing Portal作成失敗", extra={"extra_data": stripe_service.sanitize_stripe_error(e)})
        raise CheckoutSessionError("Failed to create portal session") from e


def _create_checkout(**kwargs) -> tuple[str, str]:
    try:
        session_id, url = stripe_service.create_checkout_session(**kwargs)
    except Exception as e:
        logger.error("Checkout Session作成失敗", extra={"extra_data": stripe_service.sanitize_stripe_error(e)})
        raise CheckoutSessionError("Failed to create checkout session") from e
    if not url:
        raise CheckoutSessionError("Checkout session has no url")
    return session_id, url


def initiate_authenticated_checkout(
    db: Session,
    user: User,
    mode: str,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """ログイン済みユーザーのPro購入開始

    既にProならCheckoutを作らずBilling Portalへ誘導する (二重課金防止)。
    """
    billing_config.require_billing_enabled()
    billing_config.assert_stripe_key_consistency(mode)
    price_id = billing_config.get_pro_price_id(mode)

    customer = entitlement_service.get_customer(db, user.id)
    _check_customer_mode(customer, mode, user.id)

    entitlement = entitlement_service.resolve_entitlement(db, user, mode, now)
    if entitlement.is_pro:
        if customer is None:
            logger.info(f"既にPro (Customerなし): user_id={user.id}")
            return CheckoutResult(kind="already_pro")
        return CheckoutResult(kind="portal", url=_create_portal_url(customer.stripe_customer_id))

    metadata = {"userId": str(user.id), "plan": "pro", "stripeMode": mode}
    _, url = _create_checkout(
        price_id=price_id,
        success_url=f"{settings.site_url}/account?billing=success",
        cancel_url=f"{settings.site_url}/account?billing=cancel",
        client_reference_id=str(user.id),
        metadata=metadata,
        customer_id=customer.stripe_customer_id if customer else None,
        customer_email=None if customer else user.email,
    )
    logger.info(f"Checkout開始: user_id={user.id}, mode={mode}")
    return CheckoutResult(kind="checkout", url=url)


def initiate_guest_checkout(
    db: Session,
    raw_email: str,
    mode: str,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """未ログイン (会員未作成) のPro購入開始

    会員 (User) はここでは作らない。決済確認後に success コールバックで作成する。
    """
    billing_config.require_billing_enabled()

    email = normalize_email(raw_email)
    if not is_valid_email(email):
        raise InvalidEmailError("Invalid email")

    billing_config.assert_stripe_key_consistency(mode)
    price_id = billing_config.get_pro_price_id(mode)

    # 既存会員 (表示上Freeでもサブスクリプション上Proなら) には新規Checkoutを作らない
    user = db.query(User).filter(User.email == email).first()
    if user is not None:
        entitlement = entitlement_service.resolve_entitlement(db, user, mode, now)
        if entitlement.is_pro:
            logger.info(f"ゲスト購入: 既にPro user_id={user.id}")
            return CheckoutResult(kind="already_pro")

    pending_checkout_service.purge_stale(db, now)
    pending, token = pending_checkout_service.create_pending_checkout(db, email, mode, now)

    metadata = {"plan": "pro", "stripeMode": mode, "pendingCheckoutId": pending.id}
    session_id, url = _create_checkout(
        price_id=price_id,
        success_url=(
            f"{settings.site_url}/billing/success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&token={token}"
        ),
        cancel_url=f"{settings.site_url}/?billing=cancel",
        client_reference_id=pending.id,
        metadata=metadata,
        customer_email=email,
    )
    pending_checkout_service.attach_checkout_session(db, pending.id, session_id)

    logger.info(
        "ゲストCheckout開始",
        extra={"extra_data": {"pending_checkout_id": pending.id, "mode": mode, "email": email}},
    )
    return CheckoutResult(kind="checkout", url=url)


def create_portal_session(db: Session, user: User, mode: str) -> str:
    """Billing Portal URL (支払い方法変更・解約)"""
    billing_config.require_billing_enabled()
    billing_config.assert_stripe_key_consistency(mode)

    customer = entitlement_service.get_customer(db, user.id)
    if customer is None:
        raise StripeCustomerNotFoundError("No Stripe customer for this user")
    _check_customer_mode(customer, mode, user.id)

    return _create_portal_url(customer.stripe_customer_id)
