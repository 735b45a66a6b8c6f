"""Stripe API操作サービス"""
from typing import Optional

import stripe

from quicktools.core.billing_config import get_stripe_secret_key
from quicktools.core.logging import get_logger

logger = get_logger(__name__)

# ログに出してよいStripeエラー項目 (生のヘッダー/オブジェクトは出さない)
_ERROR_LOG_FIELDS = ("code", "http_status", "request_id")


def _init_stripe():
    stripe.api_key = get_stripe_secret_key()


def sanitize_stripe_error(e: Exception) -> dict:
    """Stripe例外から許可リストの項目だけを抜き出す"""
    info = {"error_type": type(e).__name__}
    if isinstance(e, stripe.StripeError):
        for field in _ERROR_LOG_FIELDS:
            value = getattr(e, field, None)
            if value is not None:
                info[field] = value
    return info


def create_checkout_session(
    price_id: str,
    success_url: str,
    cancel_url: str,
    client_reference_id: str,
    metadata: dict,
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> tuple[str, Optional[str]]:
    """サブスクリプション用Checkout Sessionを作成し (session_id, url) を返す"""
    _init_stripe()
    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": client_reference_id,
        "metadata": metadata,
        # Webhook側で突き合わせられるようSubscriptionにも同じmetadataを付ける
        "subscription_data": {"metadata": metadata},
        "allow_promotion_codes": True,
        "billing_address_collection": "auto",
    }
    if customer_id:
        params["customer"] = customer_id
    elif customer_email:
        params["customer_email"] = customer_email

    session = stripe.checkout.Session.create(**params)
    logger.info(f"Stripe Checkout Session作成: session={session.id}, ref={client_reference_id}")
    return session.id, session.url


def create_billing_portal_session(customer_id: str, return_url: str) -> str:
    """Billing Portal Session を作成し URL を返す"""
    _init_stripe()
    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=return_url,
    )
    logger.info(f"Billing Portal Session作成: customer={customer_id}")
    return session.url


def retrieve_checkout_session(session_id: str):
    """Checkout Session を取得"""
    _init_stripe()
    return stripe.checkout.Session.retrieve(session_id)


def construct_webhook_event(payload: bytes, sig_header: str, secret: str) -> dict:
    """Webhook イベントを構築・検証し、dictとして返す

    署名不一致は stripe.SignatureVerificationError、JSON不正は ValueError。
    """
    event = stripe.Webhook.construct_event(payload, sig_header, secret)
    return event.to_dict()
