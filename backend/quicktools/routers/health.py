from fastapi import APIRouter

from quicktools.core import billing_config
from quicktools.core.database import check_db_connection
from quicktools.core.exceptions import BillingConfigError
from quicktools.core.redis import check_redis_connection

router = APIRouter(tags=["health"])


def _billing_status() -> dict:
    """課金設定の自己診断 (秘密値そのものは返さない)"""
    mode = billing_config.get_stripe_mode()
    problems = []
    try:
        billing_config.assert_stripe_key_consistency(mode)
    except BillingConfigError:
        problems.append("stripe_key")
    try:
        billing_config.get_pro_price_id(mode)
    except BillingConfigError:
        problems.append("price_id")
    try:
        billing_config.get_stripe_webhook_secret()
    except BillingConfigError:
        problems.append("webhook_secret")

    return {
        "enabled": billing_config.is_billing_enabled(),
        "stripe_mode": mode,
        "config": "ok" if not problems else "invalid",
        "problems": problems,
    }


@router.get("/health")
async def health_check():
    """DB / Redis 接続と課金設定の状態"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()
    billing = _billing_status()

    healthy = db_ok and redis_ok and (not billing["enabled"] or billing["config"] == "ok")
    return {
        "status": "ok" if healthy else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "billing": billing,
    }
