"""Stripe Webhook ルーター"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from quicktools.core.billing_config import get_stripe_webhook_secret
from quicktools.core.database import get_db
from quicktools.core.exceptions import BillingConfigError, WebhookSignatureError
from quicktools.core.logging import get_logger
from quicktools.routers.deps import get_current_mode
from quicktools.services import webhook_service

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    mode: str = Depends(get_current_mode),
):
    """Stripe Webhook エンドポイント (署名検証 → 台帳で重複排除 → 同期)

    5xxを返すとStripeがバックオフ付きで再送する。
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        secret = get_stripe_webhook_secret()
    except BillingConfigError as e:
        logger.error(f"Stripe webhook設定エラー: {e}")
        return JSONResponse(status_code=500, content={"ok": False})

    try:
        result = webhook_service.process_webhook(db, payload, sig_header, secret, mode)
    except WebhookSignatureError as e:
        logger.warning(f"Stripe webhook署名検証失敗: {e}")
        return JSONResponse(status_code=400, content={"ok": False})
    except Exception:
        logger.exception("Stripe webhook処理エラー")
        return JSONResponse(status_code=500, content={"ok": False})

    return {"ok": True, "status": result.status}
