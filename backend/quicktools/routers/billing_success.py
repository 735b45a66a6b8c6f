"""Stripe Checkout完了後のブラウザ復帰 (ゲスト購入の会員化 + ログイン)"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from quicktools.core.config import settings
from quicktools.core.database import get_db
from quicktools.core.logging import get_logger
from quicktools.core.redis import get_redis
from quicktools.core.session import SESSION_TTL, create_session
from quicktools.routers.deps import get_current_mode
from quicktools.services import success_service

router = APIRouter(tags=["billing"])
logger = get_logger(__name__)


def _redirect(path: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.site_url}{path}", status_code=303)


@router.get("/billing/success")
async def billing_success(
    session_id: str = Query(default=""),
    token: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    r=Depends(get_redis),
    mode: str = Depends(get_current_mode),
):
    """失敗時は /?billing=<code> へ。どの条件で落ちたかの詳細は返さない"""
    try:
        outcome = success_service.complete_guest_checkout(db, session_id, mode, token=token)
    except Exception:
        logger.exception("ゲスト購入完了処理エラー")
        return _redirect(f"/?billing={success_service.VERIFY_FAILED}")

    if not outcome.ok:
        logger.info(f"ゲスト購入完了失敗: code={outcome.error}")
        return _redirect(f"/?billing={outcome.error}")

    user = outcome.user
    session_token = await create_session(r, user.id, user.email)

    response = _redirect("/account?billing=success")
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=session_token,
        httponly=True,
        secure=not settings.DEBUG,  # 本番(DEBUG=False)ではTrue
        samesite="lax",
        max_age=SESSION_TTL,
        path="/",
    )
    return response
