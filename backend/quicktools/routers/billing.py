"""課金ルーター: Checkout開始 (ログイン済み/ゲスト), Billing Portal, 権限参照"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from quicktools.core.database import get_db
from quicktools.core.exceptions import (
    BillingConfigError,
    BillingDisabledError,
    CheckoutSessionError,
    InvalidEmailError,
    StripeCustomerNotFoundError,
    StripeModeMismatchError,
)
from quicktools.core.logging import get_logger
from quicktools.core.rate_limit import limiter, CHECKOUT_RATE_LIMIT, GUEST_CHECKOUT_RATE_LIMIT
from quicktools.models.user import User
from quicktools.routers.deps import get_current_mode, require_login
from quicktools.schemas.billing import CheckoutResult, Entitlement, GuestCheckoutRequest, PortalResponse
from quicktools.services import checkout_service, entitlement_service

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = get_logger(__name__)


def _to_http(e: Exception, generic: str) -> HTTPException:
    """課金例外 → HTTPException (内部詳細は出さない)"""
    if isinstance(e, BillingDisabledError):
        return HTTPException(status_code=403, detail="Billing is disabled")
    if isinstance(e, InvalidEmailError):
        return HTTPException(status_code=400, detail="Invalid email")
    if isinstance(e, StripeModeMismatchError):
        return HTTPException(status_code=409, detail="Stripe mode mismatch for this user")
    if isinstance(e, StripeCustomerNotFoundError):
        return HTTPException(status_code=404, detail="No Stripe customer for this user")
    if isinstance(e, BillingConfigError):
        logger.error(f"課金設定エラー: {e}")
        if e.public_message:
            return HTTPException(status_code=400, detail=e.public_message)
        return HTTPException(status_code=500, detail=generic)
    return HTTPException(status_code=500, detail=generic)


_HANDLED = (
    BillingDisabledError,
    InvalidEmailError,
    StripeModeMismatchError,
    StripeCustomerNotFoundError,
    BillingConfigError,
    CheckoutSessionError,
)


@router.post("/checkout", response_model=CheckoutResult)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def checkout(
    request: Request,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
    mode: str = Depends(get_current_mode),
):
    """Pro購入開始 (既にProならBilling Portal)"""
    try:
        return checkout_service.initiate_authenticated_checkout(db, user, mode)
    except _HANDLED as e:
        raise _to_http(e, "Failed to start checkout")


@router.post("/guest-checkout", response_model=CheckoutResult)
@limiter.limit(GUEST_CHECKOUT_RATE_LIMIT)
async def guest_checkout(
    request: Request,
    req: GuestCheckoutRequest,
    db: Session = Depends(get_db),
    mode: str = Depends(get_current_mode),
):
    """未ログインでのPro購入開始 (会員は決済完了後に作成)"""
    try:
        return checkout_service.initiate_guest_checkout(db, req.email, mode)
    except _HANDLED as e:
        raise _to_http(e, "Failed to start checkout")


@router.post("/portal", response_model=PortalResponse)
@limiter.limit(CHECKOUT_RATE_LIMIT)
async def billing_portal(
    request: Request,
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
    mode: str = Depends(get_current_mode),
):
    """Stripe Billing Portal"""
    try:
        url = checkout_service.create_portal_session(db, user, mode)
    except _HANDLED as e:
        raise _to_http(e, "Failed to create portal session")
    return PortalResponse(url=url)


@router.get("/entitlement", response_model=Entitlement)
async def entitlement(
    user: User = Depends(require_login),
    db: Session = Depends(get_db),
    mode: str = Depends(get_current_mode),
):
    """現在のPro権限"""
    return entitlement_service.get_entitlement(db, user.id, mode)
