"""課金エンドポイントのレート制限 (slowapi)"""
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.requests import Request
from starlette.responses import JSONResponse

from quicktools.core.config import settings
from quicktools.core.logging import get_logger

logger = get_logger(__name__)

GUEST_CHECKOUT_RATE_LIMIT = "5/minute"   # ゲスト購入: 未認証のため厳しめ
CHECKOUT_RATE_LIMIT = "10/minute"        # ログイン済み購入 / Billing Portal


def client_key(request: Request) -> str:
    """レート制限のキー (クライアントIP)

    X-Forwarded-For の先頭はクライアントが自由に書けるため使わない。
    信頼するプロキシ段数ぶん右から数えた位置のアドレスを採用する。
    """
    hops = settings.TRUSTED_PROXY_COUNT
    forwarded = request.headers.get("X-Forwarded-For")
    if hops <= 0 or not forwarded:
        return get_remote_address(request)

    addresses = [a.strip() for a in forwarded.split(",") if a.strip()]
    if len(addresses) < hops:
        return get_remote_address(request)
    return addresses[-hops]


limiter = Limiter(
    key_func=client_key,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"レート制限超過: path={request.url.path}, limit={exc.detail}")
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests"},
        headers={"Retry-After": "60", "Cache-Control": "no-store"},
    )
