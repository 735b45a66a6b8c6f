from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from quicktools.core.config import settings
from quicktools.core.logging import setup_logging, get_logger
from quicktools.core.security_headers import SecurityHeadersMiddleware
from quicktools.core.rate_limit import limiter, rate_limit_exceeded_handler
from quicktools.core.redis import close_redis
from quicktools.core.billing_config import get_stripe_mode, is_billing_enabled
from quicktools.routers import health, billing, billing_success, webhooks_stripe

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG, deploy_env=settings.DEPLOY_ENV)
    logger.info(
        f"アプリケーション起動: billing_enabled={is_billing_enabled()}, "
        f"stripe_mode={get_stripe_mode()}, deploy_env={settings.DEPLOY_ENV}"
    )
    yield
    await close_redis()
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# ミドルウェア (登録順序: 後に登録したものが先に実行される)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(billing.router)
app.include_router(billing_success.router)
app.include_router(webhooks_stripe.router)
