from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """アプリケーション設定"""

    # データベース
    DATABASE_URL: str = "mysql+pymysql://quicktools:quicktools@db:3306/quicktools?charset=utf8mb4"

    # Redis (セッション)
    REDIS_URL: str = "redis://redis:6379/0"

    # セキュリティ
    AES_KEY: str = ""        # メール暗号化用 (hex 64文字 = 32バイト)
    AUTH_SECRET: str = ""    # トークン/メールハッシュのペッパー

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_MODE: Optional[str] = None  # "test" / "live" (未指定ならキーのprefixから判定)
    STRIPE_PRICE_ID_PRO_TEST: str = ""
    STRIPE_PRICE_ID_PRO_LIVE: str = ""

    # 課金機能
    BILLING_ENABLED: bool = True
    PENDING_CHECKOUT_TTL_MINUTES: int = 60

    # サービス設定
    SITE_URL: str = "http://localhost:3000"
    SITE_NAME: str = "QuickTools"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # セッション
    SESSION_COOKIE_NAME: str = "qt_session"
    SESSION_TTL_DAYS: int = 30

    # レート制限
    RATE_LIMIT_STORAGE_URI: str = "memory://"  # 複数レプリカでは "redis://redis:6379/1"
    TRUSTED_PROXY_COUNT: int = 0  # 前段のリバースプロキシ段数 (0ならX-Forwarded-Forを使わない)

    # 環境
    ENV: str = "development"
    DEPLOY_ENV: str = "development"  # development / preview / production
    DEBUG: bool = True

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def site_url(self) -> str:
        return self.SITE_URL.rstrip("/")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
