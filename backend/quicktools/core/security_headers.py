"""セキュリティヘッダーミドルウェア"""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# 課金系レスポンスはブラウザ/中間キャッシュに残さない
NO_STORE_PREFIXES = ("/api/billing", "/api/webhooks", "/billing")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    セキュリティ関連のHTTPヘッダーを付与するミドルウェア
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        # クリックジャッキング対策
        response.headers["X-Frame-Options"] = "DENY"

        # MIMEタイプスニッフィング対策
        response.headers["X-Content-Type-Options"] = "nosniff"

        # HTTPS強制（HSTS）: 1年間、サブドメイン含む
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )

        # Referrer情報の制限 (success URLのsession_id/tokenを外部に送らない)
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        return response
