"""共通依存関数: 認証・Stripeモード"""
from typing import Optional
from fastapi import Request, HTTPException, Depends
from sqlalchemy.orm import Session

from quicktools.core.billing_config import get_stripe_mode
from quicktools.core.config import settings
from quicktools.core.database import get_db
from quicktools.core.redis import get_redis
from quicktools.core.session import get_session
from quicktools.models.user import User


async def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    r=Depends(get_redis),
) -> Optional[User]:
    """Cookie → Redis → DB でユーザー取得。未ログインならNone"""
    session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not session_id:
        return None

    session_data = await get_session(r, session_id)
    if not session_data:
        return None

    user_id = int(session_data.get("user_id", 0))
    if not user_id:
        return None

    return db.query(User).filter(User.id == user_id).first()


async def require_login(
    user: Optional[User] = Depends(get_current_user),
) -> User:
    """ログイン必須。未ログインなら401"""
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_current_mode() -> str:
    """リクエスト単位でStripeモードを確定し、以降は引数で引き回す"""
    return get_stripe_mode()
