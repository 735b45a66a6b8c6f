import secrets
import time
from typing import Optional
import redis.asyncio as aioredis
from quicktools.core.config import settings

SESSION_PREFIX = "session:"
SESSION_TTL = settings.SESSION_TTL_DAYS * 24 * 60 * 60  # 秒


async def create_session(r: aioredis.Redis, user_id: int, email: str) -> str:
    """新しいセッションを作成し、session_idを返す"""
    session_id = secrets.token_hex(32)
    key = f"{SESSION_PREFIX}{session_id}"
    data = {
        "user_id": str(user_id),
        "email": email,
        "created_at": str(int(time.time())),
        "last_accessed": str(int(time.time())),
    }
    await r.hset(key, mapping=data)
    await r.expire(key, SESSION_TTL)
    return session_id


async def get_session(r: aioredis.Redis, session_id: str) -> Optional[dict]:
    """セッション情報を取得。アクセスごとにTTL更新"""
    if not session_id:
        return None
    key = f"{SESSION_PREFIX}{session_id}"
    data = await r.hgetall(key)
    if not data:
        return None
    await r.expire(key, SESSION_TTL)
    await r.hset(key, "last_accessed", str(int(time.time())))
    return data
