"""セッション保存用の非同期Redis

接続プールは初回利用時に作成し、アプリ終了時に close_redis() で破棄する。
"""
from typing import Optional

import redis.asyncio as aioredis

from quicktools.core.config import settings

_pool: Optional[aioredis.ConnectionPool] = None


def _get_pool() -> aioredis.ConnectionPool:
    global _pool
    if _pool is None:
        _pool = aioredis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            socket_timeout=2,
        )
    return _pool


async def get_redis() -> aioredis.Redis:
    """FastAPI依存関数"""
    return aioredis.Redis(connection_pool=_get_pool())


async def close_redis() -> None:
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


async def check_redis_connection() -> bool:
    try:
        r = await get_redis()
        return bool(await r.ping())
    except Exception:
        return False
