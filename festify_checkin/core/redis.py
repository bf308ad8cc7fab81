from __future__ import annotations
import logging
import redis.asyncio as redis
from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None
logger = logging.getLogger(__name__)

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        logger.warning("Redis unreachable at %s", _settings.redis_url)
        return False

# ---- Simple fixed-window rate limit per client/route ----
async def allow_request(client: str, route_key: str) -> bool:
    """
    Fixed window: increment a counter key; allow if <= max.
    Fails open when Redis is down so scanning keeps working.
    """
    if not _settings.rl_enabled:
        return True
    r = get_redis()
    key = f"rl:{route_key}:{client}"
    try:
        count = await r.incr(key)
        # the window starts at the first hit and is never extended
        if count == 1:
            await r.expire(key, _settings.rl_window_seconds)
    except redis.RedisError:
        logger.warning("rate limit check skipped, Redis error", exc_info=True)
        return True
    return int(count) <= _settings.rl_max_reqs
