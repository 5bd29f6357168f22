"""
Per-user request throttling for the generation endpoints.

Sliding window over the last THROTTLE_WINDOW_SECONDS.  With Redis the
window is a sorted set keyed ``throttle:{user_id}`` (shared across
processes); without it an in-process log is used with a lower ceiling.

Both paths return ``(allowed, remaining, retry_after_seconds)``.
"""

import logging
import threading
import time
from typing import Dict, List, Optional, Tuple

import redis

from . import config

logger = logging.getLogger(__name__)

# ── Redis client (lazy) ──────────────────────────────────────────────────────

_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured or unreachable."""
    global _redis_client
    if _redis_client is None and config.REDIS_URL:
        client = redis.from_url(config.REDIS_URL, decode_responses=False)
        try:
            client.ping()
            logger.info(f"Redis connected: {config.REDIS_URL[:30]}...")
            _redis_client = client
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed: {e} — using in-memory throttle")
    return _redis_client


# ── Redis sliding window ─────────────────────────────────────────────────────

def check_redis(
    redis_client,
    user_id: str,
    max_requests: int,
    window_seconds: int,
) -> Tuple[bool, int, int]:
    now = time.time()
    key = f"throttle:{user_id}"

    pipe = redis_client.pipeline(transaction=True)
    pipe.zremrangebyscore(key, 0, now - window_seconds)
    pipe.zcard(key)
    pipe.zrange(key, 0, 0, withscores=True)
    _, current_count, oldest = pipe.execute()

    if current_count >= max_requests:
        if oldest:
            retry_after = int(oldest[0][1] + window_seconds - now) + 1
        else:
            retry_after = window_seconds
        logger.warning(f"Throttled {user_id}: {current_count}/{max_requests}")
        return False, 0, retry_after

    pipe = redis_client.pipeline(transaction=True)
    pipe.zadd(key, {f"{now}": now})
    pipe.expire(key, window_seconds + 60)
    pipe.execute()
    return True, max_requests - current_count - 1, 0


# ── In-memory fallback ───────────────────────────────────────────────────────

_lock = threading.Lock()
_request_log: Dict[str, List[float]] = {}


def check_memory(
    user_id: str,
    max_requests: int,
    window_seconds: int,
) -> Tuple[bool, int, int]:
    now = time.time()
    with _lock:
        timestamps = [ts for ts in _request_log.get(user_id, []) if ts > now - window_seconds]
        if len(timestamps) >= max_requests:
            _request_log[user_id] = timestamps
            retry_after = int(timestamps[0] + window_seconds - now) + 1
            logger.warning(f"Throttled {user_id} (in-memory): {len(timestamps)}/{max_requests}")
            return False, 0, retry_after

        timestamps.append(now)
        _request_log[user_id] = timestamps
        return True, max_requests - len(timestamps), 0


def reset_memory():
    with _lock:
        _request_log.clear()


# ── Entry point ──────────────────────────────────────────────────────────────

def check(user_id: str, redis_client: Optional[object] = None) -> Tuple[bool, int, int]:
    """Record one generation request for ``user_id`` and decide whether to let it through."""
    r = redis_client if redis_client is not None else get_redis()
    if r is not None:
        try:
            return check_redis(r, user_id, config.THROTTLE_MAX_REQUESTS, config.THROTTLE_WINDOW_SECONDS)
        except redis.RedisError as e:
            logger.warning(f"Redis throttle failed for {user_id}: {e} — using in-memory throttle")
    return check_memory(user_id, config.FALLBACK_MAX_REQUESTS, config.THROTTLE_WINDOW_SECONDS)
