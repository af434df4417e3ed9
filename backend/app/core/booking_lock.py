from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError
import ulid

from app.core.config import settings
from app.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()
_LAST_CONNECT_FAILURE: Optional[float] = None

REDIS_RECONNECT_BACKOFF_SECONDS = 15.0

# Delete only when the stored token is ours so an expired-and-reacquired lock survives
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _lock_key(booking_group_id: str) -> str:
    return f"booking:{booking_group_id}:mutex"


def _namespaced_key(key: str) -> str:
    return f"{settings.booking_lock_namespace}:lock:{key}"


def _get_sync_redis() -> Optional[Redis]:
    """Shared client, or None while Redis is unreachable; a failed ping is retried after a pause."""
    global _SYNC_REDIS, _LAST_CONNECT_FAILURE
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        if (
            _LAST_CONNECT_FAILURE is not None
            and time.monotonic() - _LAST_CONNECT_FAILURE < REDIS_RECONNECT_BACKOFF_SECONDS
        ):
            return None
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1,
            )
            client.ping()
        except RedisError as exc:
            _LAST_CONNECT_FAILURE = time.monotonic()
            logger.warning("booking_lock_redis_unavailable: %s", exc)
            return None
        _LAST_CONNECT_FAILURE = None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def acquire_booking_lock(booking_group_id: str, ttl_s: Optional[int] = None) -> Optional[str]:
    """
    Try to take the group mutex.

    Returns the ownership token, ``""`` when locking is disabled or Redis is
    unreachable (callers fall back to row-level compare-and-swap), or ``None``
    when another holder owns the mutex.
    """
    if not settings.booking_lock_enabled:
        return ""
    client = _get_sync_redis()
    if client is None:
        prometheus_metrics.record_booking_lock("acquire", "redis_unavailable")
        logger.warning(
            "booking_lock_degraded",
            extra={"booking_group_id": booking_group_id},
        )
        return ""
    token = str(ulid.ULID())
    try:
        acquired = bool(
            client.set(
                _namespaced_key(_lock_key(booking_group_id)),
                token,
                nx=True,
                ex=ttl_s or settings.booking_lock_ttl_seconds,
            )
        )
    except RedisError as exc:
        prometheus_metrics.record_booking_lock("acquire", "error")
        logger.warning(
            "booking_lock_acquire_failed",
            extra={
                "booking_group_id": booking_group_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return ""
    prometheus_metrics.record_booking_lock("acquire", "success" if acquired else "blocked")
    return token if acquired else None


def release_booking_lock(booking_group_id: str, token: str) -> None:
    if not token:
        return
    client = _get_sync_redis()
    if client is None:
        return
    try:
        deleted = client.eval(_RELEASE_SCRIPT, 1, _namespaced_key(_lock_key(booking_group_id)), token)
        prometheus_metrics.record_booking_lock("release", "success" if deleted else "not_found")
    except RedisError as exc:
        prometheus_metrics.record_booking_lock("release", "error")
        logger.warning(
            "booking_lock_release_failed",
            extra={
                "booking_group_id": booking_group_id,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )


@contextmanager
def booking_lock(booking_group_id: str, ttl_s: Optional[int] = None) -> Iterator[bool]:
    """Yield True when the caller may mutate the group, False when another holder owns it."""
    token = acquire_booking_lock(booking_group_id, ttl_s=ttl_s)
    try:
        yield token is not None
    finally:
        if token:
            release_booking_lock(booking_group_id, token)
