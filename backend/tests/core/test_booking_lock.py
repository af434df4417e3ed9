from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core import booking_lock as lock_module
from app.core.booking_lock import acquire_booking_lock, booking_lock
from app.core.config import settings


@pytest.fixture
def redis_client(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(settings, "booking_lock_enabled", True)
    monkeypatch.setattr(lock_module, "_get_sync_redis", lambda: client)
    return client


def test_disabled_lock_always_admits():
    assert settings.booking_lock_enabled is False

    assert acquire_booking_lock("group-1") == ""
    with booking_lock("group-1") as acquired:
        assert acquired is True


def test_acquire_sets_namespaced_key_with_ttl(redis_client):
    redis_client.set.return_value = True

    with booking_lock("group-1", ttl_s=30) as acquired:
        assert acquired is True

    args, kwargs = redis_client.set.call_args
    assert args[0] == "kitchenhub:lock:booking:group-1:mutex"
    assert kwargs == {"nx": True, "ex": 30}
    token = args[1]
    redis_client.eval.assert_called_once()
    assert redis_client.eval.call_args.args[-1] == token


def test_held_lock_blocks_and_is_not_released(redis_client):
    redis_client.set.return_value = None

    with booking_lock("group-1") as acquired:
        assert acquired is False

    redis_client.eval.assert_not_called()


def test_redis_errors_degrade_to_row_level_guard(redis_client):
    redis_client.set.side_effect = RedisConnectionError("down")

    with booking_lock("group-1") as acquired:
        assert acquired is True

    redis_client.eval.assert_not_called()


def test_unreachable_redis_degrades(monkeypatch):
    monkeypatch.setattr(settings, "booking_lock_enabled", True)
    monkeypatch.setattr(lock_module, "_get_sync_redis", lambda: None)

    assert acquire_booking_lock("group-1") == ""


def test_failed_connection_is_not_retried_until_backoff_passes(monkeypatch):
    clock = {"now": 1000.0}
    client = MagicMock()
    client.ping.side_effect = RedisConnectionError("down")
    from_url = MagicMock(return_value=client)
    monkeypatch.setattr(lock_module, "_SYNC_REDIS", None)
    monkeypatch.setattr(lock_module, "_LAST_CONNECT_FAILURE", None)
    monkeypatch.setattr(lock_module.Redis, "from_url", from_url)
    monkeypatch.setattr(lock_module.time, "monotonic", lambda: clock["now"])

    assert lock_module._get_sync_redis() is None
    clock["now"] += 1
    assert lock_module._get_sync_redis() is None
    assert from_url.call_count == 1

    clock["now"] += lock_module.REDIS_RECONNECT_BACKOFF_SECONDS
    client.ping.side_effect = None
    assert lock_module._get_sync_redis() is client
    assert from_url.call_count == 2
    assert lock_module._LAST_CONNECT_FAILURE is None
