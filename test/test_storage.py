"""RedisStorage on the in-memory client, breaker behaviour and error mapping."""
import pytest
import redis

from ruleloop.config.settings import StorageConfig
from ruleloop.feedback.storage import RedisStorage
from ruleloop.utils.circuit_breaker import CircuitBreaker, CircuitBreakerState
from ruleloop.utils.errors import CircuitBreakerError, StorageError


def test_keys_are_namespaced():
    storage = RedisStorage(StorageConfig(key_prefix="tenant-a"), disabled=True)
    assert storage.key("feedback", "event", "e1") == "tenant-a:feedback:event:e1"


def test_json_values_round_trip(storage):
    storage.set(storage.key("doc"), {"b": 1, "a": [1, 2]})
    assert storage.get(storage.key("doc")) == {"a": [1, 2], "b": 1}
    assert storage.get(storage.key("missing"), default="x") == "x"


def test_set_if_absent(storage):
    assert storage.set_if_absent("k", {"v": 1}) is True
    assert storage.set_if_absent("k", {"v": 2}) is False
    assert storage.get("k") == {"v": 1}


def test_sorted_set_range_is_inclusive_and_ordered(storage):
    storage.index_event(["z1", "z2"], "b", 10)
    storage.zadd("z1", "a", 10)
    storage.zadd("z1", "c", 5)

    assert storage.zrangebyscore("z1") == ["c", "a", "b"]
    assert storage.zrangebyscore("z1", 10, 10) == ["a", "b"]
    assert storage.zrangebyscore("z2") == ["b"]
    assert storage.zcard("z1") == 3


def test_index_event_reports_added_counts(storage):
    assert storage.index_event(["all", "v1"], "e1", 10) == [1, 1]
    assert storage.index_event(["all", "v1"], "e1", 10) == [0, 0]


def test_lists(storage):
    for i in range(4):
        storage.rpush("log", {"n": i})
    assert [item["n"] for item in storage.lrange("log")] == [0, 1, 2, 3]
    assert [item["n"] for item in storage.lrange("log", -2, -1)] == [2, 3]
    assert [item["n"] for item in storage.lrange("log", 0, 1)] == [0, 1]


def test_get_many_skips_missing(storage):
    storage.set("a", {"v": 1})
    assert storage.get_many(["a", "b"]) == {"a": {"v": 1}}
    assert storage.get_many([]) == {}


def test_redis_errors_become_storage_errors(storage, monkeypatch):
    def down(*args, **kwargs):
        raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(storage._client, "get", down)
    with pytest.raises(StorageError, match="connection refused"):
        storage.get("k")


def test_breaker_opens_after_repeated_failures(monkeypatch, clock):
    changes = []
    storage = RedisStorage(
        StorageConfig(breaker_failure_threshold=2, breaker_timeout_seconds=30),
        disabled=True,
        on_breaker_state_change=lambda name, old, new: changes.append(new),
    )

    def down(*args, **kwargs):
        raise redis.ConnectionError("timeout")

    monkeypatch.setattr(storage._client, "get", down)
    for _ in range(2):
        with pytest.raises(StorageError):
            storage.get("k")

    with pytest.raises(CircuitBreakerError):
        storage.get("k")
    assert storage.circuit_breaker.state is CircuitBreakerState.OPEN
    assert changes == [CircuitBreakerState.OPEN]


def test_breaker_recovers_after_timeout(clock):
    breaker = CircuitBreaker("redis", failure_threshold=1, timeout_seconds=10, recovery_threshold=2)

    def fail():
        raise redis.ConnectionError("down")

    with pytest.raises(redis.ConnectionError):
        breaker.call(fail)
    assert breaker.state is CircuitBreakerState.OPEN

    clock.advance(10)
    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state is CircuitBreakerState.HALF_OPEN
    breaker.call(lambda: "ok")
    assert breaker.state is CircuitBreakerState.CLOSED


def test_connection_failure_raises_storage_error(monkeypatch):
    class Unreachable:
        def ping(self):
            raise redis.ConnectionError("no route to host")

    monkeypatch.setattr(redis, "from_url", lambda url, **kwargs: Unreachable())
    with pytest.raises(StorageError, match="Failed to connect"):
        RedisStorage(StorageConfig(host="redis.invalid"))


def test_health_check(storage):
    assert storage.health_check() is True


def test_breaker_reset_closes_circuit(clock):
    breaker = CircuitBreaker("redis", failure_threshold=1, timeout_seconds=60)

    def fail():
        raise redis.ConnectionError("down")

    with pytest.raises(redis.ConnectionError):
        breaker.call(fail)
    assert breaker.state is CircuitBreakerState.OPEN

    breaker.reset()
    assert breaker.state is CircuitBreakerState.CLOSED
    assert breaker.call(lambda: "ok") == "ok"
