"""
Tests for the login throttle and its key/value stores.
"""
import pytest
import redis

from config import TestConfig
from security.kvstore import MemoryStore, RedisStore, build_store
from security.throttle import LoginThrottle

EMAIL = "alice@example.com"


@pytest.fixture
def throttle(clock):
    return LoginThrottle(MemoryStore(clock=clock), clock=clock)


def fail(throttle, times, identifier=EMAIL):
    status = None
    for _ in range(times):
        status = throttle.record_failure(identifier)
    return status


class TestLockout:

    def test_four_failures_do_not_lock(self, throttle):
        status = fail(throttle, 4)
        assert status.allowed
        assert status.attempts_left == 1
        assert throttle.check(EMAIL).allowed

    def test_fifth_failure_locks_for_thirty_minutes(self, throttle):
        status = fail(throttle, 5)
        assert not status.allowed
        assert status.remaining_lock_minutes == 30

        check = throttle.check(EMAIL)
        assert not check.allowed
        assert check.remaining_lock_minutes == 30

    def test_still_locked_before_thirty_minutes(self, throttle, clock):
        fail(throttle, 5)
        clock.advance(29 * 60 + 30)

        check = throttle.check(EMAIL)
        assert not check.allowed
        assert check.remaining_lock_minutes == 1

    def test_unlocked_after_thirty_minutes(self, throttle, clock):
        fail(throttle, 5)
        clock.advance(30 * 60 + 1)

        check = throttle.check(EMAIL)
        assert check.allowed
        assert check.attempts_left == 5

    def test_failures_while_locked_do_not_extend(self, throttle, clock):
        fail(throttle, 5)
        clock.advance(10 * 60)

        status = throttle.record_failure(EMAIL)
        assert not status.allowed
        assert status.remaining_lock_minutes == 20

    def test_success_clears_counter_and_lock(self, throttle):
        fail(throttle, 5)
        throttle.record_success(EMAIL)
        assert throttle.check(EMAIL).allowed
        assert throttle.check(EMAIL).attempts_left == 5


class TestWindow:

    def test_counter_expires_after_quiet_window(self, throttle, clock):
        fail(throttle, 4)
        clock.advance(16 * 60)

        status = throttle.record_failure(EMAIL)
        assert status.allowed
        assert status.attempts_left == 4

    def test_each_failure_refreshes_window(self, throttle, clock):
        for _ in range(4):
            throttle.record_failure(EMAIL)
            clock.advance(10 * 60)

        assert not throttle.record_failure(EMAIL).allowed

    def test_identifier_is_normalized(self, throttle):
        fail(throttle, 3, " Alice@Example.COM ")
        assert throttle.check(EMAIL).attempts_left == 2

    def test_identifiers_are_independent(self, throttle):
        fail(throttle, 5)
        assert throttle.check("bob@example.com").allowed


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))
        return self

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "incr":
                results.append(self.client.incr(op[1]))
            else:
                results.append(self.client.expire(op[1], op[2]))
        return results


class FakeRedis:
    """Minimal in-memory stand-in for redis.Redis."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = str(value)
        self.ttls[key] = ex

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)

    def pipeline(self):
        return FakePipeline(self)


class TestRedisStore:

    def test_incr_sets_ttl_and_prefix(self):
        client = FakeRedis()
        store = RedisStore(client)

        assert store.incr("throttle:count:x", 900) == 1
        assert store.incr("throttle:count:x", 900) == 2
        assert client.ttls["sessionguard:throttle:count:x"] == 900

    def test_throttle_on_redis(self, clock):
        throttle = LoginThrottle(RedisStore(FakeRedis()), clock=clock)
        assert not fail(throttle, 5).allowed
        assert not throttle.check(EMAIL).allowed


class TestBuildStore:

    def test_memory_without_url(self):
        assert isinstance(build_store({"REDIS_URL": None}), MemoryStore)

    def test_falls_back_when_redis_unreachable(self, monkeypatch):
        class Unreachable:
            def ping(self):
                raise redis.ConnectionError("refused")

        monkeypatch.setattr(redis.Redis, "from_url", classmethod(lambda cls, url, **kw: Unreachable()))
        assert isinstance(build_store({"REDIS_URL": "redis://localhost:1/0"}), MemoryStore)

    def test_test_config_uses_memory(self):
        assert TestConfig.REDIS_URL is None


class TestMemoryStore:

    def test_values_expire(self, clock):
        store = MemoryStore(clock=clock)
        store.set("k", "v", 10)
        assert store.get("k") == "v"
        clock.advance(11)
        assert store.get("k") is None
