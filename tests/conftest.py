import os
import re
import tempfile

os.environ.setdefault("FINANCE_DATA_DIR", tempfile.mkdtemp(prefix="finance-tests-"))

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache import CacheAside, InvalidationCoordinator, RedisCacheStore


def _glob_to_regex(pattern: str) -> re.Pattern:
    parts = []
    chars = iter(pattern)
    for ch in chars:
        if ch == "\\":
            parts.append(re.escape(next(chars, "\\")))
        elif ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


class FakeRedis:
    """Just enough of a decode_responses redis client for the cache layer."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expires: dict[str, float] = {}
        self.now = 0.0
        self.down = False
        self.failing_ops: set[str] = set()
        self.set_calls: list[tuple[str, int]] = []

    def _guard(self, op: str) -> None:
        if self.down or op in self.failing_ops:
            raise RedisConnectionError(f"fake redis refused {op}")

    def _evict(self) -> None:
        for key in [k for k, at in self.expires.items() if at <= self.now]:
            self.data.pop(key, None)
            self.expires.pop(key, None)

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def ping(self) -> bool:
        self._guard("ping")
        return True

    def get(self, key: str):
        self._guard("get")
        self._evict()
        return self.data.get(key)

    def set(self, key: str, value: str, ex=None) -> bool:
        self._guard("set")
        self.data[key] = value
        self.set_calls.append((key, ex))
        if ex is not None:
            self.expires[key] = self.now + ex
        else:
            self.expires.pop(key, None)
        return True

    def delete(self, *keys: str) -> int:
        self._guard("delete")
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.expires.pop(key, None)
                removed += 1
        return removed

    def scan_iter(self, match=None, count=None):
        self._guard("scan")
        self._evict()
        regex = _glob_to_regex(match or "*")
        for key in list(self.data):
            if regex.match(key):
                yield key


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> RedisCacheStore:
    store = RedisCacheStore(fake_redis, scan_count=2)
    assert store.ping()
    return store


@pytest.fixture
def cache(store: RedisCacheStore) -> CacheAside:
    return CacheAside(store)


@pytest.fixture
def invalidator(store: RedisCacheStore) -> InvalidationCoordinator:
    return InvalidationCoordinator(store)
