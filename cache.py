"""Lookaside caching for computed ledger views.

The store is either Redis or a null object chosen at startup. Cache
problems never fail a request: reads degrade to direct computation, and
failed writes or invalidations are logged and dropped.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Optional, TypeVar

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from cache_keys import (
    ANALYTICS,
    CATEGORIES,
    TRANSACTIONS,
    global_prefix,
    user_prefix,
)
from config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class CacheStoreError(RuntimeError):
    pass


class CacheStore:
    """Key-value store with per-key TTL used as a lookaside cache."""

    @property
    def available(self) -> bool:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError

    def delete_by_prefix(self, prefix: str) -> int:
        raise NotImplementedError


class NullCacheStore(CacheStore):
    @property
    def available(self) -> bool:
        return False

    def ping(self) -> bool:
        return False

    def get(self, key: str) -> Optional[str]:
        return None

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def delete_key(self, key: str) -> None:
        return None

    def delete_by_prefix(self, prefix: str) -> int:
        return 0


class RedisCacheStore(CacheStore):
    def __init__(self, client: "redis.Redis", scan_count: int = 500) -> None:
        self.client = client
        self.scan_count = scan_count
        self._available = False

    @property
    def available(self) -> bool:
        return self._available

    def ping(self) -> bool:
        try:
            self.client.ping()
        except RedisError as exc:
            if self._available:
                logger.warning(f"cache_unavailable: error={exc}")
            self._available = False
        else:
            if not self._available:
                logger.info("cache_available: redis ping ok")
            self._available = True
        return self._available

    def _call(self, op: str, key: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._available = False
            raise CacheStoreError(f"{op} {key}: {exc}") from exc
        except RedisError as exc:
            raise CacheStoreError(f"{op} {key}: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        value = self._call("get", key, lambda: self.client.get(key))
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self._call("set", key, lambda: self.client.set(key, value, ex=ttl_seconds))

    def delete_key(self, key: str) -> None:
        self._call("delete", key, lambda: self.client.delete(key))

    def delete_by_prefix(self, prefix: str) -> int:
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"

        def scan_and_delete() -> int:
            removed = 0
            batch: list[str] = []
            for key in self.client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    removed += int(self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(self.client.delete(*batch))
            return removed

        return self._call("delete_by_prefix", prefix, scan_and_delete)


def build_cache_store(settings: Settings) -> CacheStore:
    if not settings.cache_configured:
        logger.info("cache_disabled: redis not enabled or not configured")
        return NullCacheStore()
    options = {
        "decode_responses": True,
        "socket_timeout": settings.cache_timeout_secs,
        "socket_connect_timeout": settings.cache_timeout_secs,
    }
    if settings.redis_url:
        client = redis.Redis.from_url(settings.redis_url, **options)
    else:
        client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            **options,
        )
    return RedisCacheStore(client)


class CacheAside:
    def __init__(self, store: CacheStore) -> None:
        self.store = store

    def get_or_compute(
        self, key: str, ttl_seconds: int, compute: Callable[[], Any]
    ) -> tuple[Any, bool]:
        """Return ``(value, from_cache)`` for ``key``.

        ``compute`` must return a JSON-serializable value. Its exceptions
        propagate untouched and nothing is stored for a failed computation.
        """
        if not self.store.available:
            return compute(), False

        cached: Optional[str] = None
        try:
            cached = self.store.get(key)
        except CacheStoreError as exc:
            logger.warning(f"cache_get_failed: key={key} error={exc}")
        if cached is not None:
            try:
                value = json.loads(cached)
            except ValueError:
                logger.warning(f"cache_decode_failed: key={key}")
            else:
                logger.debug(f"cache_hit: key={key}")
                return value, True

        logger.debug(f"cache_miss: key={key}")
        value = compute()
        if self.store.available:
            payload = json.dumps(value, separators=(",", ":"))
            try:
                self.store.set_with_ttl(key, payload, ttl_seconds)
            except CacheStoreError as exc:
                logger.warning(f"cache_set_failed: key={key} error={exc}")
        return value, False


class InvalidationCoordinator:
    """Drops cached views after committed ledger mutations.

    Invalidation is coarse: every cached view a mutation could touch is
    removed, whatever date range it covers.
    """

    def __init__(self, store: CacheStore) -> None:
        self.store = store

    def on_transaction_mutated(self, user_id: int) -> int:
        return self._delete_prefixes(
            user_prefix(ANALYTICS, user_id),
            user_prefix(TRANSACTIONS, user_id),
            global_prefix(ANALYTICS),
            reason=f"transaction user_id={user_id}",
        )

    def on_category_mutated(self, rewrites_ledger_views: bool = False) -> int:
        prefixes = [f"{CATEGORIES}:"]
        if rewrites_ledger_views:
            # analytics and list rows embed category name and color
            prefixes += [f"{ANALYTICS}:", f"{TRANSACTIONS}:"]
        return self._delete_prefixes(*prefixes, reason="category")

    def purge_all(self) -> int:
        return self._delete_prefixes(
            f"{ANALYTICS}:", f"{TRANSACTIONS}:", f"{CATEGORIES}:", reason="purge"
        )

    def _delete_prefixes(self, *prefixes: str, reason: str) -> int:
        if not self.store.available:
            logger.debug(f"cache_invalidation_skipped: reason={reason}")
            return 0
        removed = 0
        for prefix in prefixes:
            try:
                removed += self.store.delete_by_prefix(prefix)
            except CacheStoreError as exc:
                logger.error(
                    f"cache_invalidation_failed: reason={reason} "
                    f"prefix={prefix} error={exc}"
                )
        logger.info(f"cache_invalidated: reason={reason} removed={removed}")
        return removed


class CacheHealthMonitor:
    """Tracks store availability and purges cached views after an outage.

    While the store is unreachable no invalidation can land, so entries
    written before the outage may describe a ledger that has since changed.
    """

    def __init__(self, store: CacheStore, invalidator: InvalidationCoordinator) -> None:
        self.store = store
        self.invalidator = invalidator
        self._checked = False

    def check(self) -> bool:
        was_available = self.store.available
        now_available = self.store.ping()
        if now_available and not was_available and self._checked:
            logger.warning("cache_recovered: purging cached views")
            self.invalidator.purge_all()
        self._checked = True
        return now_available
