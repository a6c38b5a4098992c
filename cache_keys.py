"""Cache key construction.

All tenants share one cache store, so a key must name its owner explicitly
and encode every filter that changes the cached result. Per-user prefixes
end with ``:`` after the id so that user 1 never matches user 12.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

ANALYTICS = "analytics"
TRANSACTIONS = "transactions"
CATEGORIES = "categories"

ALL = "all"


def _json_default(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Unsupported filter value: {value!r}")


def canonical_filters(filters: Optional[Mapping[str, Any]]) -> str:
    """Serialize filters so equal filter sets always yield the same string.

    Keys are sorted and ``None`` values are dropped, so an absent field and a
    field explicitly set to ``None`` produce identical output.
    """
    cleaned = {k: v for k, v in (filters or {}).items() if v is not None}
    return json.dumps(
        cleaned, sort_keys=True, separators=(",", ":"), default=_json_default
    )


def _segment(value: Any) -> str:
    if value is None:
        return ALL
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def user_prefix(namespace: str, user_id: int) -> str:
    return f"{namespace}:user:{int(user_id)}:"


def global_prefix(namespace: str) -> str:
    return f"{namespace}:global:"


def build_key(
    namespace: str, user_id: Optional[int], filters: Optional[Mapping[str, Any]]
) -> str:
    if user_id is None:
        return global_prefix(namespace) + canonical_filters(filters)
    return user_prefix(namespace, user_id) + canonical_filters(filters)


def analytics_key(
    user_id: int, period: str, year: Optional[int], month: Optional[int]
) -> str:
    segments = ":".join(_segment(v) for v in (period, year, month))
    return user_prefix(ANALYTICS, user_id) + segments


def global_analytics_key(period: str, year: Optional[int], month: Optional[int]) -> str:
    segments = ":".join(_segment(v) for v in (period, year, month))
    return global_prefix(ANALYTICS) + segments


def category_analytics_key(
    user_id: int, period: str, year: Optional[int], month: Optional[int]
) -> str:
    segments = ":".join(_segment(v) for v in (period, year, month))
    return user_prefix(ANALYTICS, user_id) + "categories:" + segments


def trends_key(user_id: int, months: int) -> str:
    return user_prefix(ANALYTICS, user_id) + f"trends:{int(months)}"


def transaction_list_key(user_id: int, filters: Mapping[str, Any]) -> str:
    return build_key(TRANSACTIONS, user_id, filters)


def categories_key(kind: Optional[str] = None) -> str:
    return f"{CATEGORIES}:{_segment(kind)}"
