import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        ledger_timeout_secs: float,
        redis_enabled: bool,
        redis_url: Optional[str],
        redis_host: Optional[str],
        redis_port: int,
        redis_password: Optional[str],
        cache_timeout_secs: float,
        cache_health_interval_secs: int,
        analytics_ttl_secs: int,
        global_analytics_ttl_secs: int,
        categories_ttl_secs: int,
        transactions_ttl_secs: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.ledger_timeout_secs = ledger_timeout_secs
        self.redis_enabled = redis_enabled
        self.redis_url = redis_url
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.redis_password = redis_password
        self.cache_timeout_secs = cache_timeout_secs
        self.cache_health_interval_secs = cache_health_interval_secs
        self.analytics_ttl_secs = analytics_ttl_secs
        self.global_analytics_ttl_secs = global_analytics_ttl_secs
        self.categories_ttl_secs = categories_ttl_secs
        self.transactions_ttl_secs = transactions_ttl_secs

    @property
    def cache_configured(self) -> bool:
        return self.redis_enabled and bool(self.redis_url or self.redis_host)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    return Settings(
        database_url=os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("FINANCE_TIMEZONE", "UTC"),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
        ledger_timeout_secs=float(os.getenv("FINANCE_LEDGER_TIMEOUT_SECS", "10")),
        redis_enabled=_env_flag("FINANCE_REDIS_ENABLED"),
        redis_url=os.getenv("FINANCE_REDIS_URL") or None,
        redis_host=os.getenv("FINANCE_REDIS_HOST") or None,
        redis_port=int(os.getenv("FINANCE_REDIS_PORT", "6379")),
        redis_password=os.getenv("FINANCE_REDIS_PASSWORD") or None,
        cache_timeout_secs=float(os.getenv("FINANCE_CACHE_TIMEOUT_SECS", "0.5")),
        cache_health_interval_secs=int(
            os.getenv("FINANCE_CACHE_HEALTH_INTERVAL_SECS", "30")
        ),
        analytics_ttl_secs=int(os.getenv("FINANCE_ANALYTICS_TTL_SECS", "900")),
        global_analytics_ttl_secs=int(
            os.getenv("FINANCE_GLOBAL_ANALYTICS_TTL_SECS", "900")
        ),
        categories_ttl_secs=int(os.getenv("FINANCE_CATEGORIES_TTL_SECS", "3600")),
        transactions_ttl_secs=int(os.getenv("FINANCE_TRANSACTIONS_TTL_SECS", "300")),
    )
