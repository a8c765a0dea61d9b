import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ENV_PREFIX = "MESS_"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        cache_ttl_secs: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.cache_ttl_secs = cache_ttl_secs
        self.log_level = log_level


def _env(name: str, default: str) -> str:
    value = os.getenv(f"{ENV_PREFIX}{name}", "").strip()
    return value or default


def _data_dir() -> Path:
    root = Path(_env("DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"{ENV_PREFIX}TIMEZONE: unknown timezone {name!r}") from exc
    return name


def _cache_ttl(raw: str) -> int:
    try:
        ttl = int(raw)
    except ValueError as exc:
        raise ValueError(f"{ENV_PREFIX}CACHE_TTL_SECS must be an integer") from exc
    if ttl <= 0:
        raise ValueError(f"{ENV_PREFIX}CACHE_TTL_SECS must be positive")
    return ttl


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = _env("DATABASE_URL", "")
    if not database_url:
        database_url = f"sqlite:///{_data_dir() / 'mess.db'}"
    log_level = _env("LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        log_level = "INFO"
    return Settings(
        database_url=database_url,
        timezone=_timezone(_env("TIMEZONE", "UTC")),
        csrf_secret=_env(
            "CSRF_SECRET",
            "4f1c2a9be07d35c8a6e1f0b2d9c47a3e18b5f6d2c0a9e7b3f4d1c8a2e6b0f953",
        ),
        cache_ttl_secs=_cache_ttl(_env("CACHE_TTL_SECS", "3600")),
        log_level=log_level,
    )
