import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        environment: str,
        timezone: str,
        token_secret: str,
        token_max_age_hours: int,
        cache_ttl_secs: float,
        cache_maxsize: int,
        scheduler_enabled: bool,
        admin_username: Optional[str],
        admin_password: Optional[str],
        sqlite_timeout_secs: float = 30.0,
    ) -> None:
        self.database_url = database_url
        self.environment = environment
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_hours = token_max_age_hours
        self.cache_ttl_secs = cache_ttl_secs
        self.cache_maxsize = cache_maxsize
        self.scheduler_enabled = scheduler_enabled
        self.admin_username = admin_username
        self.admin_password = admin_password
        self.sqlite_timeout_secs = sqlite_timeout_secs

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("APBD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "apbd.db"
    database_url = os.getenv("APBD_DATABASE_URL", f"sqlite:///{default_db}")
    environment = os.getenv("APBD_ENV", "development").strip().lower()
    timezone = os.getenv("APBD_TIMEZONE", "Asia/Jakarta")
    token_secret = os.getenv(
        "APBD_TOKEN_SECRET",
        "5b0d7c1e9a4f43b2a8e61f0c2d9e7a3b6c4f8e1d0a9b7c5e3f2a1d0c9b8e7f6a",
    )
    token_max_age_hours = int(os.getenv("APBD_TOKEN_MAX_AGE_HOURS", "24"))
    cache_ttl_secs = float(os.getenv("APBD_CACHE_TTL_SECS", "300"))
    cache_maxsize = int(os.getenv("APBD_CACHE_MAXSIZE", "512"))
    scheduler_enabled = _env_flag("APBD_SCHEDULER_ENABLED", True)
    admin_username = os.getenv("APBD_ADMIN_USERNAME") or None
    admin_password = os.getenv("APBD_ADMIN_PASSWORD") or None
    sqlite_timeout_secs = float(os.getenv("APBD_SQLITE_TIMEOUT_SECS", "30"))
    return Settings(
        database_url=database_url,
        environment=environment,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_hours=token_max_age_hours,
        cache_ttl_secs=cache_ttl_secs,
        cache_maxsize=cache_maxsize,
        scheduler_enabled=scheduler_enabled,
        admin_username=admin_username,
        admin_password=admin_password,
        sqlite_timeout_secs=sqlite_timeout_secs,
    )
