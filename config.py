import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        access_token_ttl_secs: int,
        refresh_token_ttl_secs: int,
        retry_attempts: int,
        retry_wait_min_secs: float,
        retry_wait_max_secs: float,
        cache_max_entries: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.access_token_ttl_secs = access_token_ttl_secs
        self.refresh_token_ttl_secs = refresh_token_ttl_secs
        self.retry_attempts = retry_attempts
        self.retry_wait_min_secs = retry_wait_min_secs
        self.retry_wait_max_secs = retry_wait_max_secs
        self.cache_max_entries = cache_max_entries
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ENVELOPES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "envelopes.db"
    database_url = os.getenv("ENVELOPES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ENVELOPES_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "ENVELOPES_TOKEN_SECRET",
        "3f9c1d0be0a84d6f8f1f6a2c54e7b9a1c2d3e4f5a6b7c8d9e0f1a2b3c4d5e6f7",
    )
    access_token_ttl_secs = int(os.getenv("ENVELOPES_ACCESS_TOKEN_TTL_SECS", "900"))
    refresh_token_ttl_secs = int(
        os.getenv("ENVELOPES_REFRESH_TOKEN_TTL_SECS", str(30 * 24 * 3600))
    )
    retry_attempts = int(os.getenv("ENVELOPES_RETRY_ATTEMPTS", "3"))
    retry_wait_min_secs = float(os.getenv("ENVELOPES_RETRY_WAIT_MIN_SECS", "0.5"))
    retry_wait_max_secs = float(os.getenv("ENVELOPES_RETRY_WAIT_MAX_SECS", "8"))
    cache_max_entries = int(os.getenv("ENVELOPES_CACHE_MAX_ENTRIES", "100"))
    scheduler_enabled = _env_flag("ENVELOPES_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        access_token_ttl_secs=access_token_ttl_secs,
        refresh_token_ttl_secs=refresh_token_ttl_secs,
        retry_attempts=retry_attempts,
        retry_wait_min_secs=retry_wait_min_secs,
        retry_wait_max_secs=retry_wait_max_secs,
        cache_max_entries=cache_max_entries,
        scheduler_enabled=scheduler_enabled,
    )
