import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        token_secret: str,
        token_max_age_secs: int,
        recent_transactions_limit: int,
        max_page_limit: int,
        max_recurring_occurrences: int,
        auto_create_tables: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.token_secret = token_secret
        self.token_max_age_secs = token_max_age_secs
        self.recent_transactions_limit = recent_transactions_limit
        self.max_page_limit = max_page_limit
        self.max_recurring_occurrences = max_recurring_occurrences
        self.auto_create_tables = auto_create_tables
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "y", "on")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINTRACK_TIMEZONE", "UTC")
    token_secret = os.getenv(
        "FINTRACK_TOKEN_SECRET",
        "5f1c0d8e9a6b4e3f8a2d7c1b0e9f8a7d6c5b4a3f2e1d0c9b8a7f6e5d4c3b2a1f",
    )
    token_max_age_secs = int(os.getenv("FINTRACK_TOKEN_MAX_AGE_SECS", "86400"))
    recent_transactions_limit = int(
        os.getenv("FINTRACK_RECENT_TRANSACTIONS_LIMIT", "10")
    )
    max_page_limit = int(os.getenv("FINTRACK_MAX_PAGE_LIMIT", "100"))
    max_recurring_occurrences = int(
        os.getenv("FINTRACK_MAX_RECURRING_OCCURRENCES", "366")
    )
    auto_create_tables = _env_bool("FINTRACK_AUTO_CREATE_TABLES", default=False)
    log_level = os.getenv("FINTRACK_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        token_secret=token_secret,
        token_max_age_secs=token_max_age_secs,
        recent_transactions_limit=recent_transactions_limit,
        max_page_limit=max_page_limit,
        max_recurring_occurrences=max_recurring_occurrences,
        auto_create_tables=auto_create_tables,
        log_level=log_level,
    )
