import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        db_timeout_secs: float,
        log_level: str,
        max_buckets: dict[str, int],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.db_timeout_secs = db_timeout_secs
        self.log_level = log_level
        self.max_buckets = max_buckets


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PROPLEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "propledger.db"
    database_url = os.getenv("PROPLEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PROPLEDGER_TIMEZONE", "UTC")
    db_timeout_secs = float(os.getenv("PROPLEDGER_DB_TIMEOUT_SECS", "5"))
    log_level = os.getenv("PROPLEDGER_LOG_LEVEL", "INFO").upper()
    max_buckets = {
        "daily": int(os.getenv("PROPLEDGER_MAX_DAILY_BUCKETS", "31")),
        "weekly": int(os.getenv("PROPLEDGER_MAX_WEEKLY_BUCKETS", "32")),
        "monthly": int(os.getenv("PROPLEDGER_MAX_MONTHLY_BUCKETS", "37")),
        "yearly": int(os.getenv("PROPLEDGER_MAX_YEARLY_BUCKETS", "100")),
    }
    return Settings(
        database_url=database_url,
        timezone=timezone,
        db_timeout_secs=db_timeout_secs,
        log_level=log_level,
        max_buckets=max_buckets,
    )
