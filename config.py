import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        horizon_start_year: int,
        horizon_end_year: int,
        batch_size: int,
        extension_months: int,
        token_max_age_hours: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.horizon_start_year = horizon_start_year
        self.horizon_end_year = horizon_end_year
        self.batch_size = batch_size
        self.extension_months = extension_months
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level


# Hard ceiling of operations per committed batch.
MAX_BATCH_SIZE = 500


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PERIODS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "periods.db"
    database_url = os.getenv("PERIODS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PERIODS_TIMEZONE", "UTC")
    auth_secret = os.getenv(
        "PERIODS_AUTH_SECRET",
        "5d1c0f3e9a4b7c2d8e6f1a0b3c5d7e9f2a4c6e8b0d1f3a5c7e9b2d4f6a8c0e1b",
    )
    horizon_start_year = int(os.getenv("PERIODS_HORIZON_START_YEAR", "2023"))
    horizon_end_year = int(os.getenv("PERIODS_HORIZON_END_YEAR", "2033"))
    batch_size = min(int(os.getenv("PERIODS_BATCH_SIZE", "500")), MAX_BATCH_SIZE)
    extension_months = int(os.getenv("PERIODS_EXTENSION_MONTHS", "12"))
    token_max_age_hours = int(os.getenv("PERIODS_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("PERIODS_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        horizon_start_year=horizon_start_year,
        horizon_end_year=horizon_end_year,
        batch_size=max(batch_size, 1),
        extension_months=extension_months,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
    )
