import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        currency: str,
        rollover_hour: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.currency = currency
        self.rollover_hour = rollover_hour


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("COINCRAFT_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "coincraft.db"
    database_url = os.getenv("COINCRAFT_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("COINCRAFT_TIMEZONE", "Asia/Manila")
    secret_key = os.getenv(
        "COINCRAFT_SECRET_KEY",
        "4c0b7d9e2f6a41c58e3b1d7f9a2c6e0b5d8f1a3c7e9b2d4f6a8c0e1b3d5f7a9c",
    )
    token_max_age_hours = int(os.getenv("COINCRAFT_TOKEN_MAX_AGE_HOURS", "720"))
    currency = os.getenv("COINCRAFT_CURRENCY", "PHP").upper()
    rollover_hour = int(os.getenv("COINCRAFT_ROLLOVER_HOUR", "0"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        currency=currency,
        rollover_hour=rollover_hour,
    )
