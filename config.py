import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        token_max_age_hours: int,
        log_level: str,
        payment_group_name: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.token_max_age_hours = token_max_age_hours
        self.log_level = log_level
        self.payment_group_name = payment_group_name


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("ENVELOPES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "envelopes.db"
    database_url = os.getenv("ENVELOPES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("ENVELOPES_TIMEZONE", "UTC")
    auth_secret = os.getenv(
        "ENVELOPES_AUTH_SECRET",
        "3f1c9a0e5b7d42c8a6e1f0b9d8c7a6b5e4f3d2c1b0a9f8e7d6c5b4a392817065",
    )
    token_max_age_hours = int(os.getenv("ENVELOPES_TOKEN_MAX_AGE_HOURS", "24"))
    log_level = os.getenv("ENVELOPES_LOG_LEVEL", "INFO").upper()
    payment_group_name = os.getenv(
        "ENVELOPES_PAYMENT_GROUP_NAME", "Credit Card Payments"
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        auth_secret=auth_secret,
        token_max_age_hours=token_max_age_hours,
        log_level=log_level,
        payment_group_name=payment_group_name,
    )
