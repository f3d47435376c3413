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
        reset_token_hours: int,
        auto_create_schema: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.reset_token_hours = reset_token_hours
        self.auto_create_schema = auto_create_schema


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    secret_key = os.getenv(
        "LEDGER_SECRET_KEY",
        "6f0c1d8e2a4b47a39c51e7d2b8f04a6ce13d9b7a25f84c6e90d1b3a7c5e2f846",
    )
    token_max_age_hours = int(os.getenv("LEDGER_TOKEN_MAX_AGE_HOURS", "24"))
    reset_token_hours = int(os.getenv("LEDGER_RESET_TOKEN_HOURS", "24"))
    auto_create_schema = _env_flag("LEDGER_AUTO_CREATE_SCHEMA", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_hours=token_max_age_hours,
        reset_token_hours=reset_token_hours,
        auto_create_schema=auto_create_schema,
    )
