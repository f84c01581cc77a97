import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        identity_secret: str,
        token_max_age_hours: int,
        txn_max_attempts: int,
        default_currency: str,
        recalc_hour: int,
        recalc_minute: int,
        scheduler_enabled: bool,
        stream_poll_secs: float,
        gemini_api_key: str,
        gemini_model: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.identity_secret = identity_secret
        self.token_max_age_hours = token_max_age_hours
        self.txn_max_attempts = txn_max_attempts
        self.default_currency = default_currency
        self.recalc_hour = recalc_hour
        self.recalc_minute = recalc_minute
        self.scheduler_enabled = scheduler_enabled
        self.stream_poll_secs = stream_poll_secs
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("PIGGY_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "piggy.db"
    database_url = os.getenv("PIGGY_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("PIGGY_TIMEZONE", "Asia/Ho_Chi_Minh")
    identity_secret = os.getenv(
        "PIGGY_IDENTITY_SECRET",
        "5c1f0d9a2e7b44f8a0c3b6d1e9f27a4c8b5d0e3f6a9c2b7e1d4f8a0c3b6d9e2f",
    )
    token_max_age_hours = int(os.getenv("PIGGY_TOKEN_MAX_AGE_HOURS", "24"))
    txn_max_attempts = max(1, int(os.getenv("PIGGY_TXN_MAX_ATTEMPTS", "5")))
    default_currency = os.getenv("PIGGY_DEFAULT_CURRENCY", "VND").upper()
    recalc_hour = int(os.getenv("PIGGY_RECALC_HOUR", "3"))
    recalc_minute = int(os.getenv("PIGGY_RECALC_MINUTE", "30"))
    scheduler_enabled = _env_flag("PIGGY_SCHEDULER_ENABLED", "true")
    stream_poll_secs = float(os.getenv("PIGGY_STREAM_POLL_SECS", "2"))
    gemini_api_key = os.getenv("GEMINI_API_KEY", "")
    gemini_model = os.getenv("PIGGY_GEMINI_MODEL", "gemini-2.5-flash-lite")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        identity_secret=identity_secret,
        token_max_age_hours=token_max_age_hours,
        txn_max_attempts=txn_max_attempts,
        default_currency=default_currency,
        recalc_hour=recalc_hour,
        recalc_minute=recalc_minute,
        scheduler_enabled=scheduler_enabled,
        stream_poll_secs=stream_poll_secs,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
    )
