import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        session_max_age_hours: int,
        magic_link_max_age_minutes: int,
        quick_add_keys: dict[str, str],
        reconcile_fix: bool,
        reconcile_interval_hours: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.session_max_age_hours = session_max_age_hours
        self.magic_link_max_age_minutes = magic_link_max_age_minutes
        self.quick_add_keys = quick_add_keys
        self.reconcile_fix = reconcile_fix
        self.reconcile_interval_hours = reconcile_interval_hours


def parse_quick_add_keys(raw: str) -> dict[str, str]:
    """Parse ``email:key,email:key`` into a key -> email map."""
    keys: dict[str, str] = {}
    for pair in (raw or "").split(","):
        email, sep, key = pair.strip().partition(":")
        if not sep:
            continue
        email = email.strip()
        key = key.strip()
        if email and key:
            keys[key] = email
    return keys


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("HOUSEHOLD_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "household.db"
    database_url = os.getenv("HOUSEHOLD_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("HOUSEHOLD_TIMEZONE", "Asia/Ho_Chi_Minh")
    secret_key = os.getenv(
        "HOUSEHOLD_SECRET_KEY",
        "4f1c2b7e9a0d46c8b1e35f7a2d9c6e08b3a5f1d7c9e2b4a6d8f0c1e3a5b7d9f2",
    )
    session_max_age_hours = int(os.getenv("HOUSEHOLD_SESSION_MAX_AGE_HOURS", "336"))
    magic_link_max_age_minutes = int(
        os.getenv("HOUSEHOLD_MAGIC_LINK_MAX_AGE_MINUTES", "60")
    )
    raw_keys = os.getenv("HOUSEHOLD_QUICK_ADD_KEYS") or os.getenv("QUICK_ADD_KEYS", "")
    reconcile_fix = _env_flag("HOUSEHOLD_RECONCILE_FIX", "true")
    reconcile_interval_hours = int(
        os.getenv("HOUSEHOLD_RECONCILE_INTERVAL_HOURS", "6")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        session_max_age_hours=session_max_age_hours,
        magic_link_max_age_minutes=magic_link_max_age_minutes,
        quick_add_keys=parse_quick_add_keys(raw_keys),
        reconcile_fix=reconcile_fix,
        reconcile_interval_hours=reconcile_interval_hours,
    )
