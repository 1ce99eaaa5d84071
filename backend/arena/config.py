"""Runtime settings for the match engine.

Every knob is read from the environment (optionally via a .env file) so the
auto-confirm window and worker cadence can change per deployment without a code
change. Tournaments may still override the auto-confirm window individually.
"""
import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env_int(key: str, fallback: int) -> int:
    try:
        return int(os.getenv(key, ""))
    except ValueError:
        return fallback


def _env_float(key: str, fallback: float) -> float:
    try:
        return float(os.getenv(key, ""))
    except ValueError:
        return fallback


def _env_bool(key: str, fallback: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return fallback
    return raw.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    auto_confirm_minutes: int = 10
    auto_confirm_warning_minutes: int = 5
    no_show_hours: float = 2.0
    live_report_window_minutes: int = 60
    deadline_scan_interval_seconds: int = 60
    deadline_worker_enabled: bool = True
    lock_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_timeout_seconds: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process. Call get_settings.cache_clear() after changing env."""
    return Settings(
        auto_confirm_minutes=_env_int("AUTO_CONFIRM_MINUTES", 10),
        auto_confirm_warning_minutes=_env_int("AUTO_CONFIRM_WARNING_MINUTES", 5),
        no_show_hours=_env_float("NO_SHOW_HOURS", 2.0),
        live_report_window_minutes=_env_int("LIVE_REPORT_WINDOW_MINUTES", 60),
        deadline_scan_interval_seconds=_env_int("DEADLINE_SCAN_INTERVAL_SECONDS", 60),
        deadline_worker_enabled=_env_bool("DEADLINE_WORKER_ENABLED", True),
        lock_timeout_seconds=_env_float("LOCK_TIMEOUT_SECONDS", 5.0),
        max_conflict_retries=max(1, _env_int("MAX_CONFLICT_RETRIES", 3)),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        twilio_timeout_seconds=_env_float("TWILIO_TIMEOUT_SECONDS", 10.0),
    )
