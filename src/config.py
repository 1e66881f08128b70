from __future__ import annotations

from decimal import Decimal
from functools import cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ARTIFACTS_DIR = PROJECT_ROOT / "artifacts"
DB_FILE = ARTIFACTS_DIR / "crypto_audit.db"


class AppSettings(BaseSettings):
    db_file: Path = DB_FILE
    # Cross-source linking tolerances.
    link_time_window_hours: int = 4
    link_value_tolerance: Decimal = Decimal("0.10")
    offramp_window_hours: int = 24
    # Exchange history loaded before the tax year to seed lots.
    exchange_lookback_years: int = 3
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 2.0
    default_currency: str = "USD"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="CRYPTO_AUDIT_", extra="ignore"
    )


@cache
def config() -> AppSettings:
    return AppSettings()
