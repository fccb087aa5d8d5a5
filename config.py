"""
Kodisha Payments Configuration

Reads process settings from the environment (and a local .env file).

Required:
- DATABASE_URL
- JWT_SECRET_KEY (or SECRET_KEY)
- MPESA_* credentials (validated by services.mpesa.MpesaConfig)
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

PAYOUT_CONFIRMATION_MODES = ("callback", "acceptance")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class Settings:
    """Process-wide settings, built once by the entry point."""
    database_url: str
    jwt_secret_key: str
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    # Payouts
    payout_confirmation_mode: str = "callback"

    # Reconciliation sweep
    reconcile_pending_after_seconds: int = 300
    reconcile_orphan_after_seconds: int = 900
    reconcile_fail_orphans: bool = False
    reconcile_batch_size: int = 100
    reconcile_payout_after_seconds: int = 1800

    def __post_init__(self):
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable not set!")
        if not self.jwt_secret_key:
            raise ValueError("JWT_SECRET_KEY (or SECRET_KEY) environment variable not set!")
        if self.payout_confirmation_mode not in PAYOUT_CONFIRMATION_MODES:
            raise ValueError(
                f"PAYOUT_CONFIRMATION_MODE must be one of {PAYOUT_CONFIRMATION_MODES}, "
                f"got {self.payout_confirmation_mode!r}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        load_dotenv()

        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")

        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY") or os.getenv("SECRET_KEY") or "",
            app_env=os.getenv("APP_ENV", "development"),
            app_host=os.getenv("APP_HOST", "0.0.0.0"),
            app_port=_env_int("APP_PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            payout_confirmation_mode=os.getenv("PAYOUT_CONFIRMATION_MODE", "callback").lower(),
            reconcile_pending_after_seconds=_env_int("RECONCILE_PENDING_AFTER_SECONDS", 300),
            reconcile_orphan_after_seconds=_env_int("RECONCILE_ORPHAN_AFTER_SECONDS", 900),
            reconcile_fail_orphans=_env_bool("RECONCILE_FAIL_ORPHANS", False),
            reconcile_batch_size=_env_int("RECONCILE_BATCH_SIZE", 100),
            reconcile_payout_after_seconds=_env_int("RECONCILE_PAYOUT_AFTER_SECONDS", 1800),
        )


@dataclass
class WorkerSettings:
    """
    Celery broker and beat settings.

    Read when payments.tasks.celery_app is imported, so nothing here is
    required.
    """
    redis_url: str = "redis://localhost:6379/0"
    reconcile_interval_minutes: int = 5

    def __post_init__(self):
        if self.reconcile_interval_minutes < 1:
            raise ValueError(
                f"RECONCILE_INTERVAL_MINUTES must be at least 1, got {self.reconcile_interval_minutes}"
            )

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        load_dotenv()
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            reconcile_interval_minutes=_env_int("RECONCILE_INTERVAL_MINUTES", 5),
        )
