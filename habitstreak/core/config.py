import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Update protocol (read, validate, compute, commit)
    STREAK_TXN_MAX_ATTEMPTS: int = 5
    STREAK_TXN_BASE_DELAY_MS: int = 25
    STREAK_TXN_MAX_DELAY_MS: int = 800
    STREAK_OPERATION_TIMEOUT_SECONDS: float = 10.0

    # Integrity
    STREAK_RECONCILE_TOLERANCE_DAYS: int = 1
    STALE_COMPLETION_HOURS: int = 24

    # Anti-fraud heuristics (advisory only)
    FRAUD_MAX_COMPLETIONS_PER_HOUR: int = 10
    FRAUD_MAX_COMPLETIONS_PER_DAY: int = 50
    FRAUD_MAX_HABITS_SAME_INSTANT: int = 3

    # Streak cache
    STREAK_CACHE_TTL_SECONDS: int = 300
    STREAK_CACHE_MAX_ENTRIES: int = 1000

    # Scheduled sweep
    SWEEP_TIMEOUT_SECONDS: float = 300.0
    SWEEP_WINDOW_HOURS: int = 1

    # Calendar
    CALENDAR_MAX_DAYS: int = 366

    # Audit entries kept in memory while the store rejects writes
    AUDIT_BUFFER_MAX_ENTRIES: int = 1000

    # CORS (comma-separated)
    CORS_ORIGINS: str = "http://localhost:3000"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate engine configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("habitstreak")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if cfg.STREAK_TXN_MAX_ATTEMPTS < 1:
        problems.append("STREAK_TXN_MAX_ATTEMPTS must be >= 1")
    if cfg.STREAK_TXN_BASE_DELAY_MS < 0 or cfg.STREAK_TXN_MAX_DELAY_MS < cfg.STREAK_TXN_BASE_DELAY_MS:
        problems.append("STREAK_TXN_*_DELAY_MS must satisfy 0 <= base <= max")
    if cfg.STREAK_OPERATION_TIMEOUT_SECONDS <= 0:
        problems.append("STREAK_OPERATION_TIMEOUT_SECONDS must be > 0")
    if cfg.STREAK_RECONCILE_TOLERANCE_DAYS < 0:
        problems.append("STREAK_RECONCILE_TOLERANCE_DAYS must be >= 0")
    for key in ("FRAUD_MAX_COMPLETIONS_PER_HOUR", "FRAUD_MAX_COMPLETIONS_PER_DAY", "FRAUD_MAX_HABITS_SAME_INSTANT"):
        if getattr(cfg, key) <= 0:
            problems.append(f"{key} must be > 0")
    if cfg.CALENDAR_MAX_DAYS < 1:
        problems.append("CALENDAR_MAX_DAYS must be >= 1")
    if cfg.AUDIT_BUFFER_MAX_ENTRIES < 1:
        problems.append("AUDIT_BUFFER_MAX_ENTRIES must be >= 1")

    if not cfg.DATABASE_URL:
        log.warning("DATABASE_URL not set; habit data will be kept in memory only")

    if problems:
        message = f"Invalid configuration: {'; '.join(problems)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
