from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

PACKAGE_DIR = Path(__file__).parent


def _resolve_home() -> Path:
    override = os.getenv("KIDDYGUARD_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return PACKAGE_DIR / "data"


def _env_path(key: str, default: Path) -> Path:
    value = os.getenv(key, "").strip()
    return Path(value).expanduser() if value else default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, "") or default)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, "") or default)
    except ValueError:
        return default


class Settings(BaseModel):
    data_dir: Path = Field(default_factory=_resolve_home)
    database_path: Path = Field(
        default_factory=lambda: _env_path("KIDDYGUARD_DB_PATH", _resolve_home() / "kiddyguard.db")
    )
    question_bank_path: Path = Field(
        default_factory=lambda: _env_path(
            "KIDDYGUARD_QUESTION_BANK", PACKAGE_DIR / "data" / "denver_questions.json",
        )
    )

    # bound on each scope-verification fetch in the review notifier
    verify_timeout_seconds: float = Field(default_factory=lambda: _env_float("KIDDYGUARD_VERIFY_TIMEOUT", 5.0))
    dedup_capacity: int = Field(default_factory=lambda: _env_int("KIDDYGUARD_DEDUP_CAPACITY", 1024))
    sqlite_busy_timeout_seconds: float = 30.0

    default_reviewer_name: str = Field(
        default_factory=lambda: os.getenv("KIDDYGUARD_REVIEWER_NAME", "").strip() or "Dr. Smith"
    )
    log_level: str = Field(default_factory=lambda: os.getenv("KIDDYGUARD_LOG_LEVEL", "INFO").upper())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for CLI/server entry points."""
    logging.basicConfig(
        level=(level or get_settings().log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
