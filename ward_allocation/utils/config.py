"""Environment-driven application settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_path: Path
    log_level: str
    bed_reconciliation_tolerance: int
    floating_pca_priority_order: str
    schedule_cache_ttl_seconds: int
    schedule_cache_max_entries: int
    seed_demo_roster: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process; tests call ``cache_clear`` to reload."""
    return Settings(
        app_name=os.getenv("APP_NAME", "Ward Staff Allocation Engine"),
        app_version=os.getenv("APP_VERSION", "0.1.0"),
        database_path=Path(
            os.getenv("DATABASE_PATH", str(PROJECT_ROOT / "data" / "ward_allocation.db"))
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        bed_reconciliation_tolerance=_env_int("BED_RECONCILIATION_TOLERANCE", 1),
        floating_pca_priority_order=os.getenv(
            "FLOATING_PCA_PRIORITY_ORDER", "preference_then_id"
        ),
        schedule_cache_ttl_seconds=_env_int("SCHEDULE_CACHE_TTL_SECONDS", 300),
        schedule_cache_max_entries=_env_int("SCHEDULE_CACHE_MAX_ENTRIES", 128),
        seed_demo_roster=_env_bool("SEED_DEMO_ROSTER", True),
    )
