"""
Centralised settings for the targeting core (env-first, code-light).

Scoring weights are validated here so a bad deployment fails at startup
rather than on the first scored item.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from targeting.schemas import ScoringWeights, build_weights

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_OUTLETS_PATH = PACKAGE_DIR / "config" / "outlets.yaml"


@dataclass
class TargetingSettings:
    db_path: Path
    outlets_path: Path
    weights: ScoringWeights
    notable_threshold: float
    min_approved_matches: int
    monitor_concurrency: int
    monitor_timeout_seconds: float
    monitor_interval_minutes: int
    rematch_lookback_hours: int
    read_retries: int
    read_backoff_seconds: float
    log_level: str


def _number_from_env(key: str, default, cast=float, floor=None):
    """Parse a numeric env var; unparsable values or values under `floor` keep `default`."""
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("%s=%r is not a valid %s; using default %s", key, raw, cast.__name__, default)
        return default
    if floor is not None and value < floor:
        logger.warning("%s=%s is below %s; using default %s", key, raw, floor, default)
        return default
    return value


def _count(key: str, default: int) -> int:
    return _number_from_env(key, default, int, floor=1)


def _seconds(key: str, default: float) -> float:
    return _number_from_env(key, default, float, floor=0.0)


def load_settings() -> TargetingSettings:
    db_path_env = os.getenv("TARGETING_DB_PATH")
    outlets_env = os.getenv("TARGETING_OUTLETS_PATH")
    # Weights are passed through unclamped; build_weights rejects bad ones.
    weights = build_weights(
        relevance=_number_from_env("TARGETING_WEIGHT_RELEVANCE", 0.5),
        visibility=_number_from_env("TARGETING_WEIGHT_VISIBILITY", 0.3),
        freshness=_number_from_env("TARGETING_WEIGHT_FRESHNESS", 0.2),
    )
    return TargetingSettings(
        db_path=Path(db_path_env) if db_path_env else Path("targeting_data.db"),
        outlets_path=Path(outlets_env) if outlets_env else DEFAULT_OUTLETS_PATH,
        weights=weights,
        notable_threshold=_number_from_env("TARGETING_NOTABLE_THRESHOLD", 0.5, floor=0.0),
        min_approved_matches=_count("TARGETING_MIN_APPROVED_MATCHES", 3),
        monitor_concurrency=_count("TARGETING_MONITOR_CONCURRENCY", 4),
        monitor_timeout_seconds=_seconds("TARGETING_MONITOR_TIMEOUT", 30.0),
        monitor_interval_minutes=_count("TARGETING_MONITOR_INTERVAL_MINUTES", 15),
        rematch_lookback_hours=_count("TARGETING_REMATCH_LOOKBACK_HOURS", 72),
        read_retries=_count("TARGETING_READ_RETRIES", 3),
        read_backoff_seconds=_seconds("TARGETING_READ_BACKOFF", 0.2),
        log_level=(os.getenv("TARGETING_LOG_LEVEL") or "INFO").upper(),
    )
