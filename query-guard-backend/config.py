"""
QueryGuard configuration.

All settings come from environment variables; a local .env file is loaded
first so development setups behave like deployed ones.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {name}={raw!r}; using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {name}={raw!r}; using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class GuardSettings:
    database_url: Optional[str] = None
    max_rows: int = 10_000
    timeout_seconds: float = 30.0
    cache_ttl_seconds: int = 3600
    cache_max_size: int = 500
    # Sampling is switched off in production; full results are returned
    sampling_enabled: bool = False
    sampling_threshold: int = 50
    sample_max_rows: int = 50
    profile_row_limit: int = 1000
    dataset_schema: str = "csv_to_table"
    strict_table_identity: bool = False
    pool_size: int = 5
    max_overflow: int = 5
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GuardSettings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            max_rows=_env_int("QUERY_MAX_ROWS", 10_000),
            timeout_seconds=_env_float("QUERY_TIMEOUT_SECONDS", 30.0),
            cache_ttl_seconds=_env_int("QUERY_CACHE_TTL_SECONDS", 3600),
            cache_max_size=_env_int("QUERY_CACHE_MAX_SIZE", 500),
            sampling_enabled=_env_bool("SAMPLING_ENABLED", False),
            sampling_threshold=_env_int("SAMPLING_THRESHOLD", 50),
            sample_max_rows=_env_int("SAMPLE_MAX_ROWS", 50),
            profile_row_limit=_env_int("PROFILE_ROW_LIMIT", 1000),
            dataset_schema=os.getenv("DATASET_SCHEMA", "csv_to_table"),
            strict_table_identity=_env_bool("STRICT_TABLE_IDENTITY", False),
            pool_size=_env_int("DB_POOL_SIZE", 5),
            max_overflow=_env_int("DB_MAX_OVERFLOW", 5),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
