# reportql/core/config.py
"""Environment-driven settings for the reporting service."""

import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


class Settings:
    """Runtime configuration, read once from the process environment."""

    def __init__(self) -> None:
        # ===== DATABASES =====
        self.database_url: str = os.getenv("DATABASE_URL", "sqlite:///./reportql_config.db")
        self.data_warehouse_url: str = os.getenv(
            "DATA_WAREHOUSE_URL", "sqlite:///./reportql_warehouse.db"
        )
        self.warehouse_models: List[str] = [
            module.strip()
            for module in os.getenv("WAREHOUSE_MODELS", "").split(",")
            if module.strip()
        ]

        # ===== QUERY COMPILATION =====
        self.sql_dialect: str = os.getenv("SQL_DIALECT", "postgresql")
        self.preview_default_limit: int = _int_env("PREVIEW_DEFAULT_LIMIT", 200)
        self.preview_max_limit: int = _int_env("PREVIEW_MAX_LIMIT", 1000)
        self.query_default_limit: int = _int_env("QUERY_DEFAULT_LIMIT", 500)
        self.query_max_limit: int = _int_env("QUERY_MAX_LIMIT", 10000)

        # ===== EXECUTION =====
        self.report_cache_ttl_seconds: int = _int_env("REPORT_CACHE_TTL_SECONDS", 300)

        # ===== LOGGING =====
        self.application_id: str = os.getenv("APPLICATION_ID", "Unknown")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings object."""
    return Settings()
