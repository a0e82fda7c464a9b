# reportql/core/database.py
"""Database configuration: config database (request logs) and data warehouse (queried data)."""

import importlib
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from reportql.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _connect_args(url: str) -> dict:
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


# ===== CONFIG DATABASE =====
# Stores request logs
DATABASE_URL = settings.database_url

engine = create_engine(DATABASE_URL, connect_args=_connect_args(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


# ===== DATA WAREHOUSE DATABASE =====
# Holds the entities exposed to the query builder. Models register on DWBase.
DATA_WAREHOUSE_URL = settings.data_warehouse_url

dw_engine = create_engine(DATA_WAREHOUSE_URL, connect_args=_connect_args(DATA_WAREHOUSE_URL))
DWSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=dw_engine)
DWBase = declarative_base()


# ===== SESSION GENERATORS =====


def get_db():
    """Get config database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_dw_db():
    """Get data warehouse database session."""
    db = DWSessionLocal()
    try:
        yield db
    finally:
        db.close()


# ===== STARTUP =====


def load_warehouse_models() -> None:
    """Import the configured warehouse model modules so their mappers register on DWBase."""
    for module_name in settings.warehouse_models:
        importlib.import_module(module_name)
        logger.info("Loaded warehouse models from %s", module_name)


def init_db() -> None:
    """Create config tables and register warehouse models."""
    from reportql.logging.models import Log  # noqa: F401

    Base.metadata.create_all(bind=engine)
    load_warehouse_models()
