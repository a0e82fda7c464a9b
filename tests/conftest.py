"""
Test configuration and shared fixtures for the reportql test suite.
Provides schema catalogs, an in-memory warehouse with sample data, and an API client.
"""

import os

# Point both databases at in-memory SQLite before reportql reads its settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DATA_WAREHOUSE_URL"] = "sqlite://"
os.environ["SQL_DIALECT"] = "postgresql"

from datetime import datetime
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reportql.app import create_app
from reportql.core.database import Base, get_dw_db
from reportql.core.dependencies import get_result_cache, get_schema_catalog
from reportql.query.catalog import DictSchemaSource, SchemaCatalog, SQLAlchemyRegistrySource
from reportql.query.engine import QueryResultCache
from reportql.query.planner import QueryPlanner
from tests.models import Customer, Order, Vendor, WarehouseBase


# ===== SCHEMA FIXTURES =====


def _field(name, column=None, type_="INTEGER", nullable=True, primary_key=False, unique=False, references=None):
    return {
        "name": name,
        "column": column or name,
        "type": type_,
        "nullable": nullable,
        "primary_key": primary_key,
        "unique": unique,
        "references": references,
    }


@pytest.fixture
def raw_schema() -> Dict[str, Dict[str, Any]]:
    """Raw entity metadata mirroring tests/models.py, plus a schema-qualified Region table."""
    return {
        "Order": {
            "name": "Order",
            "table": "orders",
            "fields": [
                _field("id", primary_key=True, nullable=False),
                _field("customerId", "customer_id", nullable=False, references="Customer"),
                _field("vendorId", "vendor_id", references={"model": "Vendor", "key": "id"}),
                _field("total", type_="FLOAT", nullable=False),
                _field("discount", type_="FLOAT"),
                _field("status", type_="VARCHAR(20)"),
                _field("createdAt", "created_at", type_="DATETIME", nullable=False),
            ],
            "associations": [
                {"alias": "customer", "target": "Customer", "kind": "belongs_to",
                 "foreign_key": "customerId", "source_key": "id"},
                {"alias": "vendor", "target": "Vendor", "kind": "belongs_to",
                 "foreign_key": "vendorId", "source_key": "id"},
            ],
        },
        "Customer": {
            "name": "Customer",
            "table": "customers",
            "fields": [
                _field("id", primary_key=True, nullable=False),
                _field("name", type_="VARCHAR(120)", nullable=False),
                _field("email", type_="VARCHAR(200)", unique=True),
                _field("regionId", "region_id", references={"model": "Region", "key": "id"}),
            ],
            "associations": [
                {"alias": "orders", "target": "Order", "kind": "has_many",
                 "foreign_key": "customerId", "source_key": "id"},
            ],
        },
        "Vendor": {
            "name": "Vendor",
            "table": "vendors",
            "fields": [
                _field("id", primary_key=True, nullable=False),
                _field("name", type_="VARCHAR(120)", nullable=False),
            ],
        },
        "Region": {
            "name": "Region",
            "table": "regions",
            "schema": "geo",
            "fields": [
                _field("id", primary_key=True, nullable=False),
                _field("label", type_="VARCHAR(60)"),
            ],
        },
    }


@pytest.fixture
def dict_catalog(raw_schema) -> SchemaCatalog:
    return SchemaCatalog(DictSchemaSource(raw_schema))


@pytest.fixture
def registry_catalog() -> SchemaCatalog:
    """Catalog introspecting the SQLAlchemy test models."""
    return SchemaCatalog(SQLAlchemyRegistrySource(WarehouseBase))


@pytest.fixture
def planner(dict_catalog) -> QueryPlanner:
    return QueryPlanner(dict_catalog)


# ===== DATABASE SETUP =====


@pytest.fixture
def warehouse_engine():
    """In-memory SQLite warehouse seeded with customers, vendors and orders"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    WarehouseBase.metadata.create_all(bind=engine)

    Session = sessionmaker(bind=engine)
    with Session() as session:
        session.add_all(
            [
                Customer(id=1, name="Ada", email="ada@example.com"),
                Customer(id=2, name="Grace", email="grace@example.com"),
                Vendor(id=1, name="Acme"),
            ]
        )
        session.add_all(
            [
                Order(id=1, customerId=1, vendorId=1, total=100.0, discount=10.0,
                      status="paid", createdAt=datetime(2024, 1, 15)),
                Order(id=2, customerId=1, vendorId=None, total=50.0, discount=None,
                      status="open", createdAt=datetime(2024, 2, 3)),
                Order(id=3, customerId=2, vendorId=1, total=75.5, discount=5.5,
                      status="paid", createdAt=datetime(2024, 2, 20)),
            ]
        )
        session.commit()

    yield engine
    engine.dispose()


@pytest.fixture
def warehouse_session(warehouse_engine):
    """Create a database session for the warehouse database"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=warehouse_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def log_session_factory():
    """Session factory for an in-memory config database holding request logs"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from reportql.logging.models import Log  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def client(warehouse_session, registry_catalog, log_session_factory):
    """Create FastAPI test client with warehouse and catalog overrides"""
    app = create_app(log_session_factory=log_session_factory)
    cache = QueryResultCache(ttl_seconds=300)

    def override_get_dw_db():
        try:
            yield warehouse_session
        finally:
            pass

    app.dependency_overrides[get_dw_db] = override_get_dw_db
    app.dependency_overrides[get_schema_catalog] = lambda: registry_catalog
    app.dependency_overrides[get_result_cache] = lambda: cache

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
