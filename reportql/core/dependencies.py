# reportql/core/dependencies.py
"""Dependencies for the reporting query service."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from reportql.core.config import get_settings
from reportql.core.database import DWBase, get_db, get_dw_db
from reportql.query.catalog import SchemaCatalog, SQLAlchemyRegistrySource
from reportql.query.engine import QueryEngine, QueryResultCache
from reportql.query.planner import QueryPlanner

# Core database dependencies
SessionDep = Annotated[Session, Depends(get_db)]
DWSessionDep = Annotated[Session, Depends(get_dw_db)]


@lru_cache()
def get_schema_catalog() -> SchemaCatalog:
    """Process-wide catalog over the warehouse models registered on DWBase."""
    return SchemaCatalog(SQLAlchemyRegistrySource(DWBase))


@lru_cache()
def get_result_cache() -> QueryResultCache:
    return QueryResultCache(ttl_seconds=get_settings().report_cache_ttl_seconds)


def get_query_planner(catalog: SchemaCatalog = Depends(get_schema_catalog)) -> QueryPlanner:
    return QueryPlanner.from_settings(catalog, get_settings())


def get_query_engine(
    dw_db: DWSessionDep, cache: QueryResultCache = Depends(get_result_cache)
) -> QueryEngine:
    return QueryEngine(dw_db, cache=cache)


def get_report_query_service(
    planner: QueryPlanner = Depends(get_query_planner),
    engine: QueryEngine = Depends(get_query_engine),
):
    """Get the reporting query service with planner and execution engine"""
    from reportql.reporting.service import ReportQueryService

    return ReportQueryService(planner, engine)
