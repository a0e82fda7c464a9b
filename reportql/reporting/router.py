"""API router for the reporting query builder."""

from typing import List

from fastapi import APIRouter, Depends

from reportql.core.dependencies import get_report_query_service
from reportql.reporting.schemas import (
    AggregatedQueryRequest,
    CompiledQueryRead,
    EntityRead,
    FlatQueryRequest,
    GraphSignatureRead,
    GraphSignatureRequest,
    NormalizeDerivedFieldRequest,
    NormalizedDerivedFieldRead,
    QueryResultRead,
)
from reportql.reporting.service import ReportQueryService

router = APIRouter(prefix="/reporting", tags=["reporting"])


# ===== SCHEMA ENDPOINTS =====


@router.get("/schema", response_model=List[EntityRead])
def describe_schema(service: ReportQueryService = Depends(get_report_query_service)) -> List[EntityRead]:
    """List every queryable entity with its fields and associations."""
    return service.describe_schema()


@router.post("/schema/refresh", response_model=List[EntityRead])
def refresh_schema(service: ReportQueryService = Depends(get_report_query_service)) -> List[EntityRead]:
    """Drop cached descriptors and re-enumerate the schema."""
    return service.refresh_schema()


# ===== PREVIEW (FLAT PROJECTION) ENDPOINTS =====


@router.post("/preview/compile", response_model=CompiledQueryRead)
def compile_preview(
    request: FlatQueryRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> CompiledQueryRead:
    return service.compile_preview(request)


@router.post("/preview/run", response_model=QueryResultRead)
def run_preview(
    request: FlatQueryRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> QueryResultRead:
    return service.run_preview(request)


# ===== AGGREGATED QUERY ENDPOINTS =====


@router.post("/query/compile", response_model=CompiledQueryRead)
def compile_query(
    request: AggregatedQueryRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> CompiledQueryRead:
    return service.compile_query(request)


@router.post("/query/run", response_model=QueryResultRead)
def run_query(
    request: AggregatedQueryRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> QueryResultRead:
    return service.run_query(request)


# ===== DERIVED FIELD ENDPOINTS =====


@router.post("/derived-fields/normalize", response_model=NormalizedDerivedFieldRead)
def normalize_derived_field(
    request: NormalizeDerivedFieldRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> NormalizedDerivedFieldRead:
    """Validate a derived field expression and report what it references."""
    return service.normalize_derived_field(request)


@router.post("/derived-fields/signature", response_model=GraphSignatureRead)
def graph_signature(
    request: GraphSignatureRequest, service: ReportQueryService = Depends(get_report_query_service)
) -> GraphSignatureRead:
    """Model graph signature to store with a derived field authored against these joins."""
    return service.graph_signature(request)
