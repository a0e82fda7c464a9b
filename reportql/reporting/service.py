# reportql/reporting/service.py
"""Reporting service: glue between API schemas and the query compilation core."""

import logging
from typing import List, Optional

from fastapi import HTTPException

from reportql.query.catalog import SchemaCatalog
from reportql.query.engine import QueryEngine, compute_query_hash, format_sql
from reportql.query.errors import ExpressionSyntaxError
from reportql.query.expressions import expression_to_ast, normalize_expression_ast, parse_expression
from reportql.query.graph import compute_model_graph_signature
from reportql.query.planner import QueryPlanner
from reportql.query.schemas import CompiledQuery, QueryResult
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

logger = logging.getLogger(__name__)


class ReportQueryService:
    """Compiles, previews and runs reporting queries."""

    def __init__(self, planner: QueryPlanner, engine: Optional[QueryEngine] = None):
        self.planner = planner
        self.engine = engine

    @property
    def catalog(self) -> SchemaCatalog:
        return self.planner.catalog

    # ===== SCHEMA =====

    def describe_schema(self) -> List[EntityRead]:
        return [EntityRead.model_validate(entity) for entity in self.planner.describe_schema()]

    def refresh_schema(self) -> List[EntityRead]:
        return [EntityRead.model_validate(entity) for entity in self.planner.refresh_schema()]

    # ===== COMPILATION =====

    def compile_preview(self, request: FlatQueryRequest) -> CompiledQueryRead:
        spec = request.to_spec()
        return self._compiled_read(self.planner.plan_flat_query(spec), compute_query_hash(spec))

    def compile_query(self, request: AggregatedQueryRequest) -> CompiledQueryRead:
        spec = request.to_spec()
        return self._compiled_read(self.planner.plan_aggregated_query(spec), compute_query_hash(spec))

    # ===== EXECUTION =====

    def run_preview(self, request: FlatQueryRequest) -> QueryResultRead:
        compiled = self.planner.plan_flat_query(request.to_spec())
        return self._result_read(self._require_engine().execute(compiled))

    def run_query(self, request: AggregatedQueryRequest) -> QueryResultRead:
        spec = request.to_spec()
        compiled = self.planner.plan_aggregated_query(spec)
        result = self._require_engine().run(
            compiled, cache_key=compute_query_hash(spec), use_cache=request.use_cache
        )
        return self._result_read(result)

    # ===== DERIVED FIELD AUTHORING =====

    def normalize_derived_field(self, request: NormalizeDerivedFieldRequest) -> NormalizedDerivedFieldRead:
        if request.expression_ast is not None:
            normalized = normalize_expression_ast(request.expression_ast)
            if normalized is None:
                raise HTTPException(status_code=400, detail="Expression tree is malformed or uses unsupported operators")
        elif request.expression:
            try:
                normalized = parse_expression(request.expression)
            except ExpressionSyntaxError as e:
                raise HTTPException(status_code=400, detail=str(e))
        else:
            raise HTTPException(status_code=400, detail="Provide expression_ast or expression")

        missing_models, missing_fields = self.catalog.find_missing_references(normalized.referenced_fields)
        if missing_models or missing_fields:
            logger.warning(
                "Derived field references unknown models %s or fields %s", missing_models, missing_fields
            )
        return NormalizedDerivedFieldRead(
            expression_ast=expression_to_ast(normalized.expression),
            referenced_models=list(normalized.referenced_models),
            referenced_fields=normalized.referenced_fields,
            join_dependencies=list(normalized.join_dependencies),
            missing_models=missing_models,
            missing_fields=missing_fields,
        )

    def graph_signature(self, request: GraphSignatureRequest) -> GraphSignatureRead:
        signature = compute_model_graph_signature(request.entities, [edge.to_edge() for edge in request.joins])
        return GraphSignatureRead(model_graph_signature=signature)

    # ===== HELPERS =====

    def _require_engine(self) -> QueryEngine:
        if self.engine is None:
            raise HTTPException(status_code=503, detail="Query execution is not configured")
        return self.engine

    @staticmethod
    def _compiled_read(compiled: CompiledQuery, query_hash: str) -> CompiledQueryRead:
        return CompiledQueryRead(
            sql=compiled.sql,
            formatted_sql=format_sql(compiled.sql),
            columns=list(compiled.columns),
            parameters=compiled.parameters,
            metadata=compiled.metadata,
            limit=compiled.limit,
            query_hash=query_hash,
        )

    @staticmethod
    def _result_read(result: QueryResult) -> QueryResultRead:
        return QueryResultRead(
            rows=result.rows,
            columns=result.columns,
            sql=result.sql,
            parameters=result.parameters,
            metadata=result.metadata,
        )
