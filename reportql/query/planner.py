"""
QueryPlanner: compiles flat (preview) and aggregated query specs into SQL.

Both modes share one pipeline:

1. assign entity aliases ``m0``, ``m1``, ... in entity-list order
2. resolve the base entity's FROM clause
3. resolve joins (JoinResolver)
4. validate derived fields against the resolved graph (DerivedFieldGraphValidator)
5. compile the SELECT list, WHERE clause and, in aggregated mode, GROUP BY / ORDER BY
6. clamp and append LIMIT

Every stage either refines the plan or raises a QueryCompilationError; there is
no partial result.
"""

import hashlib
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from .catalog import SchemaCatalog
from .dialect import SqlDialect
from .errors import (
    DerivedFieldStale,
    EmptyProjection,
    InvalidFilterValue,
    JoinUnresolved,
    QueryCompilationError,
    UnknownEntity,
    UnknownField,
    UnsafeFilterFragment,
    UnsupportedOperator,
)
from .expressions import ExpressionCompiler
from .graph import DerivedFieldGraphValidator, compute_model_graph_signature
from .joins import JoinResolution, JoinResolver
from .schemas import (
    AggregatedQuerySpec,
    AggregationFunction,
    CompiledQuery,
    DerivedFieldDefinition,
    DerivedFieldKind,
    EntityDescriptor,
    Filter,
    FilterOperator,
    FlatQuerySpec,
    SortDirection,
    TimeBucket,
)

logger = logging.getLogger(__name__)

# Raw filter fragments are checked against this blocklist only; it is not a parser.
FORBIDDEN_FILTER_TOKENS = (";", "--")

COMPARISON_OPERATORS = {
    FilterOperator.EQ: "=",
    FilterOperator.NEQ: "<>",
    FilterOperator.GT: ">",
    FilterOperator.GTE: ">=",
    FilterOperator.LT: "<",
    FilterOperator.LTE: "<=",
}


def _coerce_enum(enum_cls: Type, value: Any, category: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise UnsupportedOperator(category, value, [member.value for member in enum_cls]) from None


def _clamp_limit(limit: Any, default: int, maximum: int) -> int:
    if limit is None:
        return default
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default
    return max(1, min(maximum, value))


@dataclass
class _PlanContext:
    entities: List[str]
    alias_of: Dict[str, str]
    base_entity: str
    from_clause: str
    joins: JoinResolution
    signature: str


class QueryPlanner:
    """Compiles query specs to SQL text plus named parameters."""

    def __init__(
        self,
        catalog: SchemaCatalog,
        dialect: Optional[SqlDialect] = None,
        preview_default_limit: int = 200,
        preview_max_limit: int = 1000,
        query_default_limit: int = 500,
        query_max_limit: int = 10000,
    ):
        self.catalog = catalog
        self.dialect = dialect or SqlDialect()
        self.join_resolver = JoinResolver(catalog, self.dialect)
        self.expression_compiler = ExpressionCompiler(catalog, self.dialect)
        self.derived_field_validator = DerivedFieldGraphValidator()
        self.preview_default_limit = preview_default_limit
        self.preview_max_limit = preview_max_limit
        self.query_default_limit = query_default_limit
        self.query_max_limit = query_max_limit

    @classmethod
    def from_settings(cls, catalog: SchemaCatalog, settings) -> "QueryPlanner":
        return cls(
            catalog,
            dialect=SqlDialect(settings.sql_dialect),
            preview_default_limit=settings.preview_default_limit,
            preview_max_limit=settings.preview_max_limit,
            query_default_limit=settings.query_default_limit,
            query_max_limit=settings.query_max_limit,
        )

    # ===== SCHEMA =====

    def describe_schema(self) -> List[EntityDescriptor]:
        """Every entity available to query builders."""
        return self.catalog.describe_all()

    def refresh_schema(self) -> List[EntityDescriptor]:
        self.catalog.clear()
        return self.catalog.describe_all()

    # ===== FLAT PROJECTION =====

    def plan_flat_query(self, spec: FlatQuerySpec) -> CompiledQuery:
        """Compile a preview query: one column per requested (entity, field) pair."""
        ctx = self._prepare(spec.entities, spec.joins, spec)

        select_items: List[str] = []
        columns: List[str] = []
        selected_fields: List[Dict[str, str]] = []
        skipped_fields: List[Dict[str, str]] = []

        for entity, field_names in spec.fields.items():
            if entity not in ctx.alias_of:
                skipped_fields.extend({"entity": entity, "field": name} for name in field_names or [])

        for entity in ctx.entities:
            descriptor = self.catalog.describe(entity)
            for field_name in spec.fields.get(entity) or []:
                field = descriptor.get_field(field_name)
                if field is None:
                    skipped_fields.append({"entity": entity, "field": field_name})
                    continue
                alias = self.field_alias(entity, field_name)
                if alias in columns:
                    continue
                column_sql = self.dialect.column(ctx.alias_of[entity], field.column_name)
                select_items.append(f"{column_sql} AS {self.dialect.quote(alias)}")
                columns.append(alias)
                selected_fields.append({"entity": entity, "field": field.name, "alias": alias})

        derived_meta = self._compile_derived_fields(ctx, spec.derived_fields, select_items, columns)

        if not select_items:
            raise EmptyProjection(
                "Select at least one field that exists on the requested entities",
                details={"skipped_fields": skipped_fields},
            )
        if skipped_fields:
            logger.warning("Skipped %d unresolvable field(s) in preview query", len(skipped_fields))

        where_clause = self._compile_raw_filters(spec.filters)
        limit = _clamp_limit(spec.limit, self.preview_default_limit, self.preview_max_limit)

        lines = [f"SELECT {', '.join(select_items)}", ctx.from_clause, *ctx.joins.clauses]
        if where_clause:
            lines.append(f"WHERE {where_clause}")
        lines.append(f"LIMIT {limit}")

        metadata = self._base_metadata("flat", ctx)
        metadata.update(
            {
                "fields": selected_fields,
                "skipped_fields": skipped_fields,
                "derived_fields": derived_meta,
            }
        )
        return self._finish(lines, columns, {}, metadata, limit)

    # ===== AGGREGATED =====

    def plan_aggregated_query(self, spec: AggregatedQuerySpec) -> CompiledQuery:
        """Compile a metrics/dimensions query grouped by every dimension."""
        if not spec.metrics:
            raise EmptyProjection("Aggregated queries require at least one metric")

        ctx = self._prepare(spec.entities, spec.joins, spec)

        select_items: List[str] = []
        columns: List[str] = []
        group_by: List[str] = []
        dimension_meta: List[Dict[str, Any]] = []
        metric_meta: List[Dict[str, Any]] = []

        for dimension in spec.dimensions:
            column_sql = self._column_sql(ctx, dimension.entity, dimension.field)
            bucket = _coerce_enum(TimeBucket, dimension.bucket, "time bucket") if dimension.bucket else None
            expression = f"date_trunc('{bucket.value}', {column_sql})" if bucket else column_sql
            alias = dimension.alias or self.field_alias(dimension.entity, dimension.field)
            if bucket and not dimension.alias:
                alias = f"{alias}__{bucket.value}"
            self._add_select(select_items, columns, expression, alias)
            group_by.append(expression)
            dimension_meta.append(
                {
                    "alias": alias,
                    "entity": dimension.entity,
                    "field": dimension.field,
                    "bucket": bucket.value if bucket else None,
                }
            )

        for metric in spec.metrics:
            aggregation = _coerce_enum(AggregationFunction, metric.aggregation, "aggregation")
            if metric.field == "*":
                if aggregation != AggregationFunction.COUNT:
                    raise UnknownField(metric.entity, "*", "Only count may aggregate over '*'")
                if metric.entity not in ctx.alias_of:
                    raise UnknownEntity(metric.entity, f"Entity '{metric.entity}' is not part of this query")
                expression = "COUNT(*)"
            else:
                expression = self._aggregate(aggregation, self._column_sql(ctx, metric.entity, metric.field))
            alias = metric.alias or f"{self.field_alias(metric.entity, metric.field)}__{aggregation.value}"
            self._add_select(select_items, columns, expression, alias)
            metric_meta.append(
                {
                    "alias": alias,
                    "entity": metric.entity,
                    "field": metric.field,
                    "aggregation": aggregation.value,
                }
            )

        derived_meta = self._compile_derived_fields(
            ctx, spec.derived_fields, select_items, columns, group_by=group_by
        )

        parameters: Dict[str, Any] = {}
        conditions = [
            self._compile_filter(ctx, index, flt, parameters) for index, flt in enumerate(spec.filters)
        ]

        order_terms, ignored_order_by = self._compile_order_by(spec.order_by, columns)
        limit = _clamp_limit(spec.limit, self.query_default_limit, self.query_max_limit)

        lines = [f"SELECT {', '.join(select_items)}", ctx.from_clause, *ctx.joins.clauses]
        if conditions:
            lines.append(f"WHERE {' AND '.join(conditions)}")
        if group_by:
            lines.append(f"GROUP BY {', '.join(group_by)}")
        if order_terms:
            lines.append(f"ORDER BY {', '.join(order_terms)}")
        lines.append(f"LIMIT {limit}")

        metadata = self._base_metadata("aggregated", ctx)
        metadata.update(
            {
                "metrics": metric_meta,
                "dimensions": dimension_meta,
                "derived_fields": derived_meta,
                "ignored_order_by": ignored_order_by,
            }
        )
        return self._finish(lines, columns, parameters, metadata, limit)

    # ===== SHARED PIPELINE =====

    def _prepare(self, entities: Sequence[str], joins, spec) -> _PlanContext:
        ordered: List[str] = []
        for entity in entities:
            entity = (entity or "").strip()
            if entity and entity not in ordered:
                ordered.append(entity)
        if not ordered:
            raise EmptyProjection("At least one entity is required")

        alias_of = {entity: f"m{index}" for index, entity in enumerate(ordered)}
        for entity in ordered:
            self.catalog.describe(entity)

        base_entity = ordered[0]
        base = self.catalog.describe(base_entity)
        from_clause = f"FROM {self.dialect.table(base.table_name, base.schema)} {alias_of[base_entity]}"

        resolution = self.join_resolver.resolve(joins, alias_of, base_entity)

        issues = self.derived_field_validator.validate(
            spec.derived_fields, replace(spec, entities=tuple(ordered)), resolution.connected
        )
        if issues:
            raise DerivedFieldStale([issue.to_dict() for issue in issues])

        if resolution.unresolved:
            raise JoinUnresolved([item.to_dict() for item in resolution.unresolved], base_entity)

        return _PlanContext(
            entities=ordered,
            alias_of=alias_of,
            base_entity=base_entity,
            from_clause=from_clause,
            joins=resolution,
            signature=compute_model_graph_signature(spec.entities, joins),
        )

    def _column_sql(self, ctx: _PlanContext, entity: str, field_name: str) -> str:
        alias = ctx.alias_of.get(entity)
        if alias is None:
            raise UnknownEntity(entity, f"Entity '{entity}' is not part of this query")
        field = self.catalog.resolve_field(entity, field_name)
        return self.dialect.column(alias, field.column_name)

    def _add_select(self, select_items: List[str], columns: List[str], expression: str, alias: str) -> None:
        if alias in columns:
            raise QueryCompilationError(f"Duplicate output alias '{alias}'", details={"alias": alias})
        select_items.append(f"{expression} AS {self.dialect.quote(alias)}")
        columns.append(alias)

    @staticmethod
    def _aggregate(aggregation: AggregationFunction, expression: str) -> str:
        if aggregation == AggregationFunction.COUNT_DISTINCT:
            return f"COUNT(DISTINCT {expression})"
        return f"{aggregation.value.upper()}({expression})"

    def _compile_derived_fields(
        self,
        ctx: _PlanContext,
        derived_fields: Sequence[DerivedFieldDefinition],
        select_items: List[str],
        columns: List[str],
        group_by: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Append derived fields to the select list.

        In aggregated mode (``group_by`` given) an aggregate derived field is
        wrapped in its aggregation; a row derived field becomes a GROUP BY term.
        """
        compiled = []
        for position, definition in enumerate(derived_fields):
            fragment = self.expression_compiler.compile(definition.expression, ctx.alias_of)
            alias = definition.output_alias(position)
            expression = fragment
            aggregation = None
            if group_by is not None:
                if definition.aggregation or definition.kind == DerivedFieldKind.AGGREGATE:
                    aggregation = _coerce_enum(
                        AggregationFunction, definition.aggregation or AggregationFunction.SUM, "aggregation"
                    )
                    expression = self._aggregate(aggregation, fragment)
                else:
                    group_by.append(fragment)
            self._add_select(select_items, columns, expression, alias)

            fragment_hash = hashlib.sha256(fragment.encode("utf-8")).hexdigest()
            compiled.append(
                {
                    "id": definition.id,
                    "alias": alias,
                    "aggregation": aggregation.value if aggregation else None,
                    "compiled_sql_hash": fragment_hash,
                    "compiled_sql_changed": bool(
                        definition.compiled_sql_hash and definition.compiled_sql_hash != fragment_hash
                    ),
                }
            )
        return compiled

    @staticmethod
    def _compile_raw_filters(filters: Sequence[str]) -> str:
        fragments = []
        for fragment in filters:
            fragment = (fragment or "").strip()
            if not fragment:
                continue
            for token in FORBIDDEN_FILTER_TOKENS:
                if token in fragment:
                    raise UnsafeFilterFragment(fragment, token)
            fragments.append(f"({fragment})")
        return " AND ".join(fragments)

    def _compile_filter(self, ctx: _PlanContext, index: int, flt: Filter, parameters: Dict[str, Any]) -> str:
        operator = _coerce_enum(FilterOperator, flt.operator, "filter operator")
        column_sql = self._column_sql(ctx, flt.entity, flt.field)
        name = f"filter_{index}"

        if operator in COMPARISON_OPERATORS:
            if isinstance(flt.value, (list, tuple, Mapping)):
                raise InvalidFilterValue(
                    f"Filter '{operator.value}' requires a single value", index, flt.entity, flt.field
                )
            parameters[name] = flt.value
            return f"{column_sql} {COMPARISON_OPERATORS[operator]} :{name}"

        if operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            if not isinstance(flt.value, (list, tuple)) or len(flt.value) == 0:
                raise InvalidFilterValue(
                    f"Filter '{operator.value}' requires a non-empty list", index, flt.entity, flt.field
                )
            parameters[name] = list(flt.value)
            keyword = "IN" if operator == FilterOperator.IN else "NOT IN"
            return f"{column_sql} {keyword} :{name}"

        # between
        value = flt.value
        if not isinstance(value, Mapping) or value.get("from") is None or value.get("to") is None:
            raise InvalidFilterValue(
                "Filter 'between' requires an object with 'from' and 'to'", index, flt.entity, flt.field
            )
        parameters[f"{name}_from"] = value["from"]
        parameters[f"{name}_to"] = value["to"]
        return f"{column_sql} BETWEEN :{name}_from AND :{name}_to"

    def _compile_order_by(self, order_by, columns: List[str]) -> Tuple[List[str], List[str]]:
        terms: List[str] = []
        ignored: List[str] = []
        for item in order_by:
            if item.alias not in columns:
                ignored.append(item.alias)
                continue
            descending = str(getattr(item.direction, "value", item.direction)).lower() == SortDirection.DESC.value
            terms.append(f"{self.dialect.quote(item.alias)} {'DESC' if descending else 'ASC'}")
        if ignored:
            logger.warning("Dropped order-by alias(es) not in the select list: %s", ignored)
        return terms, ignored

    @staticmethod
    def field_alias(entity: str, field_name: str) -> str:
        """Output alias for a plain column: ``<entity>__<field>`` with the entity lower-cased."""
        return f"{entity.lower()}__{field_name}"

    def _base_metadata(self, mode: str, ctx: _PlanContext) -> Dict[str, Any]:
        return {
            "mode": mode,
            "base_entity": ctx.base_entity,
            "entities": list(ctx.entities),
            "aliases": dict(ctx.alias_of),
            "joins": len(ctx.joins.clauses),
            "model_graph_signature": ctx.signature,
        }

    def _finish(
        self,
        lines: List[str],
        columns: List[str],
        parameters: Dict[str, Any],
        metadata: Dict[str, Any],
        limit: int,
    ) -> CompiledQuery:
        logger.info(
            "Compiled %s query over %d entit(y/ies) with %d column(s)",
            metadata["mode"],
            len(metadata["entities"]),
            len(columns),
        )
        return CompiledQuery(
            sql="\n".join(lines),
            columns=tuple(columns),
            parameters=parameters,
            metadata=metadata,
            limit=limit,
        )
