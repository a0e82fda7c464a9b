"""Pydantic schemas for the reporting API."""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from reportql.query.errors import ExpressionSyntaxError, QueryCompilationError
from reportql.query.expressions import normalize_expression_ast, parse_expression
from reportql.query.schemas import (
    AggregatedQuerySpec,
    AssociationKind,
    DerivedFieldDefinition,
    DerivedFieldKind,
    Dimension,
    Filter,
    FlatQuerySpec,
    JoinEdge,
    Metric,
    OrderBy,
)


class InvalidDerivedField(QueryCompilationError):
    """A derived field's expression could not be normalised."""

    kind = "invalid_derived_field"


# ===== SCHEMA DESCRIPTION =====


class FieldRead(BaseModel):
    name: str
    column_name: str
    data_type: str
    nullable: bool
    primary_key: bool
    unique: bool
    references: Optional[Dict[str, Optional[str]]] = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("references", mode="before")
    @classmethod
    def reference_to_dict(cls, value: Any) -> Any:
        if value is None or isinstance(value, dict):
            return value
        return {"entity": value.entity, "key": value.key}


class AssociationRead(BaseModel):
    target: str
    kind: AssociationKind
    foreign_key: Optional[str] = None
    source_key: Optional[str] = None
    alias: Optional[str] = None
    through: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EntityRead(BaseModel):
    id: str
    name: str
    table_name: str
    schema_name: Optional[str] = Field(default=None, validation_alias="schema")
    description: str
    primary_keys: List[str]
    fields: List[FieldRead]
    associations: List[AssociationRead]

    model_config = ConfigDict(from_attributes=True)


# ===== QUERY INPUTS =====


class JoinEdgeIn(BaseModel):
    id: Optional[str] = None
    left_entity: str
    left_field: str
    right_entity: str
    right_field: str
    kind: str = "left"

    def to_edge(self) -> JoinEdge:
        return JoinEdge(
            left_entity=self.left_entity,
            left_field=self.left_field,
            right_entity=self.right_entity,
            right_field=self.right_field,
            kind=self.kind,
            id=self.id,
        )


class DerivedFieldIn(BaseModel):
    """A derived field given either as a JSON expression tree or as formula text."""

    id: str
    alias: Optional[str] = None
    expression_ast: Optional[Dict[str, Any]] = None
    expression: Optional[str] = None
    kind: DerivedFieldKind = DerivedFieldKind.ROW
    aggregation: Optional[str] = None
    referenced_models: List[str] = []
    join_dependencies: List[Tuple[str, str]] = []
    model_graph_signature: Optional[str] = None
    compiled_sql_hash: Optional[str] = None

    model_config = ConfigDict(protected_namespaces=())

    def to_definition(self) -> DerivedFieldDefinition:
        if self.expression_ast is not None:
            normalized = normalize_expression_ast(self.expression_ast)
            if normalized is None:
                raise InvalidDerivedField(
                    f"Derived field '{self.id}' has an invalid expression tree",
                    details={"derived_field_id": self.id},
                )
        elif self.expression:
            try:
                normalized = parse_expression(self.expression)
            except ExpressionSyntaxError as e:
                raise InvalidDerivedField(
                    f"Derived field '{self.id}': {e}",
                    details={"derived_field_id": self.id, "position": e.position},
                )
        else:
            raise InvalidDerivedField(
                f"Derived field '{self.id}' needs an expression",
                details={"derived_field_id": self.id},
            )

        return DerivedFieldDefinition(
            id=self.id,
            expression=normalized.expression,
            alias=self.alias,
            kind=self.kind,
            aggregation=self.aggregation,
            referenced_models=frozenset(self.referenced_models),
            join_dependencies=tuple(tuple(pair) for pair in self.join_dependencies),
            model_graph_signature=self.model_graph_signature,
            compiled_sql_hash=self.compiled_sql_hash,
        )


class FlatQueryRequest(BaseModel):
    entities: List[str]
    fields: Dict[str, List[str]] = {}
    joins: List[JoinEdgeIn] = []
    filters: List[str] = []
    limit: Optional[int] = None
    derived_fields: List[DerivedFieldIn] = []

    def to_spec(self) -> FlatQuerySpec:
        return FlatQuerySpec(
            entities=tuple(self.entities),
            fields={entity: list(names) for entity, names in self.fields.items()},
            joins=tuple(edge.to_edge() for edge in self.joins),
            filters=tuple(self.filters),
            limit=self.limit,
            derived_fields=tuple(field.to_definition() for field in self.derived_fields),
        )


class MetricIn(BaseModel):
    entity: str
    field: str
    aggregation: str
    alias: Optional[str] = None


class DimensionIn(BaseModel):
    entity: str
    field: str
    bucket: Optional[str] = None
    alias: Optional[str] = None


class FilterIn(BaseModel):
    entity: str
    field: str
    operator: str
    value: Any = None


class OrderByIn(BaseModel):
    alias: str
    direction: str = "asc"


class AggregatedQueryRequest(BaseModel):
    entities: List[str]
    metrics: List[MetricIn] = []
    dimensions: List[DimensionIn] = []
    filters: List[FilterIn] = []
    joins: List[JoinEdgeIn] = []
    order_by: List[OrderByIn] = []
    limit: Optional[int] = None
    derived_fields: List[DerivedFieldIn] = []
    use_cache: bool = True

    def to_spec(self) -> AggregatedQuerySpec:
        return AggregatedQuerySpec(
            entities=tuple(self.entities),
            metrics=tuple(Metric(m.entity, m.field, m.aggregation, m.alias) for m in self.metrics),
            dimensions=tuple(Dimension(d.entity, d.field, d.bucket, d.alias) for d in self.dimensions),
            filters=tuple(Filter(f.entity, f.field, f.operator, f.value) for f in self.filters),
            joins=tuple(edge.to_edge() for edge in self.joins),
            order_by=tuple(OrderBy(o.alias, o.direction) for o in self.order_by),
            limit=self.limit,
            derived_fields=tuple(field.to_definition() for field in self.derived_fields),
        )


# ===== QUERY OUTPUTS =====


class CompiledQueryRead(BaseModel):
    sql: str
    formatted_sql: str
    columns: List[str]
    parameters: Dict[str, Any]
    metadata: Dict[str, Any]
    limit: int
    query_hash: str


class QueryResultRead(BaseModel):
    rows: List[Dict[str, Any]]
    columns: List[str]
    sql: str
    parameters: Dict[str, Any]
    metadata: Dict[str, Any]


# ===== DERIVED FIELD AUTHORING =====


class NormalizeDerivedFieldRequest(BaseModel):
    expression_ast: Optional[Dict[str, Any]] = None
    expression: Optional[str] = None


class NormalizedDerivedFieldRead(BaseModel):
    expression_ast: Dict[str, Any]
    referenced_models: List[str]
    referenced_fields: Dict[str, List[str]]
    join_dependencies: List[Tuple[str, str]]
    missing_models: List[str] = []
    missing_fields: List[str] = []


class GraphSignatureRequest(BaseModel):
    entities: List[str]
    joins: List[JoinEdgeIn] = []


class GraphSignatureRead(BaseModel):
    model_graph_signature: str

    model_config = ConfigDict(protected_namespaces=())
