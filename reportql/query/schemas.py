"""
Query compilation schemas and types.

This module defines the immutable types that flow through the compilation
pipeline: schema descriptors produced by the catalog, join edges and query
specifications supplied by callers, derived-field expression trees, and the
compiled query handed to the execution layer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union


# ===== ENUMS =====


class JoinKind(str, Enum):
    """SQL join types a join edge may request."""

    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"

    @classmethod
    def coerce(cls, value: Any) -> "JoinKind":
        """Map a caller-supplied join kind onto a JoinKind, defaulting to LEFT."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.LEFT


class AggregationFunction(str, Enum):
    """Aggregations available to metrics."""

    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"
    COUNT_DISTINCT = "count_distinct"


class TimeBucket(str, Enum):
    """Granularities accepted by date_trunc dimensions."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"


class FilterOperator(str, Enum):
    """Operators accepted by typed filters."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class AssociationKind(str, Enum):
    """Relationship cardinality between two entities."""

    BELONGS_TO = "belongs_to"
    HAS_ONE = "has_one"
    HAS_MANY = "has_many"
    BELONGS_TO_MANY = "belongs_to_many"


class DerivedFieldKind(str, Enum):
    ROW = "row"
    AGGREGATE = "aggregate"


class DerivedFieldIssueKind(str, Enum):
    GRAPH_MISMATCH = "graph_mismatch"
    MISSING_MODEL = "missing_model"
    UNJOINED_MODEL = "unjoined_model"


# ===== SCHEMA DESCRIPTORS =====


@dataclass(frozen=True)
class ForeignKeyReference:
    """Target of a foreign key column."""

    entity: str
    key: Optional[str] = None


@dataclass(frozen=True)
class FieldDescriptor:
    """A single column exposed by an entity."""

    name: str
    column_name: str
    data_type: str
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    references: Optional[ForeignKeyReference] = None


@dataclass(frozen=True)
class AssociationDescriptor:
    """A declared relationship from one entity to another."""

    target: str
    kind: AssociationKind
    foreign_key: Optional[str] = None
    source_key: Optional[str] = None
    alias: Optional[str] = None
    through: Optional[str] = None


@dataclass(frozen=True)
class EntityDescriptor:
    """Everything the compiler needs to know about one queryable table."""

    id: str
    name: str
    table_name: str
    schema: Optional[str] = None
    fields: Tuple[FieldDescriptor, ...] = ()
    associations: Tuple[AssociationDescriptor, ...] = ()
    primary_keys: Tuple[str, ...] = ()
    description: str = ""

    def get_field(self, name: str) -> Optional[FieldDescriptor]:
        """Find a field by logical name, falling back to the physical column name."""
        for candidate in self.fields:
            if candidate.name == name:
                return candidate
        for candidate in self.fields:
            if candidate.column_name == name:
                return candidate
        return None

    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


# ===== JOINS =====


@dataclass(frozen=True)
class JoinEdge:
    """
    A caller-declared join between two entities.

    Edges are undirected in intent; the resolver may flip the declared
    left/right orientation so the already-connected side comes first.
    """

    left_entity: str
    left_field: str
    right_entity: str
    right_field: str
    kind: JoinKind = JoinKind.LEFT
    id: Optional[str] = None

    def reversed(self) -> "JoinEdge":
        return JoinEdge(
            left_entity=self.right_entity,
            left_field=self.right_field,
            right_entity=self.left_entity,
            right_field=self.left_field,
            kind=self.kind,
            id=self.id,
        )

    def describe(self) -> str:
        return f"{self.left_entity}.{self.left_field} -> {self.right_entity}.{self.right_field}"


# ===== DERIVED FIELD EXPRESSIONS =====


@dataclass(frozen=True)
class ColumnNode:
    entity: str
    field: str


@dataclass(frozen=True)
class LiteralNode:
    value: Union[int, float, bool, str]
    value_type: str  # 'number', 'boolean' or 'string'


@dataclass(frozen=True)
class BinaryNode:
    operator: str
    left: "ExpressionNode"
    right: "ExpressionNode"


@dataclass(frozen=True)
class UnaryNode:
    operator: str
    operand: "ExpressionNode"


@dataclass(frozen=True)
class FunctionNode:
    name: str
    args: Tuple["ExpressionNode", ...] = ()


ExpressionNode = Union[ColumnNode, LiteralNode, BinaryNode, UnaryNode, FunctionNode]


@dataclass(frozen=True)
class DerivedFieldDefinition:
    """A user-authored computed column, reusable across templates and dashboards."""

    id: str
    expression: ExpressionNode
    alias: Optional[str] = None
    kind: DerivedFieldKind = DerivedFieldKind.ROW
    aggregation: Optional[AggregationFunction] = None
    referenced_models: FrozenSet[str] = frozenset()
    join_dependencies: Tuple[Tuple[str, str], ...] = ()
    model_graph_signature: Optional[str] = None
    compiled_sql_hash: Optional[str] = None

    def output_alias(self, position: int) -> str:
        """Alias used in the SELECT list: explicit alias, then id, then a positional fallback."""
        if self.alias and self.alias.strip():
            return self.alias.strip()
        if self.id and str(self.id).strip():
            return str(self.id).strip()
        return f"derived_{position}"


# ===== QUERY SPECIFICATIONS =====


@dataclass(frozen=True)
class FlatQuerySpec:
    """Flat (preview) projection: raw rows, no aggregation."""

    entities: Tuple[str, ...]
    fields: Dict[str, List[str]] = field(default_factory=dict)
    joins: Tuple[JoinEdge, ...] = ()
    filters: Tuple[str, ...] = ()
    limit: Optional[int] = None
    derived_fields: Tuple[DerivedFieldDefinition, ...] = ()


@dataclass(frozen=True)
class Metric:
    entity: str
    field: str
    aggregation: AggregationFunction
    alias: Optional[str] = None


@dataclass(frozen=True)
class Dimension:
    entity: str
    field: str
    bucket: Optional[TimeBucket] = None
    alias: Optional[str] = None


@dataclass(frozen=True)
class Filter:
    entity: str
    field: str
    operator: FilterOperator
    value: Any = None


@dataclass(frozen=True)
class OrderBy:
    alias: str
    direction: SortDirection = SortDirection.ASC


@dataclass(frozen=True)
class AggregatedQuerySpec:
    """Metrics/dimensions query producing one row per dimension combination."""

    entities: Tuple[str, ...]
    metrics: Tuple[Metric, ...]
    dimensions: Tuple[Dimension, ...] = ()
    filters: Tuple[Filter, ...] = ()
    joins: Tuple[JoinEdge, ...] = ()
    order_by: Tuple[OrderBy, ...] = ()
    limit: Optional[int] = None
    derived_fields: Tuple[DerivedFieldDefinition, ...] = ()


QuerySpec = Union[FlatQuerySpec, AggregatedQuerySpec]


# ===== RESULTS =====


@dataclass(frozen=True)
class CompiledQuery:
    """Final SQL plus everything needed to execute and label it."""

    sql: str
    columns: Tuple[str, ...]
    parameters: Dict[str, Any]
    metadata: Dict[str, Any]
    limit: int = 0


@dataclass
class QueryResult:
    """Rows returned by executing a compiled query."""

    rows: List[Dict[str, Any]]
    columns: List[str]
    sql: str
    parameters: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
