"""
Query compilation for the reporting system.

Main Components:
- SchemaCatalog: discovers and caches entity descriptors from the ORM registry
- JoinResolver: orders and orients caller-declared joins
- ExpressionCompiler: renders derived-field expression trees to SQL
- DerivedFieldGraphValidator: rejects stale or under-joined derived fields
- QueryPlanner: flat (preview) and aggregated query compilation
- QueryEngine: executes compiled queries, with an optional result cache
"""

from .catalog import DictSchemaSource, SchemaCatalog, SchemaSource, SQLAlchemyRegistrySource
from .dialect import SqlDialect
from .engine import QueryEngine, QueryResultCache, compute_query_hash, format_sql
from .errors import (
    DerivedFieldStale,
    EmptyProjection,
    ExpressionSyntaxError,
    InvalidFilterValue,
    JoinUnresolved,
    QueryCompilationError,
    SchemaLookupFailed,
    UnknownEntity,
    UnknownField,
    UnsafeFilterFragment,
    UnsupportedOperator,
)
from .expressions import (
    ExpressionCompiler,
    NormalizedExpression,
    expression_to_ast,
    normalize_expression_ast,
    parse_expression,
)
from .graph import DerivedFieldGraphValidator, DerivedFieldIssue, compute_model_graph_signature
from .joins import JoinResolution, JoinResolver, UnresolvedJoin
from .planner import QueryPlanner
from .schemas import (
    # Descriptors
    AssociationDescriptor,
    EntityDescriptor,
    FieldDescriptor,
    ForeignKeyReference,
    # Query specs
    AggregatedQuerySpec,
    Dimension,
    Filter,
    FlatQuerySpec,
    JoinEdge,
    Metric,
    OrderBy,
    # Derived fields
    BinaryNode,
    ColumnNode,
    DerivedFieldDefinition,
    FunctionNode,
    LiteralNode,
    UnaryNode,
    # Results
    CompiledQuery,
    QueryResult,
    # Enums
    AggregationFunction,
    AssociationKind,
    DerivedFieldIssueKind,
    DerivedFieldKind,
    FilterOperator,
    JoinKind,
    SortDirection,
    TimeBucket,
)

__all__ = [
    # Main classes
    "SchemaCatalog",
    "SchemaSource",
    "DictSchemaSource",
    "SQLAlchemyRegistrySource",
    "SqlDialect",
    "JoinResolver",
    "JoinResolution",
    "UnresolvedJoin",
    "ExpressionCompiler",
    "DerivedFieldGraphValidator",
    "DerivedFieldIssue",
    "QueryPlanner",
    "QueryEngine",
    "QueryResultCache",
    # Functions
    "compute_model_graph_signature",
    "compute_query_hash",
    "format_sql",
    "normalize_expression_ast",
    "parse_expression",
    "expression_to_ast",
    "NormalizedExpression",
    # Types
    "AssociationDescriptor",
    "EntityDescriptor",
    "FieldDescriptor",
    "ForeignKeyReference",
    "AggregatedQuerySpec",
    "Dimension",
    "Filter",
    "FlatQuerySpec",
    "JoinEdge",
    "Metric",
    "OrderBy",
    "BinaryNode",
    "ColumnNode",
    "DerivedFieldDefinition",
    "FunctionNode",
    "LiteralNode",
    "UnaryNode",
    "CompiledQuery",
    "QueryResult",
    # Enums
    "AggregationFunction",
    "AssociationKind",
    "DerivedFieldIssueKind",
    "DerivedFieldKind",
    "FilterOperator",
    "JoinKind",
    "SortDirection",
    "TimeBucket",
    # Errors
    "QueryCompilationError",
    "SchemaLookupFailed",
    "UnknownEntity",
    "UnknownField",
    "JoinUnresolved",
    "DerivedFieldStale",
    "UnsupportedOperator",
    "InvalidFilterValue",
    "EmptyProjection",
    "UnsafeFilterFragment",
    "ExpressionSyntaxError",
]
