"""
Typed errors raised while compiling a reporting query.

Every failure aborts the whole compilation. The structured ``details`` payload
lets a query-builder UI point at the exact entity, field, join or derived field
that needs fixing.
"""

from typing import Any, Dict, List, Optional


class QueryCompilationError(Exception):
    """Base error for every planner-level failure."""

    kind = "query_compilation_error"
    default_status_code = 400

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code if status_code is not None else self.default_status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, "details": self.details}


class SchemaLookupFailed(QueryCompilationError):
    """An entity or field could not be found in the schema catalog."""

    kind = "schema_lookup_failed"
    default_status_code = 404


class UnknownEntity(SchemaLookupFailed):
    kind = "unknown_entity"

    def __init__(self, entity: str, message: Optional[str] = None):
        super().__init__(message or f"Unknown entity '{entity}'", details={"entity": entity})
        self.entity = entity


class UnknownField(SchemaLookupFailed):
    kind = "unknown_field"

    def __init__(self, entity: str, field: str, message: Optional[str] = None):
        super().__init__(
            message or f"Unknown field '{field}' on entity '{entity}'",
            details={"entity": entity, "field": field},
        )
        self.entity = entity
        self.field = field


class JoinUnresolved(QueryCompilationError):
    """Some requested entities cannot reach the base entity through the declared joins."""

    kind = "join_unresolved"

    def __init__(self, unresolved: List[Dict[str, Any]], base_entity: str):
        super().__init__(
            f"Unable to connect {len(unresolved)} join(s) or entit(y/ies) to base entity '{base_entity}'",
            details={"base_entity": base_entity, "unresolved": unresolved},
        )
        self.unresolved = unresolved


class DerivedFieldStale(QueryCompilationError):
    """One or more derived fields no longer match the query's entity/join graph."""

    kind = "derived_field_stale"
    default_status_code = 409

    def __init__(self, issues: List[Dict[str, Any]]):
        field_ids = sorted({issue["derived_field_id"] for issue in issues})
        super().__init__(
            f"Derived field(s) {', '.join(field_ids)} must be reconfirmed against the current joins",
            details={"issues": issues},
        )
        self.issues = issues


class UnsupportedOperator(QueryCompilationError):
    """Unknown aggregation, filter operator or time bucket."""

    kind = "unsupported_operator"

    def __init__(self, category: str, value: Any, allowed: Optional[List[str]] = None):
        details: Dict[str, Any] = {"category": category, "value": value}
        if allowed is not None:
            details["allowed"] = allowed
        super().__init__(f"Unsupported {category} '{value}'", details=details)


class InvalidFilterValue(QueryCompilationError):
    """A filter value has the wrong shape for its operator."""

    kind = "invalid_filter_value"

    def __init__(self, message: str, filter_index: int, entity: str, field: str):
        super().__init__(
            message,
            details={"filter_index": filter_index, "entity": entity, "field": field},
        )


class EmptyProjection(QueryCompilationError):
    """Nothing resolvable to select (no fields in preview mode, no metrics in aggregated mode)."""

    kind = "empty_projection"


class UnsafeFilterFragment(QueryCompilationError):
    """A raw filter fragment contains a statement separator or comment marker."""

    kind = "unsafe_filter_fragment"

    def __init__(self, fragment: str, marker: str):
        super().__init__(
            f"Filter fragment contains forbidden token '{marker}'",
            details={"fragment": fragment, "marker": marker},
        )


class ExpressionSyntaxError(ValueError):
    """A derived-field formula could not be parsed."""

    def __init__(self, message: str, position: int):
        super().__init__(f"{message} at position {position}")
        self.message = message
        self.position = position
