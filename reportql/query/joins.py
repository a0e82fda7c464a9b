"""
Join resolution.

Callers submit join edges in any order and orientation. The resolver connects
them to the base entity with repeated greedy passes: every pass joins each edge
that has exactly one already-connected endpoint, flipping it when needed, until
nothing is pending or a pass makes no progress.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .catalog import SchemaCatalog
from .dialect import SqlDialect
from .schemas import EntityDescriptor, FieldDescriptor, JoinEdge, JoinKind

logger = logging.getLogger(__name__)

_JOIN_KEYWORDS = {
    JoinKind.INNER: "INNER JOIN",
    JoinKind.LEFT: "LEFT JOIN",
    JoinKind.RIGHT: "RIGHT JOIN",
    JoinKind.FULL: "FULL JOIN",
}


@dataclass(frozen=True)
class UnresolvedJoin:
    """An edge or entity that could not be connected to the base entity."""

    reason: str  # disconnected_edge | disconnected_entity | unknown_entity | unknown_field
    message: str
    edge_id: Optional[str] = None
    entity: Optional[str] = None
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "message": self.message,
            "edge_id": self.edge_id,
            "entity": self.entity,
            "field": self.field,
        }


@dataclass
class JoinResolution:
    clauses: List[str] = field(default_factory=list)
    connected: Set[str] = field(default_factory=set)
    unresolved: List[UnresolvedJoin] = field(default_factory=list)
    redundant: List[JoinEdge] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved


class JoinResolver:
    """Turns declared join edges into ordered JOIN clauses."""

    def __init__(self, catalog: SchemaCatalog, dialect: SqlDialect):
        self.catalog = catalog
        self.dialect = dialect

    def resolve(
        self,
        edges: Sequence[JoinEdge],
        alias_of: Mapping[str, str],
        base_entity: str,
    ) -> JoinResolution:
        resolution = JoinResolution(connected={base_entity})
        pending: List[Tuple[int, JoinEdge]] = list(enumerate(edges))
        failures: Dict[int, UnresolvedJoin] = {}

        pass_number = 0
        while pending:
            pass_number += 1
            progress = False
            remaining: List[Tuple[int, JoinEdge]] = []

            for position, edge in pending:
                left_connected = edge.left_entity in resolution.connected
                right_connected = edge.right_entity in resolution.connected

                if left_connected and right_connected:
                    # Both sides already joined; a second JOIN would duplicate an alias.
                    resolution.redundant.append(edge)
                    failures.pop(position, None)
                    progress = True
                    continue
                if not left_connected and not right_connected:
                    remaining.append((position, edge))
                    continue

                oriented = edge if left_connected else edge.reversed()
                clause, failure = self._build_clause(oriented, alias_of)
                if clause is None:
                    failures[position] = failure
                    remaining.append((position, edge))
                    continue

                resolution.clauses.append(clause)
                resolution.connected.add(oriented.right_entity)
                failures.pop(position, None)
                progress = True

            logger.debug(
                "Join pass %d: %d connected, %d pending", pass_number, len(resolution.connected), len(remaining)
            )
            pending = remaining
            if not progress:
                break

        for position, edge in pending:
            resolution.unresolved.append(
                failures.get(position)
                or UnresolvedJoin(
                    reason="disconnected_edge",
                    message=f"Join {edge.describe()} cannot reach base entity '{base_entity}'",
                    edge_id=edge.id,
                )
            )

        for entity in alias_of:
            if entity not in resolution.connected:
                resolution.unresolved.append(
                    UnresolvedJoin(
                        reason="disconnected_entity",
                        message=f"Entity '{entity}' is not connected to base entity '{base_entity}'",
                        entity=entity,
                    )
                )

        if resolution.redundant:
            logger.debug("Ignored %d redundant join(s)", len(resolution.redundant))
        return resolution

    def _build_clause(
        self, edge: JoinEdge, alias_of: Mapping[str, str]
    ) -> Tuple[Optional[str], Optional[UnresolvedJoin]]:
        """Render one oriented edge; the left entity is the connected side."""
        for entity in (edge.left_entity, edge.right_entity):
            if entity not in alias_of:
                return None, UnresolvedJoin(
                    reason="unknown_entity",
                    message=f"Join {edge.describe()} references entity '{entity}' which is not part of this query",
                    edge_id=edge.id,
                    entity=entity,
                )

        right_descriptor = self.catalog.find(edge.right_entity)
        left_descriptor = self.catalog.find(edge.left_entity)
        for entity, descriptor in ((edge.left_entity, left_descriptor), (edge.right_entity, right_descriptor)):
            if descriptor is None:
                return None, UnresolvedJoin(
                    reason="unknown_entity",
                    message=f"Join {edge.describe()} references unknown entity '{entity}'",
                    edge_id=edge.id,
                    entity=entity,
                )

        left_field = self._resolve_field(left_descriptor, edge.left_field)
        right_field = self._resolve_field(right_descriptor, edge.right_field)
        for entity, name, resolved in (
            (edge.left_entity, edge.left_field, left_field),
            (edge.right_entity, edge.right_field, right_field),
        ):
            if resolved is None:
                return None, UnresolvedJoin(
                    reason="unknown_field",
                    message=f"Join {edge.describe()} references unknown field '{entity}.{name}'",
                    edge_id=edge.id,
                    entity=entity,
                    field=name,
                )

        left_alias = alias_of[edge.left_entity]
        right_alias = alias_of[edge.right_entity]
        keyword = _JOIN_KEYWORDS[JoinKind.coerce(edge.kind)]
        table = self.dialect.table(right_descriptor.table_name, right_descriptor.schema)
        clause = (
            f"{keyword} {table} {right_alias} ON "
            f"{self.dialect.column(left_alias, left_field.column_name)} = "
            f"{self.dialect.column(right_alias, right_field.column_name)}"
        )
        return clause, None

    @staticmethod
    def _resolve_field(descriptor: EntityDescriptor, name: str) -> Optional[FieldDescriptor]:
        resolved = descriptor.get_field(name)
        if resolved is not None:
            return resolved
        # Fields addressed by a qualified select alias: "<entity>__<field>"
        prefix = f"{descriptor.id.lower()}__"
        if name.lower().startswith(prefix):
            return descriptor.get_field(name[len(prefix):])
        return None
