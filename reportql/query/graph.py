"""
Model graph signatures and derived-field staleness checks.

A derived field records the signature of the entity/join graph it was authored
against. Reusing it under a different topology, or in a query that does not
include (or does not join) every entity it references, is rejected with one
issue per problem so the author can see everything that needs fixing at once.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .expressions import collect_references
from .schemas import DerivedFieldDefinition, DerivedFieldIssueKind, JoinEdge, JoinKind

logger = logging.getLogger(__name__)


def _canonical_edge(edge: JoinEdge) -> Tuple[str, str, str]:
    left, right = sorted(
        (f"{edge.left_entity}.{edge.left_field}", f"{edge.right_entity}.{edge.right_field}")
    )
    return left, right, JoinKind.coerce(edge.kind).value


def compute_model_graph_signature(entities: Iterable[str], joins: Iterable[JoinEdge]) -> str:
    """SHA-256 over the sorted entity set and the sorted canonical join triples."""
    models = sorted({entity.strip() for entity in entities if entity and entity.strip()})
    edges = sorted(list(_canonical_edge(edge)) for edge in joins)
    payload = json.dumps({"models": models, "joins": edges}, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DerivedFieldIssue:
    derived_field_id: str
    kind: DerivedFieldIssueKind
    message: str
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "derived_field_id": self.derived_field_id,
            "kind": self.kind.value,
            "message": self.message,
            "model": self.model,
        }


class DerivedFieldGraphValidator:
    """Cross-checks derived fields against the current query's entities and joins."""

    def validate(
        self,
        derived_fields: Sequence[DerivedFieldDefinition],
        query_spec: Any,
        connected: Optional[Set[str]] = None,
    ) -> List[DerivedFieldIssue]:
        """
        Collect every issue for every derived field.

        ``query_spec`` is any spec with ``entities`` and ``joins``. ``connected``
        is the JoinResolver's connected set; without it only presence in the
        entity set is checked.
        """
        if not derived_fields:
            return []

        entity_set = set(query_spec.entities)
        signature = compute_model_graph_signature(query_spec.entities, query_spec.joins)
        issues: List[DerivedFieldIssue] = []

        for definition in derived_fields:
            field_id = str(definition.id)

            recorded = (definition.model_graph_signature or "").strip()
            if recorded and recorded != signature:
                issues.append(
                    DerivedFieldIssue(
                        derived_field_id=field_id,
                        kind=DerivedFieldIssueKind.GRAPH_MISMATCH,
                        message=(
                            f"Derived field '{field_id}' was authored against a different join graph "
                            "and must be reconfirmed"
                        ),
                    )
                )

            for model in self.referenced_models(definition):
                if model not in entity_set:
                    issues.append(
                        DerivedFieldIssue(
                            derived_field_id=field_id,
                            kind=DerivedFieldIssueKind.MISSING_MODEL,
                            message=f"Derived field '{field_id}' references '{model}' which is not in the query",
                            model=model,
                        )
                    )
                elif connected is not None and model not in connected:
                    issues.append(
                        DerivedFieldIssue(
                            derived_field_id=field_id,
                            kind=DerivedFieldIssueKind.UNJOINED_MODEL,
                            message=f"Derived field '{field_id}' references '{model}' which is not joined",
                            model=model,
                        )
                    )

        if issues:
            logger.warning("Derived field validation found %d issue(s)", len(issues))
        return issues

    @staticmethod
    def referenced_models(definition: DerivedFieldDefinition) -> List[str]:
        """Recorded referenced models plus every model the expression actually touches, sorted."""
        models, _ = collect_references(definition.expression)
        return sorted(set(models) | set(definition.referenced_models))
