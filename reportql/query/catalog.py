"""
Schema catalog: discovers and caches entity descriptors.

Raw metadata comes from a schema source. ``SQLAlchemyRegistrySource`` reads it
from a declarative base's mapper registry through ``sqlalchemy.inspect``;
``DictSchemaSource`` serves pre-built metadata (fixtures, static config).
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import inspect
from sqlalchemy.orm import RelationshipDirection

from .errors import UnknownEntity, UnknownField
from .schemas import (
    AssociationDescriptor,
    AssociationKind,
    EntityDescriptor,
    FieldDescriptor,
    ForeignKeyReference,
)

logger = logging.getLogger(__name__)


class SchemaSource(Protocol):
    """Supplies raw entity metadata from the runtime ORM/database layer."""

    def enumerate_entities(self) -> List[str]:
        ...

    def describe_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        ...


# ===== SCHEMA SOURCES =====


class DictSchemaSource:
    """
    Schema source backed by a mapping of entity id to raw metadata.

    Raw metadata shape::

        {
            "name": "Order",
            "table": "orders",
            "schema": None,
            "fields": [
                {"name": "customerId", "column": "customer_id", "type": "INTEGER",
                 "nullable": False, "primary_key": False, "unique": False,
                 "references": "Customer"},          # or {"model": "Customer", "key": "id"}
            ],
            "associations": [
                {"alias": "customer", "target": "Customer", "kind": "belongs_to",
                 "foreign_key": "customerId", "source_key": "id", "through": None},
            ],
        }
    """

    def __init__(self, entities: Mapping[str, Dict[str, Any]]):
        self._entities = dict(entities)

    def enumerate_entities(self) -> List[str]:
        return list(self._entities.keys())

    def describe_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        return self._entities.get(entity_id)


_DIRECTION_KINDS = {
    RelationshipDirection.MANYTOONE: AssociationKind.BELONGS_TO,
    RelationshipDirection.ONETOMANY: AssociationKind.HAS_MANY,
    RelationshipDirection.MANYTOMANY: AssociationKind.BELONGS_TO_MANY,
}


class SQLAlchemyRegistrySource:
    """Schema source that introspects every mapped class on a declarative base."""

    def __init__(self, base: Any):
        self.base = base

    def _mappers(self) -> Dict[str, Any]:
        return {mapper.class_.__name__: mapper for mapper in self.base.registry.mappers}

    def _entity_for_table(self, table_name: str) -> Optional[str]:
        for entity_id, mapper in self._mappers().items():
            if mapper.local_table is not None and mapper.local_table.name == table_name:
                return entity_id
        return None

    def enumerate_entities(self) -> List[str]:
        return sorted(self._mappers().keys())

    def describe_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        mapper = self._mappers().get(entity_id)
        if mapper is None:
            return None
        inspector = inspect(mapper.class_)
        table = mapper.local_table

        fields = []
        for attr in inspector.column_attrs:
            column = attr.columns[0]
            references: Optional[Dict[str, Any]] = None
            for fk in column.foreign_keys:
                target_entity = self._entity_for_table(fk.column.table.name)
                references = {
                    "model": target_entity or fk.column.table.name,
                    "key": self._attribute_key(target_entity, fk.column.name),
                }
                break
            fields.append(
                {
                    "name": attr.key,
                    "column": column.name,
                    "type": str(column.type),
                    "nullable": bool(column.nullable),
                    "primary_key": bool(column.primary_key),
                    "unique": bool(column.unique),
                    "references": references,
                }
            )

        associations = []
        for rel in inspector.relationships:
            kind = _DIRECTION_KINDS.get(rel.direction, AssociationKind.HAS_MANY)
            if kind == AssociationKind.HAS_MANY and not rel.uselist:
                kind = AssociationKind.HAS_ONE
            local = [c.name for c in rel.local_columns]
            remote = [c.name for c in rel.remote_side]
            through = None
            if rel.secondary is not None:
                through = self._entity_for_table(rel.secondary.name) or rel.secondary.name
            if kind == AssociationKind.BELONGS_TO:
                foreign_key, source_key = (local[0] if local else None), (remote[0] if remote else None)
            else:
                foreign_key, source_key = (remote[0] if remote else None), (local[0] if local else None)
            associations.append(
                {
                    "alias": rel.key,
                    "target": rel.mapper.class_.__name__,
                    "kind": kind.value,
                    "foreign_key": foreign_key,
                    "source_key": source_key,
                    "through": through,
                }
            )

        return {
            "name": entity_id,
            "table": table.name,
            "schema": table.schema,
            "fields": fields,
            "associations": associations,
        }

    def _attribute_key(self, entity_id: Optional[str], column_name: str) -> str:
        """Translate a physical column name into the mapped attribute name when possible."""
        if entity_id is None:
            return column_name
        mapper = self._mappers()[entity_id]
        for attr in mapper.column_attrs:
            if attr.columns[0].name == column_name:
                return attr.key
        return column_name


# ===== CATALOG =====


class SchemaCatalog:
    """
    Memoizing front for a schema source.

    Descriptors are built on first reference and cached until ``clear``.
    Concurrent population of the same entry is harmless: both writers store an
    equivalent immutable descriptor.
    """

    def __init__(self, source: SchemaSource):
        self.source = source
        self._cache: Dict[str, EntityDescriptor] = {}

    def describe(self, entity_id: str) -> EntityDescriptor:
        """Get the descriptor for an entity, raising UnknownEntity if the source doesn't know it."""
        cached = self._cache.get(entity_id)
        if cached is not None:
            return cached

        raw = self.source.describe_entity(entity_id)
        if raw is None:
            raise UnknownEntity(entity_id)

        descriptor = self._build_descriptor(entity_id, raw)
        self._cache[entity_id] = descriptor
        logger.debug("Cached descriptor for %s (%d fields)", entity_id, len(descriptor.fields))
        return descriptor

    def find(self, entity_id: str) -> Optional[EntityDescriptor]:
        try:
            return self.describe(entity_id)
        except UnknownEntity:
            return None

    def describe_all(self) -> List[EntityDescriptor]:
        return [self.describe(entity_id) for entity_id in sorted(self.source.enumerate_entities())]

    def clear(self) -> None:
        """Drop every cached descriptor."""
        self._cache.clear()
        logger.info("Schema catalog cache cleared")

    def resolve_field(self, entity_id: str, field_name: str) -> FieldDescriptor:
        descriptor = self.describe(entity_id)
        field = descriptor.get_field(field_name)
        if field is None:
            raise UnknownField(entity_id, field_name)
        return field

    def find_missing_references(
        self, referenced_fields: Mapping[str, Iterable[str]]
    ) -> Tuple[List[str], List[str]]:
        """Return (missing models, missing 'Model.field' paths) for a derived field's references."""
        missing_models: List[str] = []
        missing_fields: List[str] = []
        for entity_id, field_names in referenced_fields.items():
            entity_id = (entity_id or "").strip()
            if not entity_id:
                continue
            descriptor = self.find(entity_id)
            if descriptor is None:
                missing_models.append(entity_id)
                continue
            for field_name in field_names:
                field_name = (field_name or "").strip()
                if field_name and descriptor.get_field(field_name) is None:
                    missing_fields.append(f"{entity_id}.{field_name}")
        return missing_models, missing_fields

    # ===== DESCRIPTOR CONSTRUCTION =====

    def _build_descriptor(self, entity_id: str, raw: Dict[str, Any]) -> EntityDescriptor:
        name = raw.get("name") or entity_id
        table_name = raw.get("table") or raw.get("table_name") or entity_id
        schema = raw.get("schema") or None

        fields = tuple(self._build_field(raw_field) for raw_field in raw.get("fields", []))
        associations = tuple(
            self._build_association(raw_assoc) for raw_assoc in raw.get("associations", [])
        )
        primary_keys = tuple(f.name for f in fields if f.primary_key)

        return EntityDescriptor(
            id=entity_id,
            name=name,
            table_name=table_name,
            schema=schema,
            fields=fields,
            associations=associations,
            primary_keys=primary_keys,
            description=self._describe(name, table_name, schema),
        )

    @staticmethod
    def _build_field(raw: Dict[str, Any]) -> FieldDescriptor:
        name = raw["name"]
        return FieldDescriptor(
            name=name,
            column_name=raw.get("column") or raw.get("field") or name,
            data_type=str(raw.get("type") or "UNKNOWN"),
            nullable=bool(raw.get("nullable", True)),
            primary_key=bool(raw.get("primary_key", False)),
            unique=bool(raw.get("unique", False)),
            references=SchemaCatalog._build_reference(raw.get("references")),
        )

    @staticmethod
    def _build_reference(raw: Any) -> Optional[ForeignKeyReference]:
        # Bare target name or {"model": ..., "key": ...}
        if not raw:
            return None
        if isinstance(raw, str):
            return ForeignKeyReference(entity=raw)
        if isinstance(raw, Mapping):
            target = raw.get("model") or raw.get("entity")
            if not target:
                return None
            return ForeignKeyReference(entity=str(target), key=raw.get("key"))
        return None

    @staticmethod
    def _build_association(raw: Dict[str, Any]) -> AssociationDescriptor:
        try:
            kind = AssociationKind(raw.get("kind"))
        except ValueError:
            kind = AssociationKind.HAS_MANY
        return AssociationDescriptor(
            target=raw["target"],
            kind=kind,
            foreign_key=raw.get("foreign_key"),
            source_key=raw.get("source_key"),
            alias=raw.get("alias"),
            through=raw.get("through"),
        )

    @staticmethod
    def _describe(name: str, table_name: str, schema: Optional[str]) -> str:
        location = f"{schema}.{table_name}" if schema else table_name
        return f"{name} ({location})"
