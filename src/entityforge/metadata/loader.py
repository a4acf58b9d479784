"""Load and resolve entity metadata from YAML files."""

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from entityforge.errors import MetadataError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Columns populated by the database on insert unless an entity overrides them
DEFAULT_SYSTEM_MANAGED_FIELDS = ("id", "created_at", "updated_at")

SORT_ORDERS = ("ASC", "DESC")

# Prefix of generated identifiers such as "WO-2024-0001"
IDENTIFIER_PREFIX_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*$")


@dataclass(frozen=True)
class FieldDefinition:
    name: str
    type: str = "string"
    required: bool = False
    read_only: bool = False
    default: Any = None

    @property
    def is_json(self) -> bool:
        return self.type in ("json", "jsonb")


@dataclass(frozen=True)
class SortSpec:
    field: str | None = None
    order: str = "DESC"


@dataclass(frozen=True)
class Relationship:
    """A relation to another table, joinable when ``type`` is belongsTo."""

    name: str
    type: str
    table: str
    foreign_key: str
    fields: tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class PolymorphicType:
    column: str
    value: str


@dataclass(frozen=True)
class Dependent:
    """Rows in another table removed before the owning row is deleted."""

    table: str
    foreign_key: str
    polymorphic_type: PolymorphicType | None = None


@dataclass(frozen=True)
class RlsFieldConfig:
    """Column overrides for ownership-based RLS policies."""

    own_record_field: str | None = None
    customer_field: str = "customer_id"
    assigned_field: str = "assigned_technician_id"


@dataclass(frozen=True)
class SystemProtection:
    """Rows whose discriminator value is in ``values`` are built-in.

    Built-in rows cannot have ``immutable_fields`` changed and, when
    ``prevent_delete`` is set, cannot be deleted.
    """

    values: frozenset[str]
    immutable_fields: frozenset[str] = frozenset()
    prevent_delete: bool = True
    protected_by_field: str | None = None


@dataclass(frozen=True)
class EntityMetadata:
    name: str
    table_name: str
    primary_key: str
    fields: Mapping[str, FieldDefinition]
    identity_field: str | None = None
    display_field: str | None = None
    identifier_prefix: str | None = None
    searchable_fields: tuple[str, ...] = ()
    filterable_fields: tuple[str, ...] = ()
    sortable_fields: tuple[str, ...] = ()
    default_sort: SortSpec = field(default_factory=SortSpec)
    required_fields: tuple[str, ...] = ()
    immutable_fields: frozenset[str] = frozenset()
    system_managed_fields: frozenset[str] = frozenset(DEFAULT_SYSTEM_MANAGED_FIELDS)
    sensitive_fields: frozenset[str] = frozenset()
    default_includes: tuple[str, ...] = ()
    relationships: Mapping[str, Relationship] = field(
        default_factory=lambda: MappingProxyType({})
    )
    dependents: tuple[Dependent, ...] = ()
    auditable: bool = False
    rls: RlsFieldConfig = field(default_factory=RlsFieldConfig)
    system_protected: SystemProtection | None = None

    @property
    def protection_field(self) -> str | None:
        """Column whose value decides whether a row is system-protected."""
        if not self.system_protected:
            return None
        return self.system_protected.protected_by_field or self.identity_field

    @property
    def json_fields(self) -> frozenset[str]:
        return frozenset(f.name for f in self.fields.values() if f.is_json)

    def is_filterable(self, field_name: str) -> bool:
        return field_name in self.filterable_fields


class MetadataLoader:
    """Loads entity definitions from ``<metadata_path>/entities/*.yaml``."""

    def __init__(self, metadata_path: Path):
        self.metadata_path = metadata_path
        self.entities: dict[str, EntityMetadata] = {}

    def load_all(self) -> None:
        """Load all entities and check cross-entity consistency."""
        self._load_entities()
        self._validate_table_names()

    def _load_entities(self) -> None:
        entities_path = self.metadata_path / "entities"
        if not entities_path.exists():
            return

        for yaml_file in sorted(entities_path.glob("*.yaml")):
            with open(yaml_file) as f:
                data = yaml.safe_load(f)
            if data and "entity" in data:
                try:
                    entity = resolve_entity(data)
                except MetadataError as e:
                    raise MetadataError(f"{yaml_file.name}: {e.message}") from e
                if entity.name in self.entities:
                    raise MetadataError(
                        f"Entity '{entity.name}' is defined more than once"
                    )
                self.entities[entity.name] = entity

    def _validate_table_names(self) -> None:
        seen: dict[str, str] = {}
        for name, entity in self.entities.items():
            if entity.table_name in seen:
                raise MetadataError(
                    f"Duplicate table '{entity.table_name}' used by both "
                    f"'{seen[entity.table_name]}' and '{name}'"
                )
            seen[entity.table_name] = name

    def get_entity(self, name: str) -> EntityMetadata | None:
        """Get a resolved entity by name."""
        return self.entities.get(name)

    def list_entities(self) -> list[str]:
        """List all entity names."""
        return list(self.entities.keys())


# =============================================================================
# Entity resolution
# =============================================================================


def resolve_entity(data: Mapping[str, Any]) -> EntityMetadata:
    """Convert a raw entity definition (parsed YAML) into EntityMetadata.

    Raises:
        MetadataError: If identifiers are malformed or whitelists reference
            columns the entity does not declare.
    """
    name = data.get("entity")
    if not name or not isinstance(name, str):
        raise MetadataError("Entity definition has no 'entity' name")

    fields = _resolve_fields(name, data.get("fields") or [])
    if not fields:
        raise MetadataError(f"Entity '{name}' declares no fields")

    primary_key = data.get("primaryKey", "id")
    table_name = data.get("tableName", f"{name}s")
    _check_identifier(name, "tableName", table_name)

    default_sort_data = data.get("defaultSort") or {}
    default_sort = SortSpec(
        field=default_sort_data.get("field"),
        order=str(default_sort_data.get("order", "DESC")).upper(),
    )

    relationships = {
        rel_name: _resolve_relationship(name, rel_name, rel)
        for rel_name, rel in (data.get("relationships") or {}).items()
    }

    protection_data = data.get("systemProtected")
    system_protected = None
    if protection_data:
        system_protected = SystemProtection(
            values=frozenset(protection_data.get("values", [])),
            immutable_fields=frozenset(protection_data.get("immutableFields", [])),
            prevent_delete=protection_data.get("preventDelete", True),
            protected_by_field=protection_data.get("protectedByField"),
        )

    rls_data = data.get("rls") or {}
    rls = RlsFieldConfig(
        own_record_field=rls_data.get("ownRecordField"),
        customer_field=rls_data.get("customerField", "customer_id"),
        assigned_field=rls_data.get("assignedField", "assigned_technician_id"),
    )

    system_managed = data.get("systemManagedFields")
    if system_managed is None:
        system_managed = [f for f in DEFAULT_SYSTEM_MANAGED_FIELDS if f in fields]

    entity = EntityMetadata(
        name=name,
        table_name=table_name,
        primary_key=primary_key,
        fields=MappingProxyType(fields),
        identity_field=data.get("identityField"),
        display_field=data.get("displayField"),
        identifier_prefix=data.get("identifierPrefix"),
        searchable_fields=tuple(data.get("searchableFields", [])),
        filterable_fields=tuple(data.get("filterableFields", [])),
        sortable_fields=tuple(data.get("sortableFields", [])),
        default_sort=default_sort,
        required_fields=tuple(data.get("requiredFields", [])),
        immutable_fields=frozenset(data.get("immutableFields", [])),
        system_managed_fields=frozenset(system_managed),
        sensitive_fields=frozenset(data.get("sensitiveFields", [])),
        default_includes=tuple(data.get("defaultIncludes", [])),
        relationships=MappingProxyType(relationships),
        dependents=tuple(
            _resolve_dependent(name, d) for d in data.get("dependents", [])
        ),
        auditable=data.get("auditable", False),
        rls=rls,
        system_protected=system_protected,
    )
    _validate_entity(entity)
    return entity


def _resolve_fields(entity_name: str, items: Iterable[Any]) -> dict[str, FieldDefinition]:
    fields: dict[str, FieldDefinition] = {}
    for item in items:
        # Bare strings are shorthand for an untyped column
        if isinstance(item, str):
            item = {"name": item}
        field_name = item.get("name")
        _check_identifier(entity_name, "field", field_name)
        fields[field_name] = FieldDefinition(
            name=field_name,
            type=item.get("type", "string"),
            required=item.get("required", False),
            read_only=item.get("readOnly", False),
            default=item.get("default"),
        )
    return fields


def _resolve_relationship(entity_name: str, name: str, data: Mapping[str, Any]) -> Relationship:
    _check_identifier(entity_name, "relationship", name)
    rel = Relationship(
        name=name,
        type=data.get("type", "belongsTo"),
        table=data.get("table", ""),
        foreign_key=data.get("foreignKey", ""),
        fields=tuple(data.get("fields", [])),
        description=data.get("description", ""),
    )
    _check_identifier(entity_name, f"relationship '{name}' table", rel.table)
    _check_identifier(entity_name, f"relationship '{name}' foreignKey", rel.foreign_key)
    for column in rel.fields:
        _check_identifier(entity_name, f"relationship '{name}' field", column)
    return rel


def _resolve_dependent(entity_name: str, data: Mapping[str, Any]) -> Dependent:
    polymorphic_data = data.get("polymorphicType")
    polymorphic = None
    if polymorphic_data:
        _check_identifier(entity_name, "dependent polymorphic column", polymorphic_data.get("column"))
        polymorphic = PolymorphicType(
            column=polymorphic_data["column"],
            value=str(polymorphic_data.get("value", "")),
        )
    dependent = Dependent(
        table=data.get("table", ""),
        foreign_key=data.get("foreignKey", ""),
        polymorphic_type=polymorphic,
    )
    _check_identifier(entity_name, "dependent table", dependent.table)
    _check_identifier(entity_name, "dependent foreignKey", dependent.foreign_key)
    return dependent


def _check_identifier(entity_name: str, kind: str, value: Any) -> None:
    if not isinstance(value, str) or not IDENTIFIER_PATTERN.match(value):
        raise MetadataError(
            f"Entity '{entity_name}' has an invalid {kind} identifier: {value!r}"
        )


def _validate_entity(entity: EntityMetadata) -> None:
    """Every whitelist must only name declared columns."""
    declared = set(entity.fields)

    def check(kind: str, names: Iterable[str]) -> None:
        unknown = sorted(n for n in names if n not in declared)
        if unknown:
            raise MetadataError(
                f"Entity '{entity.name}' {kind} reference undeclared field(s): "
                f"{', '.join(unknown)}"
            )

    check("primaryKey", [entity.primary_key])
    if entity.identity_field:
        check("identityField", [entity.identity_field])
    if entity.display_field:
        check("displayField", [entity.display_field])
    if entity.identifier_prefix is not None:
        if not entity.identity_field:
            raise MetadataError(
                f"Entity '{entity.name}' identifierPrefix needs an identityField"
            )
        if not isinstance(entity.identifier_prefix, str) or not IDENTIFIER_PREFIX_PATTERN.match(
            entity.identifier_prefix
        ):
            raise MetadataError(
                f"Entity '{entity.name}' identifierPrefix must be uppercase letters "
                f"and digits: {entity.identifier_prefix!r}"
            )
    check("searchableFields", entity.searchable_fields)
    check("filterableFields", entity.filterable_fields)
    check("sortableFields", entity.sortable_fields)
    check("requiredFields", entity.required_fields)
    check("immutableFields", entity.immutable_fields)
    check("sensitiveFields", entity.sensitive_fields)
    check("systemManagedFields", entity.system_managed_fields)
    if entity.default_sort.field:
        check("defaultSort", [entity.default_sort.field])
    if entity.default_sort.order not in SORT_ORDERS:
        raise MetadataError(
            f"Entity '{entity.name}' defaultSort order must be ASC or DESC"
        )

    overlap = sorted(set(entity.required_fields) & entity.system_managed_fields)
    if overlap:
        raise MetadataError(
            f"Entity '{entity.name}' requires system-managed field(s): {', '.join(overlap)}"
        )

    for rel_name in entity.default_includes:
        rel = entity.relationships.get(rel_name)
        if rel is None or rel.type != "belongsTo":
            raise MetadataError(
                f"Entity '{entity.name}' defaultIncludes '{rel_name}' is not a "
                "belongsTo relationship"
            )
        check(f"relationship '{rel_name}' foreignKey", [rel.foreign_key])

    for rls_field in (
        entity.rls.own_record_field,
        entity.rls.customer_field,
        entity.rls.assigned_field,
    ):
        if rls_field:
            _check_identifier(entity.name, "rls", rls_field)

    if entity.system_protected:
        discriminator = entity.protection_field
        if not discriminator:
            raise MetadataError(
                f"Entity '{entity.name}' systemProtected needs protectedByField "
                "or identityField"
            )
        check("systemProtected", [discriminator])
        check("systemProtected immutableFields", entity.system_protected.immutable_fields)


# =============================================================================
# Registry
# =============================================================================


class MetadataRegistry:
    """Read-only view over a snapshot of entity metadata.

    The snapshot is replaced as a whole by ``reload``; callers that hold an
    ``EntityMetadata`` keep a consistent view for the rest of their call.
    """

    def __init__(
        self,
        entities: Mapping[str, EntityMetadata],
        metadata_path: Path | None = None,
    ):
        self.metadata_path = metadata_path
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, EntityMetadata] = MappingProxyType(dict(entities))

    @classmethod
    def from_path(cls, metadata_path: Path) -> "MetadataRegistry":
        loader = MetadataLoader(metadata_path)
        loader.load_all()
        logger.info(
            "Loaded %d entities from %s", len(loader.entities), metadata_path
        )
        return cls(loader.entities, metadata_path=metadata_path)

    @classmethod
    def from_dicts(cls, definitions: Iterable[Mapping[str, Any]]) -> "MetadataRegistry":
        """Build a registry from in-memory entity definitions."""
        entities = {}
        for data in definitions:
            entity = resolve_entity(data)
            entities[entity.name] = entity
        return cls(entities)

    def get(self, name: str) -> EntityMetadata | None:
        return self._snapshot.get(name)

    def list_entities(self) -> list[str]:
        return list(self._snapshot.keys())

    def snapshot(self) -> Mapping[str, EntityMetadata]:
        return self._snapshot

    def reload(self, entities: Mapping[str, EntityMetadata] | None = None) -> None:
        """Swap in a new snapshot.

        With no argument, re-reads the metadata directory this registry was
        loaded from. A load failure leaves the current snapshot in place.
        """
        if entities is None:
            if self.metadata_path is None:
                raise MetadataError("Registry has no metadata path to reload from")
            loader = MetadataLoader(self.metadata_path)
            loader.load_all()
            entities = loader.entities

        new_snapshot = MappingProxyType(dict(entities))
        with self._lock:
            self._snapshot = new_snapshot
        logger.info("Metadata reloaded: %d entities", len(new_snapshot))
