"""Entity metadata - loading, validation, and the runtime registry."""

from entityforge.metadata.loader import (
    Dependent,
    EntityMetadata,
    FieldDefinition,
    MetadataLoader,
    MetadataRegistry,
    PolymorphicType,
    Relationship,
    RlsFieldConfig,
    SortSpec,
    SystemProtection,
    resolve_entity,
)

__all__ = [
    "Dependent",
    "EntityMetadata",
    "FieldDefinition",
    "MetadataLoader",
    "MetadataRegistry",
    "PolymorphicType",
    "Relationship",
    "RlsFieldConfig",
    "SortSpec",
    "SystemProtection",
    "resolve_entity",
]
