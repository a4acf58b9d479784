"""Entity services - generic CRUD/batch, audit, and cascade collaborators."""

from entityforge.services.audit import AuditContext, AuditLogger
from entityforge.services.cascade import CascadeResult, cascade_delete_dependents
from entityforge.services.generic_entity import GenericEntityService, coerce_id
from entityforge.services.types import (
    BatchItemResult,
    BatchOperation,
    BatchResult,
    BatchStats,
    Operation,
)

__all__ = [
    "AuditContext",
    "AuditLogger",
    "BatchItemResult",
    "BatchOperation",
    "BatchResult",
    "BatchStats",
    "CascadeResult",
    "GenericEntityService",
    "Operation",
    "cascade_delete_dependents",
    "coerce_id",
]
