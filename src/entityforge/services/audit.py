"""Audit trail for entity writes.

Each committed create/update/delete of an auditable entity becomes one row
in ``audit_logs``:

    action         "<entity>_<create|update|delete>", e.g. "work_order_update"
    resource_type  the entity's table name
    resource_id    primary key of the affected row
    old_values     JSON snapshot before the write (update, delete)
    new_values     JSON snapshot after the write (create, update, delete)
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from entityforge.metadata.loader import EntityMetadata, MetadataRegistry
from entityforge.persistence.adapter import Database

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_logs"
AUDIT_RESULT_SUCCESS = "success"


@dataclass(frozen=True)
class AuditContext:
    """Who performed a write, and from where."""

    user_id: Any = None
    ip_address: str | None = None
    user_agent: str | None = None

    @classmethod
    def coerce(cls, value: "AuditContext | Mapping[str, Any] | None") -> "AuditContext | None":
        if value is None or isinstance(value, AuditContext):
            return value
        return cls(
            user_id=value.get("user_id", value.get("userId")),
            ip_address=value.get("ip_address", value.get("ipAddress")),
            user_agent=value.get("user_agent", value.get("userAgent")),
        )


def _to_json(values: Mapping[str, Any] | None) -> str | None:
    if values is None:
        return None
    # Timestamps and decimals from the driver are rendered as strings
    return json.dumps(dict(values), default=str)


class AuditLogger:
    """Writes entity audit events through a Database."""

    def __init__(self, database: Database, registry: MetadataRegistry):
        self.database = database
        self.registry = registry

    def _metadata(self, entity: EntityMetadata | str) -> EntityMetadata | None:
        # Callers that already hold metadata pass it, avoiding a second lookup
        if isinstance(entity, EntityMetadata):
            return entity
        return self.registry.get(entity)

    def is_audit_enabled(self, entity: EntityMetadata | str) -> bool:
        metadata = self._metadata(entity)
        return bool(metadata and metadata.auditable)

    def log_entity_audit(
        self,
        action: str,
        entity: EntityMetadata | str,
        new_row: Mapping[str, Any] | None,
        audit_context: AuditContext | Mapping[str, Any],
        old_row: Mapping[str, Any] | None = None,
    ) -> None:
        metadata = self._metadata(entity)
        if metadata is None:
            logger.warning("Audit skipped for unknown entity %s", entity)
            return
        entity_name = metadata.name

        context = AuditContext.coerce(audit_context)
        source = new_row if new_row is not None else old_row
        resource_id = source.get(metadata.primary_key) if source else None

        self.database.query(
            f"INSERT INTO {AUDIT_TABLE} "
            "(user_id, action, resource_type, resource_id, old_values, new_values, "
            "ip_address, user_agent, result) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
            [
                context.user_id,
                f"{entity_name}_{action}",
                metadata.table_name,
                resource_id,
                _to_json(old_row),
                _to_json(new_row),
                context.ip_address,
                context.user_agent,
                AUDIT_RESULT_SUCCESS,
            ],
        )
        logger.info(
            "Audit event %s_%s on %s %s by user %s",
            entity_name,
            action,
            metadata.table_name,
            resource_id,
            context.user_id,
        )
