"""Delete dependent rows declared in entity metadata.

Runs on the caller's transaction client so the dependents and the owning
row are removed atomically.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from entityforge.metadata.loader import EntityMetadata
from entityforge.persistence.adapter import DatabaseClient

logger = logging.getLogger(__name__)


@dataclass
class CascadeDetail:
    table: str
    foreign_key: str
    polymorphic: bool
    deleted: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "foreignKey": self.foreign_key,
            "polymorphic": self.polymorphic,
            "deleted": self.deleted,
        }


@dataclass
class CascadeResult:
    total_deleted: int = 0
    details: list[CascadeDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDeleted": self.total_deleted,
            "details": [d.to_dict() for d in self.details],
        }


def cascade_delete_dependents(
    client: DatabaseClient, metadata: EntityMetadata, record_id: Any
) -> CascadeResult:
    """Delete every dependent row referencing ``record_id``.

    Polymorphic dependents (e.g. ``audit_logs`` keyed by resource type and
    id) only lose rows whose type column matches this entity.
    """
    result = CascadeResult()

    for dependent in metadata.dependents:
        if dependent.polymorphic_type:
            poly = dependent.polymorphic_type
            sql = (
                f"DELETE FROM {dependent.table} "
                f"WHERE {dependent.foreign_key} = $1 AND {poly.column} = $2"
            )
            params = [record_id, poly.value]
        else:
            sql = f"DELETE FROM {dependent.table} WHERE {dependent.foreign_key} = $1"
            params = [record_id]

        deleted = max(client.query(sql, params).rowcount, 0)
        result.total_deleted += deleted
        result.details.append(
            CascadeDetail(
                table=dependent.table,
                foreign_key=dependent.foreign_key,
                polymorphic=dependent.polymorphic_type is not None,
                deleted=deleted,
            )
        )

    if result.total_deleted:
        logger.debug(
            "Cascade deleted %d dependent row(s) of %s %s",
            result.total_deleted,
            metadata.name,
            record_id,
        )
    return result
