"""Batch operation types.

- Operation: the kind of write a batch item performs
- BatchOperation: one validated batch item
- BatchItemResult / BatchStats / BatchResult: what ``batch`` returns
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Operation(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BatchOperation:
    """A single create/update/delete within a batch.

    Attributes:
        operation: What to do
        id: Target primary key (update, delete)
        data: Column values (create, update)
    """

    operation: Operation
    id: Any = None
    data: Mapping[str, Any] | None = None


@dataclass
class BatchItemResult:
    index: int
    operation: Operation
    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "index": self.index,
            "operation": self.operation.value,
            "success": self.success,
        }
        if self.success:
            out["result"] = self.result
        else:
            out["error"] = self.error
        return out


@dataclass
class BatchStats:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0

    def record(self, operation: Operation) -> None:
        if operation is Operation.CREATE:
            self.created += 1
        elif operation is Operation.UPDATE:
            self.updated += 1
        else:
            self.deleted += 1

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "failed": self.failed,
        }


@dataclass
class BatchResult:
    success: bool
    results: list[BatchItemResult] = field(default_factory=list)
    errors: list[BatchItemResult] = field(default_factory=list)
    stats: BatchStats = field(default_factory=BatchStats)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "errors": [e.to_dict() for e in self.errors],
            "stats": self.stats.to_dict(),
            "message": self.message,
        }
