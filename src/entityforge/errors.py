"""Error types raised by the entityforge engine.

Every error carries a machine-readable ``code`` so callers (an HTTP layer,
a CLI, a job runner) can map kinds to responses without parsing messages:

- ``BAD_REQUEST``: input shape/type problems, raised before any query runs
- ``FORBIDDEN``: policy violations, raised before any mutating statement
- ``NOT_FOUND``: only used for batch items; absence is otherwise ``None``

Database driver errors are never wrapped; they propagate unmodified.
"""

from typing import Any


class EntityForgeError(Exception):
    """Base exception for entityforge errors."""

    code = "ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code}


class MetadataError(EntityForgeError):
    """Entity metadata is malformed or internally inconsistent."""

    code = "INVALID_METADATA"


# =============================================================================
# Validation errors (bad input)
# =============================================================================


class EntityValidationError(EntityForgeError):
    """Caller input failed validation."""

    code = "BAD_REQUEST"


class UnknownEntityError(EntityValidationError):
    def __init__(self, entity_name: str, valid_entities: list[str] | None = None):
        message = f"Unknown entity: {entity_name}"
        if valid_entities:
            message += f". Valid entities: {', '.join(valid_entities)}"
        super().__init__(message)
        self.entity_name = entity_name


class InvalidIdError(EntityValidationError):
    pass


class InvalidDataError(EntityValidationError):
    pass


class MissingRequiredFieldsError(EntityValidationError):
    def __init__(self, entity_name: str, fields: list[str]):
        super().__init__(
            f"Missing required fields for {entity_name}: {', '.join(fields)}"
        )
        self.fields = list(fields)


class NoUpdateableFieldsError(EntityValidationError):
    def __init__(self, entity_name: str):
        super().__init__(f"No valid updateable fields provided for {entity_name}")


class NotFilterableError(EntityValidationError):
    def __init__(self, entity_name: str, field: str, allowed: list[str]):
        super().__init__(
            f"Field '{field}' is not filterable for {entity_name}. "
            f"Allowed: {', '.join(allowed)}"
        )
        self.field = field


class InvalidBatchError(EntityValidationError):
    pass


# =============================================================================
# Policy violations
# =============================================================================


class PolicyViolationError(EntityForgeError):
    """The request is well-formed but not permitted."""

    code = "FORBIDDEN"


class ImmutableFieldViolationError(PolicyViolationError):
    def __init__(self, fields: list[str]):
        super().__init__(f"Cannot update immutable field(s): {', '.join(fields)}")
        self.fields = list(fields)


class SystemProtectionError(PolicyViolationError):
    pass


class RecordNotFoundError(EntityForgeError):
    """A batch item referenced a row that does not exist."""

    code = "NOT_FOUND"

    def __init__(self, record_id: Any):
        super().__init__(f"Record not found: {record_id}")
        self.record_id = record_id
