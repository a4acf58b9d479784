"""Strip sensitive columns from rows before they leave the service."""

from typing import Any

from entityforge.metadata.loader import EntityMetadata

# Credentials that never leave the service, whatever the metadata says
ALWAYS_SENSITIVE = frozenset({
    "auth0_id",
    "refresh_token",
    "api_key",
    "api_secret",
    "secret_key",
    "private_key",
})


def filter_output(
    row: dict[str, Any] | None, metadata: EntityMetadata
) -> dict[str, Any] | None:
    if row is None:
        return None
    hidden = metadata.sensitive_fields | ALWAYS_SENSITIVE
    return {k: v for k, v in row.items() if k not in hidden}


def filter_output_list(
    rows: list[dict[str, Any]], metadata: EntityMetadata
) -> list[dict[str, Any]]:
    return [filter_output(row, metadata) for row in rows]
