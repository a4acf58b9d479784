"""Schema checks for entity YAML files.

The JSON Schema in ``schemas/entity.schema.json`` describes the shape of one
entity file: allowed keys, identifier syntax, field types, relationship and
dependent blocks. It says nothing about how the parts relate to each other;
the loader rejects whitelists that name undeclared columns, includes that are
not ``belongsTo``, and so on.

    issues = validate_metadata_dir(Path("metadata"))
    for issue in issues:
        print(issue)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path(__file__).parent / "schemas"
ENTITY_SCHEMA = "entity.schema.json"
DEFS_SCHEMA = "_defs.schema.json"


@dataclass
class ValidationIssue:
    file: Path
    message: str
    path: str = ""  # e.g. "relationships.role" or "fields[2]"
    severity: str = "error"

    def __str__(self) -> str:
        where = f"{self.file} at {self.path}" if self.path else str(self.file)
        return f"[{self.severity.upper()}] {where}: {self.message}"


def _read_schema(name: str) -> dict[str, Any]:
    return json.loads((SCHEMAS_DIR / name).read_text())


@lru_cache(maxsize=1)
def _entity_validator() -> Draft202012Validator:
    """Compiled validator; ``$ref``s into the shared defs resolve by ``$id``."""
    registry = Registry()
    for name in (DEFS_SCHEMA, ENTITY_SCHEMA):
        schema = _read_schema(name)
        registry = registry.with_resource(
            schema["$id"], Resource.from_contents(schema, default_specification=DRAFT202012)
        )
    return Draft202012Validator(_read_schema(ENTITY_SCHEMA), registry=registry)


def _location(error: ValidationError) -> str:
    location = ""
    for part in error.absolute_path:
        if isinstance(part, int):
            location += f"[{part}]"
        else:
            location += f".{part}" if location else str(part)
    return location


def validate_document(doc: Any, source: Path) -> list[ValidationIssue]:
    """Check a parsed entity definition; issues are ordered by location."""
    errors = sorted(_entity_validator().iter_errors(doc), key=_location)
    return [ValidationIssue(source, error.message, _location(error)) for error in errors]


def validate_yaml_file(yaml_path: Path) -> list[ValidationIssue]:
    try:
        doc = yaml.safe_load(yaml_path.read_text())
    except yaml.YAMLError as e:
        return [ValidationIssue(yaml_path, f"YAML parse error: {e}")]

    if doc is None:
        return [ValidationIssue(yaml_path, "File is empty")]
    return validate_document(doc, yaml_path)


def validate_metadata_dir(metadata_dir: Path) -> list[ValidationIssue]:
    """Check every ``entities/*.yaml`` under ``metadata_dir``.

    A missing directory is reported as an issue; a directory without an
    ``entities/`` folder has nothing to check.
    """
    if not metadata_dir.is_dir():
        return [ValidationIssue(metadata_dir, f"Metadata directory does not exist: {metadata_dir}")]

    entities_dir = metadata_dir / "entities"
    if not entities_dir.is_dir():
        logger.warning("No entities directory under %s", metadata_dir)
        return []

    issues: list[ValidationIssue] = []
    for yaml_file in sorted(entities_dir.glob("*.yaml")):
        issues.extend(validate_yaml_file(yaml_file))
    return issues
