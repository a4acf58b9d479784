"""Metadata CLI commands - validate, list, and show."""

from pathlib import Path

import click
import yaml

from entityforge.errors import MetadataError
from entityforge.metadata.loader import EntityMetadata, MetadataLoader
from entityforge.metadata.validator import validate_metadata_dir, validate_yaml_file
from entityforge.persistence.config import resolve_metadata_path

path_option = click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Metadata directory (default: $ENTITYFORGE_METADATA_PATH or ./metadata).",
)


def _load(metadata_path: Path) -> MetadataLoader:
    loader = MetadataLoader(metadata_path)
    try:
        loader.load_all()
    except (MetadataError, yaml.YAMLError) as e:
        click.echo(click.style(f"Failed to load metadata: {e}", fg="red"), err=True)
        raise SystemExit(1)
    return loader


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Metadata directory, or a single entity YAML file.",
)
def validate(target_path: Path | None):
    """Validate entity YAML files against the JSON Schema and load them."""
    single_file = target_path is not None and target_path.is_file()

    if single_file:
        schema_issues = validate_yaml_file(target_path)
    else:
        metadata_path = target_path or resolve_metadata_path()
        if not metadata_path.exists():
            click.echo(f"Error: Metadata directory not found at {metadata_path}", err=True)
            raise SystemExit(1)
        schema_issues = validate_metadata_dir(metadata_path)

    for issue in schema_issues:
        colour = "red" if issue.severity == "error" else "yellow"
        click.echo(click.style(str(issue), fg=colour))

    errors = [i for i in schema_issues if i.severity == "error"]
    if errors:
        click.echo(
            click.style(f"\n{len(errors)} schema error(s) found", fg="red", bold=True)
        )
        raise SystemExit(1)

    # Cross-field checks need the whole directory
    if not single_file:
        loader = _load(metadata_path)
        entities = loader.list_entities()
        click.echo(f"Loaded {len(entities)} entities:")
        for name in sorted(entities):
            entity = loader.get_entity(name)
            click.echo(f"  ✓ {name} ({len(entity.fields)} fields, table: {entity.table_name})")

    click.echo(click.style("\nAll metadata is valid.", fg="green", bold=True))


@metadata.command("list")
@path_option
def list_cmd(target_path: Path | None):
    """List loaded entities and their tables."""
    loader = _load(target_path or resolve_metadata_path())
    names = sorted(loader.list_entities())
    if not names:
        click.echo("No entities found.")
        return
    for name in names:
        entity = loader.get_entity(name)
        flags = []
        if entity.auditable:
            flags.append("audited")
        if entity.system_protected:
            flags.append("system-protected")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        click.echo(f"{name:<20} {entity.table_name}{suffix}")


def _describe(entity: EntityMetadata) -> list[str]:
    lines = [
        f"Entity:       {entity.name}",
        f"Table:        {entity.table_name}",
        f"Primary key:  {entity.primary_key}",
    ]
    if entity.identity_field:
        lines.append(f"Identity:     {entity.identity_field}")
    if entity.identifier_prefix:
        lines.append(f"Generated:    {entity.identifier_prefix}-YYYY-NNNN")
    sort_field = entity.default_sort.field or "(first sortable)"
    lines.append(f"Default sort: {sort_field} {entity.default_sort.order}")
    lines.append(f"Auditable:    {'yes' if entity.auditable else 'no'}")

    lines.append("Fields:")
    for field in entity.fields.values():
        markers = []
        if field.name in entity.required_fields:
            markers.append("required")
        if field.name in entity.immutable_fields:
            markers.append("immutable")
        if field.name in entity.system_managed_fields:
            markers.append("system")
        if field.name in entity.sensitive_fields:
            markers.append("sensitive")
        suffix = f" ({', '.join(markers)})" if markers else ""
        lines.append(f"  {field.name}: {field.type}{suffix}")

    for label, names in (
        ("Searchable", entity.searchable_fields),
        ("Filterable", entity.filterable_fields),
        ("Sortable", entity.sortable_fields),
    ):
        lines.append(f"{label + ':':<14}{', '.join(names) or '-'}")

    if entity.relationships:
        lines.append("Relationships:")
        for rel in entity.relationships.values():
            included = " (default include)" if rel.name in entity.default_includes else ""
            lines.append(
                f"  {rel.name}: {rel.type} {rel.table} via {rel.foreign_key}{included}"
            )

    if entity.dependents:
        lines.append("Dependents:")
        for dep in entity.dependents:
            poly = ""
            if dep.polymorphic_type:
                poly = f" where {dep.polymorphic_type.column} = '{dep.polymorphic_type.value}'"
            lines.append(f"  {dep.table}.{dep.foreign_key}{poly}")

    if entity.system_protected:
        protection = entity.system_protected
        lines.append(
            f"System rows:  {entity.protection_field} in "
            f"{', '.join(sorted(protection.values))}"
        )
        if protection.immutable_fields:
            lines.append(f"  locked fields: {', '.join(sorted(protection.immutable_fields))}")
        lines.append(f"  delete blocked: {'yes' if protection.prevent_delete else 'no'}")

    return lines


@metadata.command()
@click.argument("entity_name")
@path_option
def show(entity_name: str, target_path: Path | None):
    """Show the resolved metadata for one entity."""
    loader = _load(target_path or resolve_metadata_path())
    entity = loader.get_entity(entity_name)
    if entity is None:
        valid = ", ".join(sorted(loader.list_entities()))
        click.echo(f"Error: Unknown entity: {entity_name}. Valid entities: {valid}", err=True)
        raise SystemExit(1)

    for line in _describe(entity):
        click.echo(line)
