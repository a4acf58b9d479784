"""Tests for entityforge.metadata.loader."""

import dataclasses
import shutil
from pathlib import Path

import pytest
import yaml

from entityforge.errors import MetadataError
from entityforge.metadata.loader import (
    MetadataLoader,
    MetadataRegistry,
    resolve_entity,
)

METADATA_DIR = Path(__file__).resolve().parents[1] / "metadata"


def _entity(**overrides):
    data = {
        "entity": "gadget",
        "tableName": "gadgets",
        "fields": ["id", "name", "kind", "created_at", "updated_at"],
    }
    data.update(overrides)
    return data


def _write_entity(directory: Path, data: dict) -> Path:
    path = directory / "entities" / f"{data['entity']}.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data))
    return path


class TestSampleMetadata:
    def test_loads_all_entities(self, registry):
        assert set(registry.list_entities()) == {
            "user",
            "role",
            "customer",
            "technician",
            "work_order",
            "invoice",
        }

    def test_user(self, registry):
        user = registry.get("user")
        assert user.table_name == "users"
        assert user.primary_key == "id"
        assert "auth0_id" in user.sensitive_fields
        assert user.default_sort.field == "created_at"
        assert user.default_sort.order == "DESC"
        assert user.default_includes == ("role",)
        assert user.relationships["role"].type == "belongsTo"
        assert user.system_managed_fields == {"id", "created_at", "updated_at"}

    def test_role_system_protection(self, registry):
        role = registry.get("role")
        assert role.protection_field == "name"
        assert "admin" in role.system_protected.values
        assert role.system_protected.immutable_fields == {"name", "priority"}
        assert role.system_protected.prevent_delete is True

    def test_json_fields(self, registry):
        assert registry.get("invoice").json_fields == {"line_items"}
        assert registry.get("work_order").json_fields == frozenset()

    def test_polymorphic_dependents(self, registry):
        (dependent,) = registry.get("role").dependents
        assert dependent.table == "audit_logs"
        assert dependent.foreign_key == "resource_id"
        assert dependent.polymorphic_type.column == "resource_type"
        assert dependent.polymorphic_type.value == "roles"


class TestResolveEntity:
    def test_bare_string_fields_and_defaults(self):
        meta = resolve_entity({"entity": "widget", "fields": ["id", "name"]})
        assert meta.table_name == "widgets"
        assert meta.fields["name"].type == "string"
        assert meta.system_managed_fields == {"id"}

    def test_metadata_is_immutable(self):
        meta = resolve_entity(_entity())
        with pytest.raises(dataclasses.FrozenInstanceError):
            meta.table_name = "other"
        with pytest.raises(TypeError):
            meta.fields["evil"] = None

    def test_undeclared_whitelist_field(self):
        with pytest.raises(MetadataError, match="filterableFields"):
            resolve_entity(_entity(filterableFields=["name", "password"]))

    def test_invalid_table_identifier(self):
        with pytest.raises(MetadataError, match="tableName"):
            resolve_entity(_entity(tableName="gadgets; DROP TABLE users"))

    def test_invalid_field_identifier(self):
        with pytest.raises(MetadataError, match="field"):
            resolve_entity(_entity(fields=["id", "name--"]))

    def test_required_overlaps_system_managed(self):
        with pytest.raises(MetadataError, match="system-managed"):
            resolve_entity(_entity(requiredFields=["created_at"]))

    def test_default_include_must_be_belongs_to(self):
        data = _entity(
            defaultIncludes=["parts"],
            relationships={
                "parts": {"type": "hasMany", "table": "parts", "foreignKey": "gadget_id"}
            },
        )
        with pytest.raises(MetadataError, match="belongsTo"):
            resolve_entity(data)

    def test_invalid_sort_order(self):
        with pytest.raises(MetadataError, match="ASC or DESC"):
            resolve_entity(_entity(defaultSort={"field": "name", "order": "sideways"}))

    def test_system_protection_needs_discriminator(self):
        with pytest.raises(MetadataError, match="systemProtected"):
            resolve_entity(_entity(systemProtected={"values": ["core"]}))

    @pytest.mark.parametrize("key", ["identityField", "displayField"])
    def test_undeclared_identity_or_display_field(self, key):
        with pytest.raises(MetadataError, match=key):
            resolve_entity(_entity(**{key: "nope"}))

    def test_identifier_prefix(self):
        meta = resolve_entity(_entity(identityField="name", identifierPrefix="GD"))
        assert meta.identifier_prefix == "GD"

    def test_identifier_prefix_needs_identity_field(self):
        with pytest.raises(MetadataError, match="needs an identityField"):
            resolve_entity(_entity(identifierPrefix="GD"))

    @pytest.mark.parametrize("prefix", ["gd", "G-D", "G%", ""])
    def test_invalid_identifier_prefix(self, prefix):
        with pytest.raises(MetadataError, match="identifierPrefix"):
            resolve_entity(_entity(identityField="name", identifierPrefix=prefix))

    def test_system_protection_with_protected_by_field(self):
        meta = resolve_entity(
            _entity(systemProtected={"values": ["core"], "protectedByField": "kind"})
        )
        assert meta.protection_field == "kind"


class TestMetadataLoader:
    def test_missing_entities_directory(self, tmp_path):
        loader = MetadataLoader(tmp_path)
        loader.load_all()
        assert loader.list_entities() == []

    def test_duplicate_table_names(self, tmp_path):
        _write_entity(tmp_path, _entity(entity="a", tableName="things"))
        _write_entity(tmp_path, _entity(entity="b", tableName="things"))
        with pytest.raises(MetadataError, match="Duplicate table"):
            MetadataLoader(tmp_path).load_all()

    def test_error_names_the_file(self, tmp_path):
        _write_entity(tmp_path, _entity(sortableFields=["missing"]))
        with pytest.raises(MetadataError, match="gadget.yaml"):
            MetadataLoader(tmp_path).load_all()


class TestRegistryReload:
    @pytest.fixture
    def metadata_copy(self, tmp_path):
        target = tmp_path / "metadata"
        shutil.copytree(METADATA_DIR, target)
        return target

    def test_reload_picks_up_new_entities(self, metadata_copy):
        registry = MetadataRegistry.from_path(metadata_copy)
        before = registry.snapshot()

        _write_entity(metadata_copy, _entity())
        registry.reload()

        assert registry.get("gadget") is not None
        # A snapshot taken before the reload is unaffected
        assert "gadget" not in before

    def test_failed_reload_keeps_current_snapshot(self, metadata_copy):
        registry = MetadataRegistry.from_path(metadata_copy)
        _write_entity(metadata_copy, _entity(searchableFields=["nope"]))

        with pytest.raises(MetadataError):
            registry.reload()
        assert registry.get("user") is not None
        assert registry.get("gadget") is None

    def test_reload_with_explicit_entities(self, registry):
        gadget = resolve_entity(_entity())
        registry.reload({"gadget": gadget})
        assert registry.list_entities() == ["gadget"]

    def test_reload_without_path(self):
        registry = MetadataRegistry.from_dicts([_entity()])
        with pytest.raises(MetadataError, match="no metadata path"):
            registry.reload()
