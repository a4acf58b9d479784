"""Generic entity service - metadata-driven CRUD, aggregates, and batches.

One service instance serves every entity in the registry. Each call resolves
the entity's metadata once, builds parameterized SQL from metadata
whitelists, ANDs the caller's RLS predicate into every read, and strips
sensitive columns from every row it returns.

Usage:
    service = GenericEntityService(database, registry, audit=AuditLogger(database, registry))

    service.find_all("work_order", {"page": 1, "filters": {"status": "pending"}},
                     rls={"policy": "own_work_orders_only", "userId": 7})
    service.update("customer", 12, {"phone": "555-0100"}, audit_context=ctx)
    service.batch("customer", [{"operation": "create", "data": {...}}])
"""

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any

from entityforge.errors import (
    EntityValidationError,
    ImmutableFieldViolationError,
    InvalidBatchError,
    InvalidDataError,
    InvalidIdError,
    MissingRequiredFieldsError,
    NoUpdateableFieldsError,
    NotFilterableError,
    RecordNotFoundError,
    SystemProtectionError,
    UnknownEntityError,
)
from entityforge.metadata.loader import EntityMetadata, MetadataRegistry
from entityforge.persistence.adapter import Database, DatabaseClient
from entityforge.query.builder import (
    QueryOptions,
    build_filter_clause,
    build_query,
    combine_params,
    combine_where_clauses,
)
from entityforge.query.rls import RlsContext, apply_rls_context
from entityforge.services.audit import AuditContext, AuditLogger
from entityforge.services.cascade import CascadeResult, cascade_delete_dependents
from entityforge.services.output import filter_output, filter_output_list
from entityforge.services.pagination import generate_metadata, validate_params
from entityforge.services.types import (
    BatchItemResult,
    BatchOperation,
    BatchResult,
    BatchStats,
    Operation,
)

logger = logging.getLogger(__name__)

_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")

# Column shown for a joined row when its entity declares no display field
DEFAULT_RELATED_DISPLAY_FIELD = "name"

# Field types stored lowercase after trimming
CASE_INSENSITIVE_TYPES = frozenset({"enum", "email"})

IDENTIFIER_SEQUENCE_WIDTH = 4

Rls = RlsContext | Mapping[str, Any] | None
Executor = Database | DatabaseClient
Entities = Mapping[str, EntityMetadata]
CascadeFn = Callable[[DatabaseClient, EntityMetadata, Any], CascadeResult]


def coerce_id(value: Any, field_name: str = "id") -> int:
    """Coerce a primary key to a positive integer.

    Accepts ints and integer strings (URL parameters arrive as strings).

    Raises:
        InvalidIdError: If the value is missing, not an integer, or below 1.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise InvalidIdError(f"{field_name} is required")

    if isinstance(value, bool):
        raise InvalidIdError(f"{field_name} must be a valid integer")
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif isinstance(value, str) and _INTEGER_PATTERN.match(value.strip()):
        number = int(value.strip())
    else:
        raise InvalidIdError(f"{field_name} must be a valid integer")

    if number < 1:
        raise InvalidIdError(f"{field_name} must be at least 1")
    return number


def _parse_number(value: Any) -> int | float:
    """Aggregates come back as Decimal or text; return a native number."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    number = value if isinstance(value, Decimal) else Decimal(str(value))
    if number == number.to_integral_value():
        return int(number)
    return float(number)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


def _clean(metadata: EntityMetadata, key: str, value: Any) -> Any:
    """Trim string input; case-insensitive types are also lowercased."""
    if not isinstance(value, str):
        return value
    field = metadata.fields[key]
    if field.is_json:
        return value
    value = value.strip()
    return value.lower() if field.type in CASE_INSENSITIVE_TYPES else value


def _sql(*parts: str | None) -> str:
    return " ".join(p for p in parts if p)


def _where(clause: str | None) -> str:
    return f"WHERE {clause}" if clause else ""


class GenericEntityService:
    """CRUD, aggregate, and batch operations for any registered entity."""

    def __init__(
        self,
        database: Database,
        registry: MetadataRegistry,
        cascade: CascadeFn = cascade_delete_dependents,
        audit: AuditLogger | None = None,
    ):
        self.database = database
        self.registry = registry
        self.cascade = cascade
        self.audit = audit

    # =========================================================================
    # Metadata and SQL helpers
    # =========================================================================

    def _resolve(self, entity_name: Any) -> tuple[EntityMetadata, Entities]:
        """The entity's metadata and the registry snapshot it came from.

        Every public call resolves once and passes both down, so a
        concurrent ``registry.reload()`` cannot swap metadata mid-operation.
        """
        if not entity_name or not isinstance(entity_name, str):
            raise EntityValidationError("Entity name is required and must be a string")

        name = entity_name.strip()
        entities = self.registry.snapshot()
        metadata = entities.get(name)
        if metadata is None:
            logger.warning("Unknown entity requested: %s", name)
            raise UnknownEntityError(name, sorted(entities))
        return metadata, entities

    @staticmethod
    def _related_display_field(entities: Entities, table_name: str) -> tuple[str, str]:
        """(display column, primary key) for a related table."""
        related = next((e for e in entities.values() if e.table_name == table_name), None)
        if related is None:
            return DEFAULT_RELATED_DISPLAY_FIELD, "id"
        display = related.display_field or related.identity_field
        return display or DEFAULT_RELATED_DISPLAY_FIELD, related.primary_key

    def _select_and_joins(
        self, metadata: EntityMetadata, entities: Entities
    ) -> tuple[str, str]:
        """SELECT list and LEFT JOINs for the entity's default includes.

        The related display column is labelled with the relationship name
        (``role``); other related columns get a prefix (``role_priority``).
        """
        table = metadata.table_name
        select_parts = [f"{table}.*"]
        join_parts = []

        for rel_name in metadata.default_includes:
            rel = metadata.relationships[rel_name]
            alias = f"j_{rel_name}"
            display, related_pk = self._related_display_field(entities, rel.table)

            for column in rel.fields or (display,):
                if column == "id":
                    continue
                label = rel_name if column == display else f"{rel_name}_{column}"
                select_parts.append(f"{alias}.{column} AS {label}")

            join_parts.append(
                f"LEFT JOIN {rel.table} {alias} "
                f"ON {table}.{rel.foreign_key} = {alias}.{related_pk}"
            )

        return ", ".join(select_parts), " ".join(join_parts)

    def _scoped_filters(
        self,
        metadata: EntityMetadata,
        filters: Mapping[str, Any] | None,
        rls: Rls,
    ) -> tuple[str | None, list[Any]]:
        """WHERE clause and params for filters plus RLS, no table prefix."""
        fragment = build_filter_clause(filters, metadata.filterable_fields)
        rls_fragment = apply_rls_context(rls, metadata, fragment.next_param_offset)
        where = combine_where_clauses([fragment.clause, rls_fragment.clause])
        return where, combine_params(fragment.params, rls_fragment.params)

    @staticmethod
    def _serialize(metadata: EntityMetadata, values: dict[str, Any]) -> dict[str, Any]:
        json_fields = metadata.json_fields
        return {
            key: json.dumps(value)
            if key in json_fields and isinstance(value, (dict, list))
            else value
            for key, value in values.items()
        }

    # =========================================================================
    # Reads
    # =========================================================================

    def find_by_id(self, entity_name: str, record_id: Any, rls: Rls = None) -> dict[str, Any] | None:
        """Find one row by primary key, or None if absent or hidden by RLS."""
        metadata, entities = self._resolve(entity_name)
        safe_id = coerce_id(record_id)
        row = self._fetch_by_field(
            self.database, metadata, entities, metadata.primary_key, safe_id, rls
        )
        return filter_output(row, metadata)

    def find_by_field(
        self, entity_name: str, field: str, value: Any, rls: Rls = None
    ) -> dict[str, Any] | None:
        """Find the first row where ``field = value``.

        Raises:
            NotFilterableError: If ``field`` is neither the primary key nor
                filterable.
        """
        metadata, entities = self._resolve(entity_name)
        row = self._fetch_by_field(self.database, metadata, entities, field, value, rls)
        return filter_output(row, metadata)

    def _fetch_by_field(
        self,
        executor: Executor,
        metadata: EntityMetadata,
        entities: Entities,
        field: str,
        value: Any,
        rls: Rls,
    ) -> dict[str, Any] | None:
        if field != metadata.primary_key and not metadata.is_filterable(field):
            raise NotFilterableError(metadata.name, field, list(metadata.filterable_fields))

        table = metadata.table_name
        select, joins = self._select_and_joins(metadata, entities)
        rls_fragment = apply_rls_context(rls, metadata, 1, table)
        where = combine_where_clauses([f"{table}.{field} = $1", rls_fragment.clause])
        params = [value, *rls_fragment.params]

        sql = _sql(f"SELECT {select} FROM {table}", joins, _where(where), "LIMIT 1")
        logger.debug("find_by_field %s.%s (joins=%s)", metadata.name, field, bool(joins))
        return executor.query(sql, params).first

    def _fetch_row(
        self, executor: Executor, metadata: EntityMetadata, entities: Entities, record_id: int
    ) -> dict[str, Any] | None:
        return self._fetch_by_field(
            executor, metadata, entities, metadata.primary_key, record_id, None
        )

    def find_all(
        self,
        entity_name: str,
        options: QueryOptions | Mapping[str, Any] | None = None,
        rls: Rls = None,
    ) -> dict[str, Any]:
        """Paginated list with search, filters, sort, and RLS.

        Rows with ``is_active = false`` are hidden unless ``include_inactive``
        is set, for entities that can filter on ``is_active``.
        """
        metadata, entities = self._resolve(entity_name)
        opts = options if isinstance(options, QueryOptions) else QueryOptions.from_dict(options)
        page_request = validate_params(opts.page, opts.limit)

        filters = dict(opts.filters)
        if not opts.include_inactive and metadata.is_filterable("is_active"):
            filters.setdefault("is_active", True)

        table = metadata.table_name
        built = build_query(replace(opts, filters=filters), metadata, table)
        rls_fragment = apply_rls_context(rls, metadata, built.next_param_offset, table)
        where = combine_where_clauses([built.where_clause, rls_fragment.clause])
        params = combine_params(built.params, rls_fragment.params)
        select, joins = self._select_and_joins(metadata, entities)

        logger.debug(
            "find_all %s page=%d limit=%d where=%s order=%s",
            metadata.name,
            page_request.page,
            page_request.limit,
            where,
            built.order_by_clause,
        )

        count_sql = _sql(f"SELECT COUNT(*) AS total FROM {table}", _where(where))
        total = int(self.database.query(count_sql, params).first["total"])

        data_sql = _sql(
            f"SELECT {select} FROM {table}",
            joins,
            _where(where),
            f"ORDER BY {built.order_by_clause}",
            f"LIMIT {page_request.limit} OFFSET {page_request.offset}",
        )
        rows = self.database.query(data_sql, params).rows

        return {
            "data": filter_output_list(rows, metadata),
            "pagination": generate_metadata(page_request.page, page_request.limit, total),
            "appliedFilters": {
                "search": opts.search or None,
                "filters": {k: v for k, v in filters.items() if metadata.is_filterable(k)},
                "sortBy": opts.sort_by or metadata.default_sort.field,
                "sortOrder": opts.sort_order or metadata.default_sort.order,
            },
            "rlsApplied": rls_fragment.clause is not None,
        }

    def count(
        self, entity_name: str, filters: Mapping[str, Any] | None = None, rls: Rls = None
    ) -> int:
        metadata, _ = self._resolve(entity_name)
        where, params = self._scoped_filters(metadata, filters, rls)
        sql = _sql(f"SELECT COUNT(*) AS total FROM {metadata.table_name}", _where(where))
        return int(self.database.query(sql, params).first["total"])

    def count_grouped(
        self,
        entity_name: str,
        group_field: str,
        filters: Mapping[str, Any] | None = None,
        rls: Rls = None,
    ) -> dict[Any, int]:
        """Row counts per distinct value of ``group_field``."""
        metadata, _ = self._resolve(entity_name)
        if not metadata.is_filterable(group_field):
            raise NotFilterableError(metadata.name, group_field, list(metadata.filterable_fields))

        where, params = self._scoped_filters(metadata, filters, rls)
        sql = _sql(
            f"SELECT {group_field} AS value, COUNT(*) AS total FROM {metadata.table_name}",
            _where(where),
            f"GROUP BY {group_field}",
        )
        rows = self.database.query(sql, params).rows
        return {row["value"]: int(row["total"]) for row in rows}

    def sum(
        self,
        entity_name: str,
        field: str,
        filters: Mapping[str, Any] | None = None,
        rls: Rls = None,
    ) -> int | float:
        metadata, _ = self._resolve(entity_name)
        if not metadata.is_filterable(field):
            raise NotFilterableError(metadata.name, field, list(metadata.filterable_fields))

        where, params = self._scoped_filters(metadata, filters, rls)
        sql = _sql(
            f"SELECT COALESCE(SUM({field}), 0) AS total FROM {metadata.table_name}",
            _where(where),
        )
        return _parse_number(self.database.query(sql, params).first["total"])

    # =========================================================================
    # Write helpers
    # =========================================================================

    def _prepare_create(self, metadata: EntityMetadata, data: Any) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise InvalidDataError(
                f"Data is required and must be an object for {metadata.name}"
            )

        accepted: dict[str, Any] = {}
        for key, value in data.items():
            if key not in metadata.fields:
                logger.debug("Ignoring unknown field %s for %s", key, metadata.name)
                continue
            if key in metadata.system_managed_fields:
                continue
            accepted[key] = _clean(metadata, key, value)

        # A generated identifier is filled in at insert time
        generated = metadata.identity_field if metadata.identifier_prefix else None
        missing = [
            f for f in metadata.required_fields
            if f != generated and _is_blank(accepted.get(f))
        ]
        if missing:
            raise MissingRequiredFieldsError(metadata.name, missing)
        if not accepted and generated is None:
            raise InvalidDataError(f"No valid fields provided for {metadata.name}")

        return accepted

    def _prepare_update(self, metadata: EntityMetadata, data: Any) -> dict[str, Any]:
        if not isinstance(data, Mapping):
            raise InvalidDataError(
                f"Data is required and must be an object for {metadata.name}"
            )

        immutable = [key for key in data if key in metadata.immutable_fields]
        if immutable:
            raise ImmutableFieldViolationError(immutable)

        updates: dict[str, Any] = {}
        for key, value in data.items():
            if key not in metadata.fields or key in metadata.system_managed_fields:
                logger.debug("Ignoring non-updateable field %s for %s", key, metadata.name)
                continue
            updates[key] = _clean(metadata, key, value)

        if not updates:
            raise NoUpdateableFieldsError(metadata.name)
        return self._serialize(metadata, updates)

    def _insert(
        self, executor: Executor, metadata: EntityMetadata, data: Any
    ) -> dict[str, Any] | None:
        values = self._prepare_create(metadata, data)
        identity = metadata.identity_field
        if metadata.identifier_prefix and _is_blank(values.get(identity)):
            values[identity] = self._next_identifier(executor, metadata)
        values = self._serialize(metadata, values)

        columns = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = (
            f"INSERT INTO {metadata.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *"
        )
        logger.debug("create %s fields=%s", metadata.name, columns)
        return executor.query(sql, [values[c] for c in columns]).first

    def _next_identifier(self, executor: Executor, metadata: EntityMetadata) -> str:
        """Next ``PREFIX-YYYY-NNNN`` for the entity's identity field.

        Numbering restarts each year. Runs on the caller's executor so a
        batch sees identifiers generated earlier in its own transaction.
        """
        column = metadata.identity_field
        stem = f"{metadata.identifier_prefix}-{date.today().year}-"
        # Longest first, so "-10000" sorts above "-9999"
        sql = (
            f"SELECT {column} AS value FROM {metadata.table_name} "
            f"WHERE {column} LIKE $1 "
            f"ORDER BY LENGTH({column}) DESC, {column} DESC LIMIT 1"
        )
        last = executor.query(sql, [f"{stem}%"]).first

        sequence = 1
        suffix = str(last["value"] or "")[len(stem):] if last else ""
        if suffix.isascii() and suffix.isdigit():
            sequence = int(suffix) + 1

        identifier = f"{stem}{sequence:0{IDENTIFIER_SEQUENCE_WIDTH}d}"
        logger.debug("Generated %s %s", metadata.name, identifier)
        return identifier

    def _execute_update(
        self,
        executor: Executor,
        metadata: EntityMetadata,
        record_id: int,
        updates: dict[str, Any],
    ) -> bool:
        columns = list(updates)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        params = [updates[c] for c in columns] + [record_id]
        pk = metadata.primary_key
        sql = (
            f"UPDATE {metadata.table_name} SET {assignments} "
            f"WHERE {pk} = ${len(params)} RETURNING {pk}"
        )
        logger.debug("update %s %s fields=%s", metadata.name, record_id, columns)
        return bool(executor.query(sql, params).rows)

    def _select_for_delete(
        self, executor: Executor, metadata: EntityMetadata, record_id: int
    ) -> dict[str, Any] | None:
        sql = f"SELECT * FROM {metadata.table_name} WHERE {metadata.primary_key} = $1"
        return executor.query(sql, [record_id]).first

    def _delete_row(
        self, executor: Executor, metadata: EntityMetadata, record_id: int
    ) -> dict[str, Any] | None:
        sql = (
            f"DELETE FROM {metadata.table_name} "
            f"WHERE {metadata.primary_key} = $1 RETURNING *"
        )
        return executor.query(sql, [record_id]).first

    @staticmethod
    def _protected_fields(metadata: EntityMetadata, updates: Mapping[str, Any]) -> list[str]:
        protection = metadata.system_protected
        if protection is None:
            return []
        return [key for key in updates if key in protection.immutable_fields]

    @staticmethod
    def _protected_value(metadata: EntityMetadata, row: Mapping[str, Any] | None) -> Any:
        """The row's discriminator value if the row is system-protected, else None."""
        if row is None or metadata.system_protected is None:
            return None
        value = row.get(metadata.protection_field)
        return value if value in metadata.system_protected.values else None

    def _guard_update(
        self, metadata: EntityMetadata, row: Mapping[str, Any] | None, attempted: list[str]
    ) -> None:
        value = self._protected_value(metadata, row)
        if value is not None:
            raise SystemProtectionError(
                f"Cannot modify {', '.join(attempted)} on system {metadata.name}: {value}"
            )

    def _guard_delete(self, metadata: EntityMetadata, row: Mapping[str, Any] | None) -> None:
        protection = metadata.system_protected
        if protection is None or not protection.prevent_delete:
            return
        value = self._protected_value(metadata, row)
        if value is not None:
            raise SystemProtectionError(f"Cannot delete system {metadata.name}: {value}")

    def _should_audit(self, metadata: EntityMetadata, audit_context: Any) -> bool:
        if audit_context is None or self.audit is None:
            return False
        return self.audit.is_audit_enabled(metadata)

    def _audit(
        self,
        action: str,
        metadata: EntityMetadata,
        new_row: dict[str, Any] | None,
        audit_context: AuditContext | Mapping[str, Any] | None,
        old_row: dict[str, Any] | None = None,
    ) -> None:
        """Emit an audit event; a failure is logged, never raised."""
        try:
            if not self._should_audit(metadata, audit_context):
                return
            self.audit.log_entity_audit(action, metadata, new_row, audit_context, old_row)
        except Exception as e:
            logger.error("Audit logging failed for %s %s: %s", metadata.name, action, e)

    @staticmethod
    def _rollback(client: DatabaseClient, context: str) -> None:
        """ROLLBACK that logs its own failure, leaving the caller's error to propagate."""
        try:
            client.query("ROLLBACK")
        except Exception as e:
            logger.error("Rollback failed after %s: %s", context, e)

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        entity_name: str,
        data: Mapping[str, Any],
        audit_context: AuditContext | Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Insert a row and return it.

        Unknown and system-managed keys are dropped before the insert.

        Raises:
            InvalidDataError: If ``data`` is not a mapping.
            MissingRequiredFieldsError: Listing every missing required field.
        """
        metadata, _ = self._resolve(entity_name)
        row = self._insert(self.database, metadata, data)
        result = filter_output(row, metadata)

        logger.info(
            "%s created: %s=%s",
            metadata.name,
            metadata.primary_key,
            (row or {}).get(metadata.primary_key),
        )
        self._audit("create", metadata, result, audit_context)
        return result

    def update(
        self,
        entity_name: str,
        record_id: Any,
        data: Mapping[str, Any],
        audit_context: AuditContext | Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Update a row and return it re-read with joins, or None if absent.

        Raises:
            ImmutableFieldViolationError: If ``data`` names any immutable field.
            NoUpdateableFieldsError: If nothing writable remains.
            SystemProtectionError: If a protected field of a built-in row is
                being changed.
        """
        metadata, entities = self._resolve(entity_name)
        safe_id = coerce_id(record_id)
        updates = self._prepare_update(metadata, data)

        current = None
        attempted = self._protected_fields(metadata, updates)
        if attempted:
            current = self._fetch_row(self.database, metadata, entities, safe_id)
            self._guard_update(metadata, current, attempted)

        old_values = None
        if self._should_audit(metadata, audit_context):
            if current is None:
                current = self._fetch_row(self.database, metadata, entities, safe_id)
            old_values = filter_output(current, metadata)

        if not self._execute_update(self.database, metadata, safe_id, updates):
            return None

        logger.info("%s updated: %s (%d fields)", metadata.name, safe_id, len(updates))

        updated = filter_output(
            self._fetch_row(self.database, metadata, entities, safe_id), metadata
        )
        self._audit("update", metadata, updated, audit_context, old_values)
        return updated

    def delete(
        self,
        entity_name: str,
        record_id: Any,
        audit_context: AuditContext | Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Delete a row and its dependents in one transaction.

        Returns the deleted row, or None if it did not exist (in which case
        the transaction is rolled back, not committed).
        """
        metadata, entities = self._resolve(entity_name)
        safe_id = coerce_id(record_id)

        if metadata.system_protected and metadata.system_protected.prevent_delete:
            current = self._fetch_row(self.database, metadata, entities, safe_id)
            self._guard_delete(metadata, current)

        with self.database.client() as client:
            try:
                client.query("BEGIN")

                existing = self._select_for_delete(client, metadata, safe_id)
                if existing is None:
                    client.query("ROLLBACK")
                    return None

                cascade_result = self.cascade(client, metadata, safe_id)
                deleted = self._delete_row(client, metadata, safe_id)

                client.query("COMMIT")
            except Exception as e:
                logger.error("Error deleting %s %s, rolling back: %s", metadata.name, safe_id, e)
                self._rollback(client, f"deleting {metadata.name} {safe_id}")
                raise

        logger.info(
            "%s deleted: %s (cascaded %d dependents)",
            metadata.name,
            safe_id,
            cascade_result.total_deleted,
        )
        result = filter_output(deleted, metadata)
        self._audit(
            "delete", metadata, result, audit_context, filter_output(existing, metadata)
        )
        return result

    # =========================================================================
    # Batch
    # =========================================================================

    @staticmethod
    def _parse_batch(operations: Any) -> list[BatchOperation]:
        """Validate every operation before any statement runs."""
        if not isinstance(operations, (list, tuple)) or not operations:
            raise InvalidBatchError("Operations must be a non-empty array")

        valid = ", ".join(op.value for op in Operation)
        parsed = []
        for index, item in enumerate(operations):
            if isinstance(item, BatchOperation):
                name, op_id, data = item.operation.value, item.id, item.data
            elif isinstance(item, Mapping):
                name, op_id, data = item.get("operation"), item.get("id"), item.get("data")
            else:
                raise InvalidBatchError(f"Operation at index {index} must be an object")

            try:
                operation = Operation(name)
            except ValueError:
                raise InvalidBatchError(
                    f"Invalid operation '{name}' at index {index}. Valid: {valid}"
                ) from None

            if operation in (Operation.UPDATE, Operation.DELETE) and _is_blank(op_id):
                raise InvalidBatchError(f"Operation '{name}' at index {index} requires an id")
            if operation in (Operation.CREATE, Operation.UPDATE) and data is None:
                raise InvalidBatchError(f"Operation '{name}' at index {index} requires data")

            parsed.append(BatchOperation(operation=operation, id=op_id, data=data))
        return parsed

    def _run_batch_operation(
        self,
        client: DatabaseClient,
        metadata: EntityMetadata,
        entities: Entities,
        op: BatchOperation,
    ) -> tuple[dict[str, Any] | None, tuple[str, Any, Any]]:
        """Run one batch item on the transaction client.

        Returns the item's result and the audit event to emit after commit.
        """
        if op.operation is Operation.CREATE:
            result = filter_output(self._insert(client, metadata, op.data), metadata)
            return result, ("create", result, None)

        safe_id = coerce_id(op.id)

        if op.operation is Operation.UPDATE:
            updates = self._prepare_update(metadata, op.data)
            current = self._fetch_row(client, metadata, entities, safe_id)
            if current is None:
                raise RecordNotFoundError(safe_id)
            attempted = self._protected_fields(metadata, updates)
            if attempted:
                self._guard_update(metadata, current, attempted)
            self._execute_update(client, metadata, safe_id, updates)
            result = filter_output(self._fetch_row(client, metadata, entities, safe_id), metadata)
            return result, ("update", result, filter_output(current, metadata))

        existing = self._select_for_delete(client, metadata, safe_id)
        if existing is None:
            raise RecordNotFoundError(safe_id)
        self._guard_delete(metadata, existing)
        self.cascade(client, metadata, safe_id)
        result = filter_output(self._delete_row(client, metadata, safe_id), metadata)
        return result, ("delete", result, filter_output(existing, metadata))

    def batch(
        self,
        entity_name: str,
        operations: list[BatchOperation | Mapping[str, Any]],
        continue_on_error: bool = False,
        audit_context: AuditContext | Mapping[str, Any] | None = None,
    ) -> BatchResult:
        """Run create/update/delete operations in order, in one transaction.

        By default the first failure rolls back everything. With
        ``continue_on_error`` each operation runs under its own savepoint;
        failed operations are rolled back to it and reported, the rest are
        committed. Audit events are emitted only for committed operations,
        after the commit.

        Raises:
            InvalidBatchError: If the operation list is malformed.
        """
        metadata, entities = self._resolve(entity_name)
        parsed = self._parse_batch(operations)

        results: list[BatchItemResult] = []
        errors: list[BatchItemResult] = []
        stats = BatchStats()
        pending_audit: list[tuple[str, Any, Any]] = []

        with self.database.client() as client:
            try:
                client.query("BEGIN")

                for index, op in enumerate(parsed):
                    savepoint = f"batch_op_{index}"
                    if continue_on_error:
                        client.query(f"SAVEPOINT {savepoint}")

                    try:
                        result, audit_event = self._run_batch_operation(
                            client, metadata, entities, op
                        )
                    except Exception as op_error:
                        stats.failed += 1
                        item = BatchItemResult(
                            index=index,
                            operation=op.operation,
                            success=False,
                            error=str(op_error),
                        )
                        errors.append(item)
                        results.append(item)

                        if not continue_on_error:
                            client.query("ROLLBACK")
                            logger.warning(
                                "Batch %s aborted at operation %d (%s): %s",
                                metadata.name,
                                index,
                                op.operation.value,
                                op_error,
                            )
                            return BatchResult(
                                success=False,
                                results=results,
                                errors=errors,
                                stats=stats,
                                message=f"Batch aborted at operation {index}: {op_error}",
                            )

                        client.query(f"ROLLBACK TO SAVEPOINT {savepoint}")
                        continue

                    if continue_on_error:
                        client.query(f"RELEASE SAVEPOINT {savepoint}")
                    stats.record(op.operation)
                    results.append(
                        BatchItemResult(
                            index=index, operation=op.operation, success=True, result=result
                        )
                    )
                    pending_audit.append(audit_event)

                client.query("COMMIT")
            except Exception as e:
                logger.error("Batch %s transaction failed, rolling back: %s", metadata.name, e)
                self._rollback(client, f"batch {metadata.name}")
                raise

        for action, new_row, old_row in pending_audit:
            self._audit(action, metadata, new_row, audit_context, old_row)

        success = not errors
        summary = f"{stats.created} created, {stats.updated} updated, {stats.deleted} deleted"
        message = (
            f"Batch completed: {summary}"
            if success
            else f"Batch completed with {len(errors)} error(s): {summary}"
        )
        logger.info("Batch %s completed: %s (errors=%d)", metadata.name, summary, len(errors))
        return BatchResult(
            success=success, results=results, errors=errors, stats=stats, message=message
        )
