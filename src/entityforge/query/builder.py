"""SQL fragment builders for metadata-driven queries.

Pure functions, no I/O. Each builder returns a :class:`QueryFragment` whose
clause uses PostgreSQL-style ``$n`` placeholders numbered from
``param_offset + 1``, so fragments compose left to right:

    search = build_search_clause("john", meta.searchable_fields)
    filters = build_filter_clause(opts, meta.filterable_fields, search.next_param_offset)
    where = combine_where_clauses([search.clause, filters.clause])
    params = combine_params(search.params, filters.params)

Column names only ever come from metadata whitelists. Caller-supplied keys
that are not whitelisted are dropped; caller-supplied values only travel as
parameters.
"""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from entityforge.metadata.loader import EntityMetadata, SortSpec

FILTER_OPERATORS: dict[str, str] = {
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "not": "!=",
    "in": "IN",
}

# Always-false predicate, used for empty IN lists and denied access
FALSE_CLAUSE = "1=0"

FALLBACK_SORT_FIELD = "id"
FALLBACK_SORT_ORDER = "DESC"


@dataclass(frozen=True)
class QueryFragment:
    """A WHERE fragment with its parameters.

    Attributes:
        clause: SQL text, or None when the fragment imposes no constraint
        params: Values for the fragment's placeholders, in placeholder order
        next_param_offset: Highest placeholder index used so far
    """

    clause: str | None = None
    params: list[Any] = field(default_factory=list)
    next_param_offset: int = 0


@dataclass(frozen=True)
class BuiltQuery:
    where_clause: str | None
    params: list[Any]
    order_by_clause: str
    next_param_offset: int


@dataclass
class QueryOptions:
    """List options accepted by ``find_all``.

    Values are kept as given; pagination is validated by the service.
    """

    page: Any = None
    limit: Any = None
    search: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)
    sort_by: str | None = None
    sort_order: str | None = None
    include_inactive: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "QueryOptions":
        """Create QueryOptions from a dict using snake_case or camelCase keys."""
        data = data or {}

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        return cls(
            page=pick("page"),
            limit=pick("limit"),
            search=pick("search"),
            filters=dict(pick("filters", default=None) or {}),
            sort_by=pick("sort_by", "sortBy"),
            sort_order=pick("sort_order", "sortOrder"),
            include_inactive=bool(pick("include_inactive", "includeInactive", default=False)),
        )


def _column(name: str, table_prefix: str | None) -> str:
    return f"{table_prefix}.{name}" if table_prefix else name


# =============================================================================
# Search
# =============================================================================


def build_search_clause(
    search_term: str | None,
    searchable_fields: Sequence[str],
    param_offset: int = 0,
    table_prefix: str | None = None,
) -> QueryFragment:
    """Build a case-insensitive ``ILIKE`` search ORed across fields.

    Example:
        build_search_clause("john", ["first_name", "email"], 0, "users")
        # clause: "(users.first_name ILIKE $1 OR users.email ILIKE $2)"
        # params: ["%john%", "%john%"]
    """
    if not search_term or not isinstance(search_term, str) or not searchable_fields:
        return QueryFragment(None, [], param_offset)

    term = search_term.strip()
    if not term:
        return QueryFragment(None, [], param_offset)

    conditions = [
        f"{_column(name, table_prefix)} ILIKE ${param_offset + i + 1}"
        for i, name in enumerate(searchable_fields)
    ]
    params = [f"%{term}%"] * len(searchable_fields)
    return QueryFragment(
        f"({' OR '.join(conditions)})",
        params,
        param_offset + len(params),
    )


# =============================================================================
# Filters
# =============================================================================


def _in_values(value: Any) -> list[Any]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def build_filter_clause(
    filters: Mapping[str, Any] | None,
    filterable_fields: Sequence[str],
    param_offset: int = 0,
    table_prefix: str | None = None,
) -> QueryFragment:
    """Build ANDed filter conditions from a filter mapping.

    Values may be:
      - a scalar: ``{"role_id": 2}`` -> ``role_id = $1``
      - None: ``{"deleted_at": None}`` -> ``deleted_at IS NULL``
      - a list: ``{"id": [1, 2]}`` -> ``id IN ($1, $2)``; a None member adds
        ``OR id IS NULL``
      - an operator mapping using gt, gte, lt, lte, not, in:
        ``{"priority": {"gte": 5, "lt": 10}}`` -> ``priority >= $1 AND priority < $2``

    Keys not in ``filterable_fields`` and unknown operators are skipped.
    """
    if not filters or not filterable_fields:
        return QueryFragment(None, [], param_offset)

    allowed = set(filterable_fields)
    conditions: list[str] = []
    params: list[Any] = []
    offset = param_offset

    def add_in(column: str, values: list[Any]) -> None:
        nonlocal offset
        # NULL never matches IN; it becomes an IS NULL alternative with no param
        has_null = any(v is None for v in values)
        values = [v for v in values if v is not None]
        if not values:
            conditions.append(f"{column} IS NULL" if has_null else FALSE_CLAUSE)
            return
        placeholders = ", ".join(f"${offset + i + 1}" for i in range(len(values)))
        clause = f"{column} IN ({placeholders})"
        conditions.append(f"({clause} OR {column} IS NULL)" if has_null else clause)
        params.extend(values)
        offset += len(values)

    for name, value in filters.items():
        if name not in allowed:
            continue
        column = _column(name, table_prefix)

        if isinstance(value, Mapping):
            for operator, operand in value.items():
                sql_operator = FILTER_OPERATORS.get(operator)
                if sql_operator is None:
                    continue
                if operator == "in":
                    add_in(column, _in_values(operand))
                elif operand is None:
                    if operator == "not":
                        conditions.append(f"{column} IS NOT NULL")
                    # Ordering comparisons against NULL are meaningless
                else:
                    offset += 1
                    conditions.append(f"{column} {sql_operator} ${offset}")
                    params.append(operand)
        elif isinstance(value, (list, tuple, set, frozenset)):
            add_in(column, list(value))
        elif value is None:
            conditions.append(f"{column} IS NULL")
        else:
            offset += 1
            conditions.append(f"{column} = ${offset}")
            params.append(value)

    if not conditions:
        return QueryFragment(None, [], param_offset)

    return QueryFragment(" AND ".join(conditions), params, offset)


# =============================================================================
# Sort
# =============================================================================


def _normalize_order(order: Any) -> str | None:
    if isinstance(order, str) and order.upper() in ("ASC", "DESC"):
        return order.upper()
    return None


def build_sort_clause(
    sort_by: str | None,
    sort_order: str | None,
    sortable_fields: Sequence[str],
    default_sort: SortSpec | Mapping[str, Any] | None = None,
    table_prefix: str | None = None,
) -> str:
    """Build an ORDER BY expression that is always valid.

    The field falls back to the default sort field, then the first sortable
    field, then ``id``. The direction falls back to the default sort order,
    then ``DESC``. The raw input never reaches the output unless whitelisted.
    """
    if isinstance(default_sort, Mapping):
        default_field = default_sort.get("field")
        default_order = default_sort.get("order")
    elif default_sort is not None:
        default_field = default_sort.field
        default_order = default_sort.order
    else:
        default_field = default_order = None

    if sort_by in sortable_fields:
        column = sort_by
    elif default_field:
        column = default_field
    elif sortable_fields:
        column = sortable_fields[0]
    else:
        column = FALLBACK_SORT_FIELD

    order = (
        _normalize_order(sort_order)
        or _normalize_order(default_order)
        or FALLBACK_SORT_ORDER
    )
    return f"{_column(column, table_prefix)} {order}"


# =============================================================================
# Combining
# =============================================================================


def combine_where_clauses(clauses: Iterable[str | None]) -> str | None:
    """AND together the non-empty clauses; None if nothing remains."""
    valid = [c for c in clauses if c and c.strip()]
    if not valid:
        return None
    return " AND ".join(valid)


def combine_params(*param_lists: Iterable[Any] | None) -> list[Any]:
    """Flatten parameter lists in order, dropping None entries.

    Builders never emit None as a parameter (NULL checks are rendered as
    ``IS NULL``), so dropping None cannot shift placeholder positions.
    """
    combined: list[Any] = []
    for params in param_lists:
        if not params:
            continue
        combined.extend(p for p in params if p is not None)
    return combined


def build_query(
    options: QueryOptions | Mapping[str, Any] | None,
    metadata: EntityMetadata,
    table_prefix: str | None = None,
) -> BuiltQuery:
    """Compose search, filters, and sort for one entity.

    Callers append RLS afterwards starting at ``next_param_offset``.
    """
    if not isinstance(options, QueryOptions):
        options = QueryOptions.from_dict(options)

    search = build_search_clause(
        options.search, metadata.searchable_fields, 0, table_prefix
    )
    filters = build_filter_clause(
        options.filters,
        metadata.filterable_fields,
        search.next_param_offset,
        table_prefix,
    )
    order_by = build_sort_clause(
        options.sort_by,
        options.sort_order,
        metadata.sortable_fields,
        metadata.default_sort,
        table_prefix,
    )
    return BuiltQuery(
        where_clause=combine_where_clauses([search.clause, filters.clause]),
        params=combine_params(search.params, filters.params),
        order_by_clause=order_by,
        next_param_offset=filters.next_param_offset,
    )
