"""Query building - search, filters, sort, and row-level security."""

from entityforge.query.builder import (
    BuiltQuery,
    QueryFragment,
    QueryOptions,
    build_filter_clause,
    build_query,
    build_search_clause,
    build_sort_clause,
    combine_params,
    combine_where_clauses,
)
from entityforge.query.rls import (
    RlsContext,
    RlsPolicy,
    apply_rls_context,
    apply_rls_filter,
    policy_allows_access,
    supported_policies,
)

__all__ = [
    "BuiltQuery",
    "QueryFragment",
    "QueryOptions",
    "RlsContext",
    "RlsPolicy",
    "apply_rls_context",
    "apply_rls_filter",
    "build_filter_clause",
    "build_query",
    "build_search_clause",
    "build_sort_clause",
    "combine_params",
    "combine_where_clauses",
    "policy_allows_access",
    "supported_policies",
]
