"""Row-level security filters.

Maps a caller's ``(policy, user_id)`` to a WHERE fragment that is ANDed into
every read. Policies that cannot be evaluated, because the name is unknown
or a required user id is missing, deny access instead of widening it.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from entityforge.metadata.loader import EntityMetadata
from entityforge.query.builder import FALSE_CLAUSE, QueryFragment

logger = logging.getLogger(__name__)


class RlsPolicy(str, Enum):
    ALL_RECORDS = "all_records"
    PUBLIC_RESOURCE = "public_resource"
    OWN_RECORD_ONLY = "own_record_only"
    OWN_WORK_ORDERS_ONLY = "own_work_orders_only"
    ASSIGNED_WORK_ORDERS_ONLY = "assigned_work_orders_only"
    OWN_INVOICES_ONLY = "own_invoices_only"
    OWN_CONTRACTS_ONLY = "own_contracts_only"
    DENY_ALL = "deny_all"


UNRESTRICTED_POLICIES = frozenset({RlsPolicy.ALL_RECORDS, RlsPolicy.PUBLIC_RESOURCE})

CUSTOMER_POLICIES = frozenset({
    RlsPolicy.OWN_WORK_ORDERS_ONLY,
    RlsPolicy.OWN_INVOICES_ONLY,
    RlsPolicy.OWN_CONTRACTS_ONLY,
})


@dataclass(frozen=True)
class RlsContext:
    """Per-call visibility policy for the current user."""

    policy: str
    user_id: Any = None

    @classmethod
    def coerce(cls, value: "RlsContext | Mapping[str, Any] | None") -> "RlsContext | None":
        """Accept an RlsContext, a ``{"policy", "userId"}`` mapping, or None."""
        if value is None or isinstance(value, RlsContext):
            return value
        if isinstance(value, Mapping):
            policy = value.get("policy")
            user_id = value.get("user_id", value.get("userId"))
            if isinstance(policy, RlsPolicy):
                policy = policy.value
            return cls(policy=policy, user_id=user_id)
        raise TypeError(f"Unsupported RLS context: {type(value).__name__}")


def _parse_policy(policy: Any) -> RlsPolicy | None:
    if isinstance(policy, RlsPolicy):
        return policy
    try:
        return RlsPolicy(policy)
    except ValueError:
        return None


def _deny(param_offset: int) -> QueryFragment:
    return QueryFragment(FALSE_CLAUSE, [], param_offset)


def _policy_column(policy: RlsPolicy, metadata: EntityMetadata | None) -> str:
    if policy is RlsPolicy.OWN_RECORD_ONLY:
        if metadata is None:
            return "id"
        return metadata.rls.own_record_field or metadata.primary_key
    if policy is RlsPolicy.ASSIGNED_WORK_ORDERS_ONLY:
        return metadata.rls.assigned_field if metadata else "assigned_technician_id"
    return metadata.rls.customer_field if metadata else "customer_id"


def apply_rls_filter(
    policy: RlsPolicy | str | None,
    user_id: Any,
    param_offset: int = 0,
    metadata: EntityMetadata | None = None,
    table_prefix: str | None = None,
) -> QueryFragment:
    """Build the RLS predicate for one policy.

    Example:
        apply_rls_filter("own_work_orders_only", 42, 2)
        # clause: "customer_id = $3", params: [42]
    """
    parsed = _parse_policy(policy)
    if parsed is None:
        logger.warning("Unknown RLS policy %r, denying access", policy)
        return _deny(param_offset)

    if parsed in UNRESTRICTED_POLICIES:
        return QueryFragment(None, [], param_offset)

    if parsed is RlsPolicy.DENY_ALL:
        return _deny(param_offset)

    if user_id is None:
        logger.warning("RLS policy %s requires a user id, denying access", parsed.value)
        return _deny(param_offset)

    column = _policy_column(parsed, metadata)
    if table_prefix:
        column = f"{table_prefix}.{column}"
    index = param_offset + 1
    return QueryFragment(f"{column} = ${index}", [user_id], index)


def apply_rls_context(
    context: RlsContext | Mapping[str, Any] | None,
    metadata: EntityMetadata | None = None,
    param_offset: int = 0,
    table_prefix: str | None = None,
) -> QueryFragment:
    """Like :func:`apply_rls_filter`, but no context means no constraint."""
    context = RlsContext.coerce(context)
    if context is None:
        return QueryFragment(None, [], param_offset)
    return apply_rls_filter(
        context.policy, context.user_id, param_offset, metadata, table_prefix
    )


def policy_allows_access(policy: RlsPolicy | str | None) -> bool:
    """Whether a policy can ever match a row."""
    parsed = _parse_policy(policy)
    return parsed is not None and parsed is not RlsPolicy.DENY_ALL


def supported_policies() -> list[str]:
    return [p.value for p in RlsPolicy]
