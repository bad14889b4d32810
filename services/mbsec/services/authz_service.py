"""Role-based authorization for register access.

The role table is fixed at import time. Evaluation:
1. Resolve the role's permission set (absent or unknown role -> empty set)
2. AUTHORIZED iff the requested operation is in that set

Unknown and insufficient roles produce the same NOT_AUTHORIZED verdict so
callers cannot probe for valid role names.
"""

from collections.abc import Mapping
from enum import StrEnum
from types import MappingProxyType

from mbsec.services.audit_service import log_audit_event


class Operation(StrEnum):
    READ = "read"
    WRITE = "write"


class Verdict(StrEnum):
    AUTHORIZED = "authorized"
    NOT_AUTHORIZED = "not_authorized"


ROLE_READ_ONLY = "ReadOnly"
ROLE_READ_WRITE = "ReadWrite"

ROLE_PERMISSIONS: Mapping[str, frozenset[Operation]] = MappingProxyType(
    {
        ROLE_READ_ONLY: frozenset({Operation.READ}),
        ROLE_READ_WRITE: frozenset({Operation.READ, Operation.WRITE}),
    }
)

_NO_PERMISSIONS: frozenset[Operation] = frozenset()


def is_known_role(role: str | None) -> bool:
    """Return True if the role is part of the permission table."""
    return role is not None and role in ROLE_PERMISSIONS


def resolve_permissions(role: str | None) -> frozenset[Operation]:
    """Return the operations a role grants. Absent or unknown roles grant nothing."""
    if role is None:
        return _NO_PERMISSIONS
    return ROLE_PERMISSIONS.get(role, _NO_PERMISSIONS)


def authorize(operation: Operation, role: str | None) -> Verdict:
    """
    Decide whether a peer holding ``role`` may perform ``operation``.

    Pure apart from the audit log entry; safe to call concurrently from
    any number of connection handlers.

    Args:
        operation: READ or WRITE
        role: Role extracted from the peer certificate, None if absent

    Returns:
        AUTHORIZED or NOT_AUTHORIZED
    """
    operation = Operation(operation)
    allowed = operation in resolve_permissions(role)
    verdict = Verdict.AUTHORIZED if allowed else Verdict.NOT_AUTHORIZED

    log_audit_event(
        event_type="authz",
        action=operation.value,
        actor_type="client",
        actor_id=role,
        details={"verdict": verdict.value},
        success=allowed,
    )

    return verdict
