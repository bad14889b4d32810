"""Audit logging service."""

from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def log_audit_event(
    *,
    event_type: str,
    action: str,
    actor_type: str,
    actor_id: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> dict[str, Any]:
    """
    Emit an audit event to the structured logger.

    Connection context (peer address, unit id) bound with
    ``structlog.contextvars`` is merged into the event by the logging
    pipeline.

    Args:
        event_type: Type of event ('authz', 'pki')
        action: Specific action ('read', 'write', 'issue', etc.)
        actor_type: Type of actor ('client', 'system')
        actor_id: Identifier of the actor (role, alias, etc.)
        target_type: Type of target ('unit', 'credential', etc.)
        target_id: Identifier of the target
        details: Additional event details
        success: Whether the action was allowed / succeeded

    Returns:
        The emitted event fields
    """
    event: dict[str, Any] = {
        "event_type": event_type,
        "action": action,
        "actor_type": actor_type,
        "actor_id": actor_id,
        "target_type": target_type,
        "target_id": target_id,
        "success": success,
        **(details or {}),
    }

    log_method = logger.info if success else logger.warning
    log_method("audit_event", **event)

    return event
