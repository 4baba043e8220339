"""
Audit entry writer for access-control events.

Provides ``emit_audit_entry()`` for recording security-relevant actions
(grant, revoke, token issue, download, anomaly) into the ``audit_log`` table.

Entries are written on the caller's session so they commit or roll back with
the business change they describe. Best-effort callers (token issue, anomaly
reports) let write failures be logged and swallowed; the revocation engine
passes ``strict=True`` so a failed audit write aborts the revocation unit.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import Request

from mylab.core.logging import get_logger
from mylab.core.rate_limit import get_client_ip
from mylab.db.models import AuditEntry

logger = get_logger(__name__)


def _as_str(value: str | UUID | None) -> str | None:
    return str(value) if value is not None else None


def build_audit_entry(
    *,
    action: str,
    object_type: str,
    object_id: str | UUID | None = None,
    actor_id: str | UUID | None = None,
    actor_org_id: str | UUID | None = None,
    request: Request | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEntry:
    """Build (but do not persist) an ``AuditEntry``."""
    ip_address: str | None = None
    user_agent: str | None = None

    if request is not None:
        ip_address = get_client_ip(request) if request.client else None
        user_agent = request.headers.get("user-agent")

    return AuditEntry(
        object_type=str(object_type),
        object_id=_as_str(object_id),
        action=action,
        actor_id=_as_str(actor_id),
        actor_org_id=_as_str(actor_org_id),
        details=details,
        ip_address=ip_address,
        user_agent=user_agent,
    )


async def emit_audit_entry(
    *,
    db_session: Any,
    action: str,
    object_type: str,
    object_id: str | UUID | None = None,
    actor_id: str | UUID | None = None,
    actor_org_id: str | UUID | None = None,
    request: Request | None = None,
    details: dict[str, Any] | None = None,
    strict: bool = False,
) -> AuditEntry | None:
    """
    Write a single audit entry to the database.

    Parameters
    ----------
    db_session:
        An active ``AsyncSession``. The caller is responsible for committing
        (or the session dependency will auto-commit).
    action:
        Short verb describing the action, e.g. ``"grant_access"``,
        ``"revoke_access"``, ``"token_issued"``, ``"download"``.
    object_type:
        The type of the protected object, e.g. ``"document"``.
    object_id:
        Primary key of the protected object.
    actor_id / actor_org_id:
        The acting user and their organization. None for system events.
    request:
        The current ``Request``; used to extract IP and User-Agent.
    details:
        Structured context to attach to the entry.
    strict:
        Re-raise write failures instead of logging them.
    """
    entry = build_audit_entry(
        action=action,
        object_type=object_type,
        object_id=object_id,
        actor_id=actor_id,
        actor_org_id=actor_org_id,
        request=request,
        details=details,
    )

    try:
        db_session.add(entry)
        await db_session.flush()
    except Exception:
        if strict:
            raise
        logger.warning(
            "audit_entry_write_failed",
            action=action,
            object_type=str(object_type),
            object_id=_as_str(object_id),
            exc_info=True,
        )
        return None
    return entry
