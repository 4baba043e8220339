"""
Unit tests for audit entry emission.

Tests that emit_audit_entry writes AuditEntry records correctly, swallows
write failures for best-effort callers, and re-raises them in strict mode.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from mylab.core.audit import build_audit_entry, emit_audit_entry


def _make_request(ip: str = "10.0.0.1", ua: str = "TestAgent/1.0") -> MagicMock:
    req = MagicMock()
    req.client.host = ip
    req.headers = {"user-agent": ua}
    return req


def _make_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    return session


@pytest.mark.asyncio
async def test_emit_audit_entry_writes_record() -> None:
    """emit_audit_entry should add an AuditEntry to the session and flush."""
    session = _make_session()
    object_id = uuid4()
    actor_id = uuid4()
    org_id = uuid4()

    entry = await emit_audit_entry(
        db_session=session,
        action="grant_access",
        object_type="document",
        object_id=object_id,
        actor_id=actor_id,
        actor_org_id=org_id,
        request=_make_request(),
        details={"granted_role": "viewer"},
    )

    session.add.assert_called_once()
    written = session.add.call_args[0][0]
    assert written is entry
    assert written.action == "grant_access"
    assert written.object_type == "document"
    assert written.object_id == str(object_id)
    assert written.actor_id == str(actor_id)
    assert written.actor_org_id == str(org_id)
    assert written.ip_address == "10.0.0.1"
    assert written.user_agent == "TestAgent/1.0"
    assert written.details == {"granted_role": "viewer"}
    session.flush.assert_awaited_once()


def test_build_audit_entry_without_request_has_no_client_info() -> None:
    entry = build_audit_entry(action="token_issued", object_type="result")

    assert entry.actor_id is None
    assert entry.ip_address is None
    assert entry.user_agent is None


@pytest.mark.asyncio
async def test_emit_audit_entry_swallows_errors() -> None:
    """Best-effort writes log and return None instead of raising."""
    session = _make_session()
    session.flush = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))

    result = await emit_audit_entry(
        db_session=session,
        action="access_anomaly",
        object_type="document",
        object_id=uuid4(),
    )

    assert result is None


@pytest.mark.asyncio
async def test_emit_audit_entry_strict_reraises() -> None:
    """Strict writes must surface failures so the caller's unit rolls back."""
    session = _make_session()
    session.flush = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("down")))

    with pytest.raises(OperationalError):
        await emit_audit_entry(
            db_session=session,
            action="revoke_access",
            object_type="document",
            object_id=uuid4(),
            strict=True,
        )
