"""Unit tests for actor metadata helpers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from mylab.core.security.actor_metadata import (
    actor_payload,
    load_organization_names,
    load_users_by_id,
    mask_email,
)


def test_mask_email_masks_local_part() -> None:
    """Email masking should preserve domain and avoid exposing full local part."""
    assert mask_email("alice@example.com") == "a***e@example.com"
    assert mask_email("ab@example.com") == "a*@example.com"
    assert mask_email("a@example.com") == "*@example.com"
    assert mask_email("not-an-email") is None
    assert mask_email(None) is None


def test_actor_payload_prefers_user_record_and_masks_email() -> None:
    """Actor payload should return display name and masked email when available."""
    user_id = uuid4()
    users_by_id = {
        user_id: SimpleNamespace(display_name="Alice Doe", email="alice@example.com"),
    }

    payload = actor_payload(user_id, users_by_id)  # type: ignore[arg-type]

    assert payload == {
        "id": str(user_id),
        "display_name": "Alice Doe",
        "email_masked": "a***e@example.com",
    }


def test_actor_payload_falls_back_to_id_when_user_missing() -> None:
    """Actor payload should degrade safely when no profile exists."""
    user_id = uuid4()

    assert actor_payload(user_id, {}) == {
        "id": str(user_id),
        "display_name": None,
        "email_masked": None,
    }
    assert actor_payload(None, {})["id"] is None


@pytest.mark.asyncio
async def test_loaders_skip_the_query_without_ids() -> None:
    db = AsyncMock()

    assert await load_users_by_id(db, [None, None]) == {}
    assert await load_organization_names(db, []) == {}
    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_organization_names_are_keyed_by_id() -> None:
    org_id = uuid4()
    result = MagicMock()
    result.all.return_value = [SimpleNamespace(id=org_id, name="Northwind Labs")]
    db = AsyncMock()
    db.execute = AsyncMock(return_value=result)

    names = await load_organization_names(db, [org_id, org_id, None])

    assert names == {org_id: "Northwind Labs"}
    db.execute.assert_awaited_once()
