"""Utilities for resolving and rendering actor and organization display metadata."""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.db.models import Organization, User


def mask_email(email: str | None) -> str | None:
    """Mask an email address for UI-safe display."""
    if not email or "@" not in email:
        return None
    local_part, domain = email.split("@", 1)
    if not local_part:
        return None
    if len(local_part) == 1:
        masked_local = "*"
    elif len(local_part) == 2:
        masked_local = f"{local_part[0]}*"
    else:
        masked_local = f"{local_part[0]}{'*' * (len(local_part) - 2)}{local_part[-1]}"
    return f"{masked_local}@{domain}"


async def load_users_by_id(
    db: AsyncSession,
    user_ids: Iterable[UUID | None],
) -> dict[UUID, User]:
    """Load user rows keyed by id."""
    unique_ids = sorted({user_id for user_id in user_ids if user_id}, key=str)
    if not unique_ids:
        return {}

    result = await db.execute(select(User).where(User.id.in_(unique_ids)))
    return {user.id: user for user in result.scalars().all()}


async def load_organization_names(
    db: AsyncSession,
    organization_ids: Iterable[UUID | None],
) -> dict[UUID, str]:
    """Load organization display names keyed by id."""
    unique_ids = sorted({org_id for org_id in organization_ids if org_id}, key=str)
    if not unique_ids:
        return {}

    result = await db.execute(
        select(Organization.id, Organization.name).where(Organization.id.in_(unique_ids))
    )
    return {row.id: row.name for row in result.all()}


def actor_payload(user_id: UUID | None, users_by_id: dict[UUID, User]) -> dict[str, str | None]:
    """Build an actor payload with display metadata."""
    user = users_by_id.get(user_id) if user_id else None
    return {
        "id": str(user_id) if user_id else None,
        "display_name": user.display_name if user else None,
        "email_masked": mask_email(user.email if user else None),
    }
