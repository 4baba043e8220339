"""
Grant store: cross-organization access grants on protected objects.

A grant authorizes one organization to reach one object at one role. The
owning workspace never needs a grant; ``check_access`` answers ownership
first and only then consults grant rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal
from uuid import UUID

from fastapi import Request
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.audit import emit_audit_entry
from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.db.models import AccessGrant, AccessMode, GrantRole, ObjectType, Organization, User
from mylab.modules.access.errors import GrantNotFoundError, InvalidGrantError, NotOwnerError
from mylab.modules.access.ownership import OwnershipResolver, coerce_object_type

logger = get_logger(__name__)

GrantStatus = Literal["active", "revoked", "expired"]

# Single rank table; declaration order of GrantRole is the capability order
ROLE_RANKS: dict[str, int] = {role.value: rank for rank, role in enumerate(GrantRole)}


def role_rank(role: GrantRole | str | None) -> int:
    """Rank of a role, or -1 for anything outside the closed set."""
    if role is None:
        return -1
    value = role.value if isinstance(role, GrantRole) else str(role)
    return ROLE_RANKS.get(value, -1)


def has_sufficient_role(role: GrantRole | str | None, required: GrantRole | str) -> bool:
    """Unknown roles on either side are insufficient rather than an error."""
    held = role_rank(role)
    needed = role_rank(required)
    return held >= 0 and needed >= 0 and held >= needed


def derive_grant_status(grant: AccessGrant, now: datetime | None = None) -> GrantStatus:
    if grant.revoked_at is not None:
        return "revoked"
    now = now or datetime.now(UTC)
    if grant.expires_at is not None and grant.expires_at <= now:
        return "expired"
    return "active"


@dataclass(frozen=True)
class AccessCheck:
    is_owner: bool
    has_access: bool
    role: GrantRole | None = None
    can_reshare: bool | None = None
    grant_id: UUID | None = None

    @classmethod
    def owner(cls) -> AccessCheck:
        return cls(is_owner=True, has_access=True, role=GrantRole.OWNER, can_reshare=True)

    @classmethod
    def denied(cls) -> AccessCheck:
        return cls(is_owner=False, has_access=False)


@dataclass(frozen=True)
class GrantListing:
    grant: AccessGrant
    grantee_org_name: str | None


class GrantStore:
    """Reads and writes ``access_grants`` on the caller's session."""

    def __init__(
        self,
        session: AsyncSession,
        ownership: OwnershipResolver | None = None,
    ) -> None:
        self._session = session
        self._ownership = ownership or OwnershipResolver(session)

    @property
    def ownership(self) -> OwnershipResolver:
        return self._ownership

    async def check_access(
        self,
        object_type: ObjectType | str,
        object_id: UUID,
        workspace_id: UUID | None,
    ) -> AccessCheck:
        """
        Resolve the requesting workspace's access to an object.

        Ownership wins over any grant row. Otherwise the most recently created
        active grant is used, where grants within the expiry buffer already
        count as expired. A grant matches when it targets a platform
        organization owning ``workspace_id``, or when it is an offline grant
        to the external organization whose id is ``workspace_id``.
        """
        kind = coerce_object_type(object_type)
        if await self._ownership.check_ownership(kind, object_id, workspace_id):
            return AccessCheck.owner()
        if workspace_id is None:
            return AccessCheck.denied()

        settings = get_settings()
        cutoff = datetime.now(UTC) + timedelta(seconds=settings.grant_expiry_buffer_seconds)
        result = await self._session.execute(
            select(AccessGrant)
            .join(Organization, Organization.id == AccessGrant.granted_to_org_id)
            .where(
                AccessGrant.object_type == kind,
                AccessGrant.object_id == object_id,
                AccessGrant.revoked_at.is_(None),
                AccessGrant.deleted_at.is_(None),
                or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > cutoff),
                or_(
                    and_(
                        Organization.is_platform_workspace.is_(True),
                        Organization.workspace_id == workspace_id,
                    ),
                    and_(
                        Organization.is_platform_workspace.is_(False),
                        AccessGrant.access_mode == AccessMode.OFFLINE,
                        Organization.id == workspace_id,
                    ),
                ),
            )
            .order_by(AccessGrant.created_at.desc())
            .limit(1)
        )
        grant = result.scalar_one_or_none()
        if grant is None:
            return AccessCheck.denied()

        return AccessCheck(
            is_owner=False,
            has_access=True,
            role=grant.granted_role,
            can_reshare=grant.can_reshare,
            grant_id=grant.id,
        )

    async def grant_access(
        self,
        *,
        object_type: ObjectType | str,
        object_id: UUID,
        to_org_id: UUID,
        role: GrantRole | str,
        can_reshare: bool,
        granted_by_actor_id: UUID,
        expires_at: datetime | None = None,
        access_mode: AccessMode = AccessMode.PLATFORM,
        request: Request | None = None,
    ) -> UUID:
        """
        Create a grant on an object owned by the granting actor's workspace.

        The actor's organization and workspace are re-derived from the user
        directory rather than trusted from the token. Only owners mint grants;
        a grantee holding ``can_reshare`` still gets ``NotOwnerError``.
        """
        kind = coerce_object_type(object_type)
        granted_role = self._validate_role(role)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at is not None and expires_at <= datetime.now(UTC):
            raise InvalidGrantError("expires_at must be in the future")

        actor_org = await self._load_actor_organization(granted_by_actor_id)
        owner_workspace = actor_org.workspace_id if actor_org else None
        if not await self._ownership.check_ownership(kind, object_id, owner_workspace):
            logger.warning(
                "grant_denied_not_owner",
                object_type=kind.value,
                object_id=str(object_id),
                actor_id=str(granted_by_actor_id),
            )
            raise NotOwnerError(kind.value, object_id)

        if await self._session.get(Organization, to_org_id) is None:
            raise InvalidGrantError(f"Organization {to_org_id} does not exist")

        grant = AccessGrant(
            object_type=kind,
            object_id=object_id,
            granted_to_org_id=to_org_id,
            granted_role=granted_role,
            can_reshare=can_reshare,
            access_mode=access_mode,
            expires_at=expires_at,
            granted_by=granted_by_actor_id,
            created_by_org_id=actor_org.id if actor_org else None,
        )
        self._session.add(grant)
        await self._session.flush()

        await emit_audit_entry(
            db_session=self._session,
            action="grant_access",
            object_type=kind.value,
            object_id=object_id,
            actor_id=granted_by_actor_id,
            actor_org_id=actor_org.id if actor_org else None,
            request=request,
            details={
                "grant_id": str(grant.id),
                "granted_to_org_id": str(to_org_id),
                "granted_role": granted_role.value,
                "can_reshare": can_reshare,
                "access_mode": access_mode.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        logger.info(
            "access_granted",
            grant_id=str(grant.id),
            object_type=kind.value,
            object_id=str(object_id),
            granted_to_org_id=str(to_org_id),
            granted_role=granted_role.value,
        )
        return grant.id

    async def list_access_grants(
        self,
        object_type: ObjectType | str,
        object_id: UUID,
        owner_workspace_id: UUID | None,
    ) -> list[GrantListing]:
        """Owner-only view of every grant on an object, most recent first."""
        kind = coerce_object_type(object_type)
        if not await self._ownership.check_ownership(kind, object_id, owner_workspace_id):
            raise NotOwnerError(kind.value, object_id)

        result = await self._session.execute(
            select(AccessGrant, Organization.name)
            .outerjoin(Organization, Organization.id == AccessGrant.granted_to_org_id)
            .where(
                AccessGrant.object_type == kind,
                AccessGrant.object_id == object_id,
                AccessGrant.deleted_at.is_(None),
            )
            .order_by(AccessGrant.created_at.desc())
        )
        return [GrantListing(grant=grant, grantee_org_name=name) for grant, name in result.all()]

    async def get_grant(
        self,
        grant_id: UUID,
        *,
        visible_to_org_id: UUID | None = None,
    ) -> AccessGrant:
        """
        Load one grant.

        With ``visible_to_org_id`` the grant must be either granted to or
        created by that organization; anything else reads as not found.
        """
        query = select(AccessGrant).where(
            AccessGrant.id == grant_id,
            AccessGrant.deleted_at.is_(None),
        )
        if visible_to_org_id is not None:
            query = query.where(
                or_(
                    AccessGrant.granted_to_org_id == visible_to_org_id,
                    AccessGrant.created_by_org_id == visible_to_org_id,
                )
            )
        grant = (await self._session.execute(query)).scalar_one_or_none()
        if grant is None:
            raise GrantNotFoundError(grant_id)
        return grant

    async def _load_actor_organization(self, actor_id: UUID) -> Organization | None:
        result = await self._session.execute(
            select(Organization)
            .join(User, User.organization_id == Organization.id)
            .where(User.id == actor_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _validate_role(role: GrantRole | str) -> GrantRole:
        try:
            granted_role = role if isinstance(role, GrantRole) else GrantRole(role)
        except ValueError:
            raise InvalidGrantError(f"Unknown role: {role!r}") from None
        if granted_role is GrantRole.OWNER:
            raise InvalidGrantError("Ownership cannot be granted")
        return granted_role
