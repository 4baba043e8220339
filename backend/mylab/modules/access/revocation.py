"""
Revocation engine.

Revoking a grant stamps the grant, cascades ``revoked_at`` onto every live
download token issued under it, and appends one ``revoke_access`` audit entry
per grant. All three happen inside one SAVEPOINT on the request session: if
any step fails (the audit write included) nothing is left half revoked.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import UUID

from fastapi import Request
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.audit import emit_audit_entry
from mylab.core.logging import get_logger
from mylab.db.models import AccessGrant, AuditEntry, DownloadToken, GrantRole, ObjectType
from mylab.modules.access.actor import ActorContext
from mylab.modules.access.errors import GrantNotFoundError, NotOwnerError
from mylab.modules.access.ownership import OwnershipResolver, coerce_object_type

logger = get_logger(__name__)

REVOKE_ACTION = "revoke_access"


class _Expiring(Protocol):
    expires_at: datetime | None


def is_grant_expired_with_buffer(
    grant: _Expiring,
    buffer_seconds: int,
    now: datetime | None = None,
) -> bool:
    """Treat a grant as expired once it is within ``buffer_seconds`` of its expiry."""
    if grant.expires_at is None:
        return False
    now = now or datetime.now(UTC)
    return now >= grant.expires_at - timedelta(seconds=buffer_seconds)


@dataclass(frozen=True)
class RevokedGrant:
    grant_id: UUID
    granted_role: GrantRole
    original_expires_at: datetime | None
    token_ids: list[UUID] = field(default_factory=list)


@dataclass(frozen=True)
class RevocationResult:
    revoked_at: datetime
    grants: list[RevokedGrant] = field(default_factory=list)

    @property
    def revoked_grant_ids(self) -> list[UUID]:
        return [g.grant_id for g in self.grants]

    @property
    def revoked_token_ids(self) -> list[UUID]:
        return [token_id for g in self.grants for token_id in g.token_ids]

    @property
    def is_noop(self) -> bool:
        return not self.grants


@dataclass(frozen=True)
class RevocationPage:
    entries: list[AuditEntry]
    total: int


class RevocationEngine:
    def __init__(
        self,
        session: AsyncSession,
        ownership: OwnershipResolver | None = None,
    ) -> None:
        self._session = session
        self._ownership = ownership or OwnershipResolver(session)

    async def revoke_access_with_audit(
        self,
        *,
        object_type: ObjectType | str,
        object_id: UUID,
        granted_to_org_id: UUID,
        revoked_by_actor_id: UUID,
        reason: str,
        actor_org_id: UUID | None = None,
        request: Request | None = None,
    ) -> RevocationResult:
        """
        Revoke every active grant for (object, grantee org) as one unit.

        No active grant is a successful no-op so retries are safe.
        """
        kind = coerce_object_type(object_type)
        now = datetime.now(UTC)
        revoked: list[RevokedGrant] = []

        async with self._session.begin_nested():
            result = await self._session.execute(
                select(AccessGrant)
                .where(
                    AccessGrant.object_type == kind,
                    AccessGrant.object_id == object_id,
                    AccessGrant.granted_to_org_id == granted_to_org_id,
                    AccessGrant.revoked_at.is_(None),
                    AccessGrant.deleted_at.is_(None),
                    or_(AccessGrant.expires_at.is_(None), AccessGrant.expires_at > now),
                )
                .with_for_update()
            )
            grants = list(result.scalars().all())
            if not grants:
                logger.info(
                    "revocation_noop",
                    object_type=kind.value,
                    object_id=str(object_id),
                    granted_to_org_id=str(granted_to_org_id),
                )
                return RevocationResult(revoked_at=now)

            for grant in grants:
                grant.revoked_at = now
                grant.revoked_by = revoked_by_actor_id
                grant.revocation_reason = reason
            await self._session.flush()

            tokens_by_grant = await self._cascade_to_tokens([g.id for g in grants], now)

            for grant in grants:
                token_ids = tokens_by_grant.get(grant.id, [])
                await emit_audit_entry(
                    db_session=self._session,
                    action=REVOKE_ACTION,
                    object_type=kind.value,
                    object_id=object_id,
                    actor_id=revoked_by_actor_id,
                    actor_org_id=actor_org_id,
                    request=request,
                    details={
                        "grant_id": str(grant.id),
                        "granted_to_org_id": str(granted_to_org_id),
                        "granted_role": grant.granted_role.value,
                        "original_expires_at": (
                            grant.expires_at.isoformat() if grant.expires_at else None
                        ),
                        "revocation_reason": reason,
                        "revoked_at": now.isoformat(),
                        "revoked_token_ids": [str(t) for t in token_ids],
                    },
                    strict=True,
                )
                revoked.append(
                    RevokedGrant(
                        grant_id=grant.id,
                        granted_role=grant.granted_role,
                        original_expires_at=grant.expires_at,
                        token_ids=token_ids,
                    )
                )

        outcome = RevocationResult(revoked_at=now, grants=revoked)
        logger.info(
            "access_revoked",
            object_type=kind.value,
            object_id=str(object_id),
            granted_to_org_id=str(granted_to_org_id),
            revoked_by=str(revoked_by_actor_id),
            grant_count=len(outcome.grants),
            token_count=len(outcome.revoked_token_ids),
        )
        return outcome

    async def _cascade_to_tokens(
        self,
        grant_ids: list[UUID],
        now: datetime,
    ) -> dict[UUID, list[UUID]]:
        """Revoke live tokens of the given grants; consumed one-time tokens are left alone."""
        result = await self._session.execute(
            update(DownloadToken)
            .where(
                DownloadToken.grant_id.in_(grant_ids),
                DownloadToken.revoked_at.is_(None),
                DownloadToken.expires_at > now,
                or_(DownloadToken.one_time_use.is_(False), DownloadToken.used_at.is_(None)),
            )
            .values(revoked_at=now)
            .returning(DownloadToken.id, DownloadToken.grant_id)
            .execution_options(synchronize_session="fetch")
        )
        by_grant: dict[UUID, list[UUID]] = defaultdict(list)
        for token_id, grant_id in result.all():
            by_grant[grant_id].append(token_id)
        return by_grant

    async def revoke_grant(
        self,
        grant_id: UUID,
        actor: ActorContext,
        reason: str,
        request: Request | None = None,
    ) -> tuple[AccessGrant, RevocationResult]:
        """
        Revoke a grant by id on behalf of an authenticated actor.

        Allowed for the user who created the grant, an admin of the granting
        organization (or a platform admin), and the owning workspace.
        """
        grant = await self._session.get(AccessGrant, grant_id)
        if grant is None or grant.deleted_at is not None:
            raise GrantNotFoundError(grant_id)

        if not await self._may_revoke(grant, actor):
            logger.warning(
                "revocation_denied",
                grant_id=str(grant_id),
                actor_id=str(actor.user_id),
            )
            raise NotOwnerError(grant.object_type.value, grant.object_id)

        outcome = await self.revoke_access_with_audit(
            object_type=grant.object_type,
            object_id=grant.object_id,
            granted_to_org_id=grant.granted_to_org_id,
            revoked_by_actor_id=actor.user_id,
            reason=reason,
            actor_org_id=actor.organization_id,
            request=request,
        )
        return grant, outcome

    async def _may_revoke(self, grant: AccessGrant, actor: ActorContext) -> bool:
        if grant.granted_by == actor.user_id or actor.is_platform_admin:
            return True
        if actor.is_admin and grant.created_by_org_id is not None:
            if grant.created_by_org_id == actor.organization_id:
                return True
        return await self._ownership.check_ownership(
            grant.object_type, grant.object_id, actor.workspace_id
        )

    async def list_revocations(
        self,
        organization_id: UUID,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> RevocationPage:
        """
        Revocation history from the audit trail, newest first.

        Covers revocations performed by the organization and revocations of
        grants held by it.
        """
        if start is not None and start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        if end is not None and end.tzinfo is None:
            end = end.replace(tzinfo=UTC)
        org = str(organization_id)
        filters: list[Any] = [
            AuditEntry.action == REVOKE_ACTION,
            or_(
                AuditEntry.actor_org_id == org,
                AuditEntry.details["granted_to_org_id"].astext == org,
            ),
        ]
        if start is not None:
            filters.append(AuditEntry.created_at >= start)
        if end is not None:
            filters.append(AuditEntry.created_at <= end)

        total = (
            await self._session.execute(
                select(func.count()).select_from(AuditEntry).where(*filters)
            )
        ).scalar_one()
        rows = await self._session.execute(
            select(AuditEntry)
            .where(*filters)
            .order_by(AuditEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return RevocationPage(entries=list(rows.scalars().all()), total=int(total))

    async def get_revocation_history(
        self,
        object_type: ObjectType | str,
        object_id: UUID,
    ) -> list[AccessGrant]:
        """Revoked grants on one object, newest first. Callers authorize ownership."""
        kind = coerce_object_type(object_type)
        result = await self._session.execute(
            select(AccessGrant)
            .where(
                AccessGrant.object_type == kind,
                AccessGrant.object_id == object_id,
                AccessGrant.revoked_at.is_not(None),
                AccessGrant.deleted_at.is_(None),
            )
            .order_by(AccessGrant.revoked_at.desc())
        )
        return list(result.scalars().all())
