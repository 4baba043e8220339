"""
Download token service.

Tokens are opaque 32-byte random strings. Only their SHA-256 hex digest is
stored, so the plaintext returned by ``generate_download_token`` can never be
recovered. A token never outlives its parent grant and is checked against
the grant again on every validation.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal
from uuid import UUID

from fastapi import Request
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.audit import emit_audit_entry
from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.db.models import AccessGrant, DownloadToken, GrantRole, ObjectType, User
from mylab.modules.access.errors import GrantNotFoundError, NotOwnerError, TokenFailureReason
from mylab.modules.access.ownership import OwnershipResolver, coerce_object_type
from mylab.modules.access.revocation import is_grant_expired_with_buffer

logger = get_logger(__name__)

TokenStatus = Literal["revoked", "used", "expired", "active"]

TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class IssuedDownloadToken:
    """A freshly issued token; ``token`` is the only copy of the plaintext."""

    token: str
    token_id: UUID
    object_type: ObjectType
    object_id: UUID
    grant_id: UUID | None
    expires_at: datetime
    one_time_use: bool

    def expires_in(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        return max(0, int((self.expires_at - now).total_seconds()))


@dataclass(frozen=True)
class TokenValidation:
    valid: bool
    object_type: ObjectType | None = None
    object_id: UUID | None = None
    error: TokenFailureReason | None = None
    token_id: UUID | None = None
    user_id: UUID | None = None
    grant_id: UUID | None = None
    one_time_use: bool = False

    @classmethod
    def failure(
        cls,
        reason: TokenFailureReason,
        token: DownloadToken | None = None,
    ) -> TokenValidation:
        return cls(valid=False, error=reason, token_id=token.id if token else None)


@dataclass(frozen=True)
class TokenListing:
    token: DownloadToken
    status: TokenStatus
    expires_in: int
    issued_to_name: str | None
    granted_role: GrantRole | None


def evaluate_token(
    token: DownloadToken | None,
    grant: AccessGrant | None,
    organization_id: UUID,
    now: datetime,
    buffer_seconds: int,
) -> TokenValidation:
    """
    Pure validation of a token row and its parent grant.

    Checks run in a fixed order so the first failing rule names the reason:
    existence, organization, revocation, expiry, one-time consumption.
    """
    if token is None:
        return TokenValidation.failure("not_found")
    if token.organization_id != organization_id:
        return TokenValidation.failure("org_mismatch", token)

    # A token whose grant row vanished or was soft-deleted is dead as well
    grant_gone = token.grant_id is not None and (grant is None or grant.deleted_at is not None)
    if token.revoked_at is not None or grant_gone or (grant and grant.revoked_at is not None):
        return TokenValidation.failure("revoked", token)

    if token.expires_at <= now:
        return TokenValidation.failure("expired", token)
    if grant is not None and is_grant_expired_with_buffer(grant, buffer_seconds, now):
        return TokenValidation.failure("expired", token)

    if token.one_time_use and token.used_at is not None:
        return TokenValidation.failure("already_used", token)

    return TokenValidation(
        valid=True,
        object_type=token.object_type,
        object_id=token.object_id,
        token_id=token.id,
        user_id=token.user_id,
        grant_id=token.grant_id,
        one_time_use=token.one_time_use,
    )


def derive_token_status(token: DownloadToken, now: datetime | None = None) -> TokenStatus:
    if token.revoked_at is not None:
        return "revoked"
    if token.used_at is not None:
        return "used"
    now = now or datetime.now(UTC)
    if token.expires_at <= now:
        return "expired"
    return "active"


class TokenService:
    def __init__(
        self,
        session: AsyncSession,
        ownership: OwnershipResolver | None = None,
    ) -> None:
        self._session = session
        self._ownership = ownership or OwnershipResolver(session)

    async def generate_download_token(
        self,
        *,
        object_type: ObjectType | str,
        object_id: UUID,
        organization_id: UUID,
        user_id: UUID,
        grant_id: UUID | None,
        ttl_minutes: int | None = None,
        one_time_use: bool = False,
        workspace_id: UUID | None = None,
        request: Request | None = None,
    ) -> IssuedDownloadToken:
        """
        Issue a token for one object.

        With ``grant_id`` the grant must be active, outside the expiry buffer,
        held by ``organization_id`` and about this very object; the token's
        expiry is clamped to the grant's. Without a grant the issuer must own
        the object through ``workspace_id``.
        """
        settings = get_settings()
        kind = coerce_object_type(object_type)
        now = datetime.now(UTC)

        ttl = settings.download_token_default_ttl_minutes if ttl_minutes is None else ttl_minutes
        ttl = max(1, min(ttl, settings.download_token_max_ttl_minutes))
        expires_at = now + timedelta(minutes=ttl)

        if grant_id is not None:
            grant = await self._session.get(AccessGrant, grant_id)
            if (
                grant is None
                or grant.deleted_at is not None
                or grant.revoked_at is not None
                or grant.object_type != kind
                or grant.object_id != object_id
                or grant.granted_to_org_id != organization_id
                or is_grant_expired_with_buffer(grant, settings.grant_expiry_buffer_seconds, now)
            ):
                raise GrantNotFoundError(grant_id)
            if grant.expires_at is not None and grant.expires_at < expires_at:
                expires_at = grant.expires_at
        elif not await self._ownership.check_ownership(kind, object_id, workspace_id):
            raise NotOwnerError(kind.value, object_id)

        plaintext = secrets.token_hex(TOKEN_BYTES)
        row = DownloadToken(
            token_hash=hash_token(plaintext),
            object_type=kind,
            object_id=object_id,
            organization_id=organization_id,
            user_id=user_id,
            grant_id=grant_id,
            expires_at=expires_at,
            one_time_use=one_time_use,
        )
        self._session.add(row)
        await self._session.flush()

        await emit_audit_entry(
            db_session=self._session,
            action="token_issued",
            object_type=kind.value,
            object_id=object_id,
            actor_id=user_id,
            actor_org_id=organization_id,
            request=request,
            details={
                "token_id": str(row.id),
                "grant_id": str(grant_id) if grant_id else None,
                "expires_at": expires_at.isoformat(),
                "one_time_use": one_time_use,
            },
        )
        logger.info(
            "download_token_issued",
            token_id=str(row.id),
            object_type=kind.value,
            object_id=str(object_id),
            grant_id=str(grant_id) if grant_id else None,
            ttl_seconds=int((expires_at - now).total_seconds()),
            one_time_use=one_time_use,
        )
        return IssuedDownloadToken(
            token=plaintext,
            token_id=row.id,
            object_type=kind,
            object_id=object_id,
            grant_id=grant_id,
            expires_at=expires_at,
            one_time_use=one_time_use,
        )

    async def validate_download_token(self, token: str, organization_id: UUID) -> TokenValidation:
        settings = get_settings()
        result = await self._session.execute(
            select(DownloadToken, AccessGrant)
            .outerjoin(AccessGrant, AccessGrant.id == DownloadToken.grant_id)
            .where(DownloadToken.token_hash == hash_token(token))
        )
        row = result.first()
        token_row, grant = (row[0], row[1]) if row is not None else (None, None)

        validation = evaluate_token(
            token_row,
            grant,
            organization_id,
            datetime.now(UTC),
            settings.grant_expiry_buffer_seconds,
        )
        if not validation.valid:
            logger.info(
                "download_token_rejected",
                reason=validation.error,
                token_id=str(validation.token_id) if validation.token_id else None,
                organization_id=str(organization_id),
            )
        return validation

    async def mark_token_as_used(self, token: str) -> bool:
        """
        Consume a token with a conditional update.

        Returns True only for the call that actually set ``used_at``; a repeat
        call, or one racing a revocation, is a no-op returning False.
        """
        result = await self._session.execute(
            update(DownloadToken)
            .where(
                DownloadToken.token_hash == hash_token(token),
                DownloadToken.used_at.is_(None),
                DownloadToken.revoked_at.is_(None),
            )
            .values(used_at=datetime.now(UTC))
            .returning(DownloadToken.id)
            .execution_options(synchronize_session="fetch")
        )
        token_id = result.scalar_one_or_none()
        if token_id is None:
            logger.info("download_token_not_consumed")
            return False
        logger.info("download_token_consumed", token_id=str(token_id))
        return True

    async def list_tokens_for_object(
        self,
        object_id: UUID,
        organization_id: UUID,
    ) -> list[TokenListing]:
        now = datetime.now(UTC)
        result = await self._session.execute(
            select(DownloadToken, User.display_name, AccessGrant.granted_role)
            .outerjoin(User, User.id == DownloadToken.user_id)
            .outerjoin(AccessGrant, AccessGrant.id == DownloadToken.grant_id)
            .where(
                DownloadToken.object_id == object_id,
                DownloadToken.organization_id == organization_id,
            )
            .order_by(DownloadToken.created_at.desc())
        )
        return [
            TokenListing(
                token=token,
                status=derive_token_status(token, now),
                expires_in=max(0, int((token.expires_at - now).total_seconds())),
                issued_to_name=name,
                granted_role=role,
            )
            for token, name, role in result.all()
        ]

    async def count_active_download_tokens(self, grant_id: UUID) -> int:
        result = await self._session.execute(
            select(func.count())
            .select_from(DownloadToken)
            .where(
                DownloadToken.grant_id == grant_id,
                DownloadToken.expires_at > datetime.now(UTC),
                DownloadToken.revoked_at.is_(None),
                or_(DownloadToken.one_time_use.is_(False), DownloadToken.used_at.is_(None)),
            )
        )
        return int(result.scalar_one())
