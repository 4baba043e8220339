"""
Access-control endpoints: download tokens, file delivery, grants, revocation,
the revocation audit trail and janitor controls.

Domain errors propagate to the exception handlers registered by the app
factory, which turn every denial into the same generic 403.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, Any, Literal
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import FileResponse

from mylab.core.audit import emit_audit_entry
from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.core.rate_limit import RateLimiter, enforce_rate_limit, get_rate_limiter, rate_limit
from mylab.core.security.actor_metadata import (
    actor_payload,
    load_organization_names,
    load_users_by_id,
)
from mylab.db.models import AccessGrant, AuditEntry, GrantRole, ObjectType
from mylab.db.session import DbSession
from mylab.modules.access.abuse import AbuseDetector
from mylab.modules.access.errors import TokenInvalidError
from mylab.modules.access.grants import AccessCheck, GrantStore, derive_grant_status
from mylab.modules.access.guard import AccessGuard, Actor, AdminActor, require_object_access
from mylab.modules.access.janitor import TokenJanitor
from mylab.modules.access.ownership import OwnershipResolver
from mylab.modules.access.revocation import RevocationEngine
from mylab.modules.access.schemas import (
    AccessCheckResponse,
    ActorSummary,
    CleanupErrorResponse,
    CleanupResponse,
    DownloadTokenResponse,
    GrantCreateRequest,
    GrantCreateResponse,
    GrantDetailResponse,
    GrantListResponse,
    GrantSummary,
    RevocationEntryResponse,
    RevocationListResponse,
    RevokeGrantRequest,
    RevokeGrantResponse,
    TokenListResponse,
    TokenStatsResponse,
    TokenSummaryResponse,
)
from mylab.modules.access.tokens import TokenService

logger = get_logger(__name__)
router = APIRouter()

DownloadableType = Literal["document", "analysis", "result"]

DEFAULT_REVOCATION_REASON = "User revoked access"


def _require_organization(actor_org_id: UUID | None) -> UUID:
    if actor_org_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Organization membership required",
        )
    return actor_org_id


def _grant_summary(grant: AccessGrant, org_name: str | None) -> GrantSummary:
    return GrantSummary(
        id=grant.id,
        object_type=grant.object_type,
        object_id=grant.object_id,
        granted_to_org_id=grant.granted_to_org_id,
        granted_to_org_name=org_name,
        granted_role=grant.granted_role,
        can_reshare=grant.can_reshare,
        access_mode=grant.access_mode,
        expires_at=grant.expires_at,
        granted_by=grant.granted_by,
        created_at=grant.created_at,
        revoked_at=grant.revoked_at,
        revocation_reason=grant.revocation_reason,
        status=derive_grant_status(grant),
    )


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _revocation_entry(entry: AuditEntry, users: dict[UUID, Any]) -> RevocationEntryResponse:
    details = entry.details or {}
    return RevocationEntryResponse(
        id=entry.id,
        object_type=entry.object_type,
        object_id=entry.object_id,
        grant_id=details.get("grant_id"),
        granted_to_org_id=details.get("granted_to_org_id"),
        granted_role=details.get("granted_role"),
        revocation_reason=details.get("revocation_reason"),
        revoked_at=entry.created_at,
        revoked_by=ActorSummary(**actor_payload(_parse_uuid(entry.actor_id), users)),
        revoked_token_ids=details.get("revoked_token_ids", []),
    )


# ---------------------------------------------------------------------------
# Download tokens and file delivery
# ---------------------------------------------------------------------------


@router.get(
    "/documents/{object_id}/download",
    response_model=DownloadTokenResponse,
    dependencies=[Depends(rate_limit("download"))],
)
async def issue_download_token(
    object_id: UUID,
    request: Request,
    db: DbSession,
    actor: Actor,
    object_type: Annotated[DownloadableType, Query(alias="type")] = "document",
    ttl_minutes: Annotated[int | None, Query(ge=1)] = None,
) -> DownloadTokenResponse:
    """Issue a one-time download token to an owner or active grantee."""
    organization_id = _require_organization(actor.organization_id)
    ownership = OwnershipResolver(db)
    check = await AccessGuard(GrantStore(db, ownership)).authorize(
        actor, object_type, object_id, GrantRole.VIEWER
    )

    issued = await TokenService(db, ownership).generate_download_token(
        object_type=object_type,
        object_id=object_id,
        organization_id=organization_id,
        user_id=actor.user_id,
        grant_id=check.grant_id,
        ttl_minutes=ttl_minutes,
        one_time_use=True,
        workspace_id=actor.effective_workspace_id,
        request=request,
    )

    settings = get_settings()
    query = urlencode({"token": issued.token, "org": str(organization_id)})
    return DownloadTokenResponse(
        token=issued.token,
        expires_in=issued.expires_in(),
        expires_at=issued.expires_at,
        download_url=(
            f"{settings.api_v1_prefix}/access/documents/{object_id}/download-file?{query}"
        ),
        one_time_use=issued.one_time_use,
    )


@router.get("/documents/{object_id}/download-file", response_model=None)
async def download_file(
    object_id: UUID,
    request: Request,
    db: DbSession,
    limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    token: str | None = Query(default=None),
    org: str | None = Query(default=None),
) -> FileResponse:
    """
    Redeem a download token and stream the file.

    The token itself is the credential, so no bearer token is required.
    """
    organization_id = _parse_uuid(org)
    if not token or organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing token or organization",
        )

    tokens = TokenService(db)
    validation = await tokens.validate_download_token(token, organization_id)
    if not validation.valid:
        raise TokenInvalidError(validation.error or "not_found")
    if validation.object_id != object_id or validation.object_type is None:
        logger.warning(
            "download_token_object_mismatch",
            token_id=str(validation.token_id),
            object_id=str(object_id),
        )
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")

    settings = get_settings()
    user_id = validation.user_id
    if user_id is None:
        raise TokenInvalidError("not_found")
    headers: dict[str, str] = {}
    if settings.rate_limit_enabled:
        headers.update(await enforce_rate_limit(limiter, "download", str(user_id), request))

    file_path = Path(settings.files_dir) / validation.object_type.value / str(object_id)
    if not file_path.is_file():
        logger.warning("download_file_missing", object_id=str(object_id))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    file_size = file_path.stat().st_size

    abuse = AbuseDetector(db)
    quota = await abuse.check_download_quota(user_id, file_size)
    if not quota.allowed:
        retry_after = max(1, int((quota.reset_at - datetime.now(UTC)).total_seconds()))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "download_quota_exceeded",
                "message": "Daily download quota exceeded",
                "retryAfter": retry_after,
            },
            headers={"Retry-After": str(retry_after)},
        )

    # Consumed before streaming: a failed transfer needs a fresh token.
    consumed = await tokens.mark_token_as_used(token)
    if not consumed and validation.one_time_use:
        raise TokenInvalidError("already_used")

    await emit_audit_entry(
        db_session=db,
        action="download",
        object_type=validation.object_type.value,
        object_id=object_id,
        actor_id=user_id,
        actor_org_id=organization_id,
        request=request,
        details={
            "token_id": str(validation.token_id),
            "grant_id": str(validation.grant_id) if validation.grant_id else None,
            "file_size": file_size,
            "result_count": 1,
        },
    )

    anomalies = await abuse.assess_access(
        user_id=user_id,
        organization_id=organization_id,
        object_type=validation.object_type.value,
        object_id=object_id,
        request=request,
    )
    if anomalies:
        headers["X-Access-Anomaly"] = ",".join(f"{a.type}:{a.severity}" for a in anomalies)

    return FileResponse(
        file_path,
        media_type="application/octet-stream",
        filename=str(object_id),
        headers=headers,
    )


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


@router.post(
    "/grants",
    response_model=GrantCreateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("api"))],
)
async def create_grant(
    body: GrantCreateRequest,
    request: Request,
    db: DbSession,
    actor: Actor,
) -> GrantCreateResponse:
    """Grant another organization access to an object the caller owns."""
    grant_id = await GrantStore(db).grant_access(
        object_type=body.object_type,
        object_id=body.object_id,
        to_org_id=body.granted_to_org_id,
        role=body.granted_role,
        can_reshare=body.can_reshare,
        granted_by_actor_id=actor.user_id,
        expires_at=body.expires_at,
        access_mode=body.access_mode,
        request=request,
    )
    return GrantCreateResponse(grant_id=grant_id)


@router.post(
    "/grants/{grant_id}/revoke",
    response_model=RevokeGrantResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def revoke_grant(
    grant_id: UUID,
    request: Request,
    db: DbSession,
    actor: Actor,
    body: RevokeGrantRequest | None = None,
) -> RevokeGrantResponse:
    """Revoke a grant and every live token issued under it."""
    reason = (body.reason if body else None) or DEFAULT_REVOCATION_REASON
    _grant, outcome = await RevocationEngine(db).revoke_grant(
        grant_id, actor, reason, request=request
    )
    return RevokeGrantResponse(
        message=(
            "Access grant revoked successfully"
            if not outcome.is_noop
            else "Access grant was already inactive"
        ),
        revoked_at=outcome.revoked_at,
        revoked_by=actor.user_id,
        revoked_grant_ids=outcome.revoked_grant_ids,
        revoked_token_count=len(outcome.revoked_token_ids),
    )


@router.get(
    "/grants/{grant_id}",
    response_model=GrantDetailResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def get_grant(
    grant_id: UUID,
    db: DbSession,
    actor: Actor,
) -> GrantDetailResponse:
    """Grant detail for the grantee or granting organization."""
    visible_to = None if actor.is_platform_admin else _require_organization(actor.organization_id)
    grant = await GrantStore(db).get_grant(grant_id, visible_to_org_id=visible_to)

    users = await load_users_by_id(db, [grant.granted_by, grant.revoked_by])
    org_names = await load_organization_names(db, [grant.granted_to_org_id])
    active_tokens = await TokenService(db).count_active_download_tokens(grant.id)
    summary = _grant_summary(grant, org_names.get(grant.granted_to_org_id))

    return GrantDetailResponse(
        **summary.model_dump(),
        granted_by_actor=ActorSummary(**actor_payload(grant.granted_by, users)),
        revoked_by=grant.revoked_by,
        revoked_by_actor=(
            ActorSummary(**actor_payload(grant.revoked_by, users)) if grant.revoked_by else None
        ),
        is_revoked=summary.status == "revoked",
        is_expired=summary.status == "expired",
        active_token_count=active_tokens,
    )


@router.get(
    "/objects/{object_type}/{object_id}/grants",
    response_model=GrantListResponse,
    dependencies=[Depends(rate_limit("query"))],
)
async def list_object_grants(
    object_type: ObjectType,
    object_id: UUID,
    db: DbSession,
    actor: Actor,
) -> GrantListResponse:
    """Owner-only list of every grant on an object."""
    listings = await GrantStore(db).list_access_grants(
        object_type, object_id, actor.effective_workspace_id
    )
    grants = [_grant_summary(item.grant, item.grantee_org_name) for item in listings]
    return GrantListResponse(grants=grants, count=len(grants))


@router.get(
    "/objects/{object_type}/{object_id}/access",
    response_model=AccessCheckResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def check_object_access(
    object_type: ObjectType,
    object_id: UUID,
    db: DbSession,
    actor: Actor,
) -> AccessCheckResponse:
    """The caller's own access to an object."""
    check = await GrantStore(db).check_access(object_type, object_id, actor.effective_workspace_id)
    return AccessCheckResponse(
        is_owner=check.is_owner,
        has_access=check.has_access,
        role=check.role,
        can_reshare=check.can_reshare,
        grant_id=check.grant_id,
    )


@router.get(
    "/objects/{object_type}/{object_id}/revocations",
    response_model=GrantListResponse,
    dependencies=[Depends(rate_limit("query"))],
)
async def list_object_revocations(
    object_type: ObjectType,
    object_id: UUID,
    db: DbSession,
    _access: Annotated[AccessCheck, Depends(require_object_access(GrantRole.OWNER))],
) -> GrantListResponse:
    """Owner-only revocation history of one object."""
    grants = await RevocationEngine(db).get_revocation_history(object_type, object_id)
    org_names = await load_organization_names(db, [g.granted_to_org_id for g in grants])
    items = [_grant_summary(g, org_names.get(g.granted_to_org_id)) for g in grants]
    return GrantListResponse(grants=items, count=len(items))


# ---------------------------------------------------------------------------
# Admin: audit trail, tokens, janitor
# ---------------------------------------------------------------------------


@router.get(
    "/audit",
    response_model=RevocationListResponse,
    dependencies=[Depends(rate_limit("query"))],
)
async def list_revocation_audit(
    db: DbSession,
    actor: AdminActor,
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> RevocationListResponse:
    """Revocation history for the admin's organization."""
    organization_id = _require_organization(actor.organization_id)
    page = await RevocationEngine(db).list_revocations(
        organization_id, start=start_date, end=end_date, limit=limit, offset=offset
    )
    users = await load_users_by_id(db, [_parse_uuid(e.actor_id) for e in page.entries])
    return RevocationListResponse(
        total=page.total,
        limit=limit,
        offset=offset,
        revocations=[_revocation_entry(entry, users) for entry in page.entries],
    )


@router.get(
    "/tokens/{object_id}",
    response_model=TokenListResponse,
    dependencies=[Depends(rate_limit("query"))],
)
async def list_object_tokens(
    object_id: UUID,
    db: DbSession,
    actor: AdminActor,
) -> TokenListResponse:
    """Download tokens the admin's organization holds for one object."""
    organization_id = _require_organization(actor.organization_id)
    listings = await TokenService(db).list_tokens_for_object(object_id, organization_id)
    return TokenListResponse(
        object_id=object_id,
        tokens=[
            TokenSummaryResponse(
                id=item.token.id,
                object_type=item.token.object_type,
                object_id=item.token.object_id,
                grant_id=item.token.grant_id,
                created_at=item.token.created_at,
                expires_at=item.token.expires_at,
                one_time_use=item.token.one_time_use,
                used_at=item.token.used_at,
                revoked_at=item.token.revoked_at,
                issued_to_name=item.issued_to_name,
                granted_role=item.granted_role,
                status=item.status,
                expires_in=item.expires_in,
            )
            for item in listings
        ],
    )


@router.post(
    "/admin/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def trigger_cleanup(db: DbSession, actor: AdminActor) -> CleanupResponse:
    """Run the token janitor now."""
    logger.info("token_cleanup_manual_trigger", user_id=str(actor.user_id))
    report = await TokenJanitor(db).trigger_manual_cleanup()
    return CleanupResponse(
        success=not report.errors,
        message=(
            "Token cleanup completed successfully"
            if not report.errors
            else f"Token cleanup completed with {len(report.errors)} errors"
        ),
        scanned=report.scanned,
        deleted=report.deleted,
        errors=[CleanupErrorResponse(token_id=e.token_id, error=e.error) for e in report.errors],
        duration_ms=report.duration_ms,
        stats=TokenStatsResponse(**report.stats.to_dict()) if report.stats else None,
    )


@router.get(
    "/admin/stats",
    response_model=TokenStatsResponse,
    dependencies=[Depends(rate_limit("api"))],
)
async def token_stats(db: DbSession, _actor: AdminActor) -> TokenStatsResponse:
    """Token counts by status."""
    stats = await TokenJanitor(db).get_token_stats()
    return TokenStatsResponse(**stats.to_dict())
