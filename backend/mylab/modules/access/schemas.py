"""Pydantic schemas for the access-control endpoints."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from mylab.db.models import AccessMode, GrantRole, ObjectType

GrantStatusValue = Literal["active", "revoked", "expired"]
TokenStatusValue = Literal["revoked", "used", "expired", "active"]


class ActorSummary(BaseModel):
    """Actor identity summary for grant and revocation responses."""

    id: str | None = None
    display_name: str | None = None
    email_masked: str | None = None


# ---------------------------------------------------------------------------
# Download tokens
# ---------------------------------------------------------------------------


class DownloadTokenResponse(BaseModel):
    success: bool = True
    token: str
    expires_in: int = Field(alias="expiresIn", description="Seconds until the token expires")
    expires_at: datetime = Field(alias="expiresAt")
    download_url: str = Field(alias="downloadUrl")
    one_time_use: bool = Field(alias="oneTimeUse")

    model_config = ConfigDict(populate_by_name=True)


class TokenSummaryResponse(BaseModel):
    """Token metadata; the hash and plaintext are never exposed."""

    id: UUID
    object_type: ObjectType
    object_id: UUID
    grant_id: UUID | None = None
    created_at: datetime
    expires_at: datetime
    one_time_use: bool
    used_at: datetime | None = None
    revoked_at: datetime | None = None
    issued_to_name: str | None = None
    granted_role: GrantRole | None = None
    status: TokenStatusValue
    expires_in: int = Field(alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)


class TokenListResponse(BaseModel):
    object_id: UUID = Field(alias="objectId")
    tokens: list[TokenSummaryResponse]

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


class GrantCreateRequest(BaseModel):
    object_type: ObjectType
    object_id: UUID
    granted_to_org_id: UUID
    granted_role: GrantRole
    can_reshare: bool = False
    access_mode: AccessMode = AccessMode.PLATFORM
    expires_at: datetime | None = None


class GrantCreateResponse(BaseModel):
    grant_id: UUID


class GrantSummary(BaseModel):
    id: UUID
    object_type: ObjectType
    object_id: UUID
    granted_to_org_id: UUID
    granted_to_org_name: str | None = None
    granted_role: GrantRole
    can_reshare: bool
    access_mode: AccessMode
    expires_at: datetime | None = None
    granted_by: UUID
    created_at: datetime
    revoked_at: datetime | None = None
    revocation_reason: str | None = None
    status: GrantStatusValue


class GrantListResponse(BaseModel):
    grants: list[GrantSummary]
    count: int


class GrantDetailResponse(GrantSummary):
    granted_by_actor: ActorSummary
    revoked_by: UUID | None = None
    revoked_by_actor: ActorSummary | None = None
    is_revoked: bool
    is_expired: bool
    active_token_count: int


class AccessCheckResponse(BaseModel):
    is_owner: bool
    has_access: bool
    role: GrantRole | None = None
    can_reshare: bool | None = None
    grant_id: UUID | None = None


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class RevokeGrantRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class RevokeGrantResponse(BaseModel):
    success: bool = True
    message: str
    revoked_at: datetime = Field(alias="revokedAt")
    revoked_by: UUID = Field(alias="revokedBy")
    revoked_grant_ids: list[UUID] = Field(alias="revokedGrantIds")
    revoked_token_count: int = Field(alias="revokedTokenCount")

    model_config = ConfigDict(populate_by_name=True)


class RevocationEntryResponse(BaseModel):
    """One ``revoke_access`` audit entry."""

    id: UUID
    object_type: str
    object_id: str | None = None
    grant_id: str | None = None
    granted_to_org_id: str | None = None
    granted_role: str | None = None
    revocation_reason: str | None = None
    revoked_at: datetime
    revoked_by: ActorSummary
    revoked_token_ids: list[str] = Field(default_factory=list)


class RevocationListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    revocations: list[RevocationEntryResponse]


# ---------------------------------------------------------------------------
# Janitor
# ---------------------------------------------------------------------------


class TokenStatsResponse(BaseModel):
    total: int
    active: int
    used: int
    expired: int
    revoked: int
    orphaned: int


class CleanupErrorResponse(BaseModel):
    token_id: UUID
    error: str


class CleanupResponse(BaseModel):
    success: bool
    message: str
    scanned: int
    deleted: int
    errors: list[CleanupErrorResponse]
    duration_ms: int
    stats: TokenStatsResponse | None = None
