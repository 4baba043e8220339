"""
SQLAlchemy ORM models for the access-control layer.
All models use UUIDv7 for primary keys to ensure time-ordered identifiers.

The directory and owned-object tables belong to the surrounding CRUD layer;
they are mapped here read-only so ownership and grantee lookups can be joined
in the same transaction as grant and token writes.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
    }


# =============================================================================
# Enums
# =============================================================================


class ObjectType(str, PyEnum):
    """Kinds of protected objects that can be owned, granted and downloaded."""

    PROJECT = "project"
    SAMPLE = "sample"
    DERIVED_SAMPLE = "derived_sample"
    BATCH = "batch"
    ANALYSIS = "analysis"
    DOCUMENT = "document"
    RESULT = "result"


class GrantRole(str, PyEnum):
    """Grant roles, declared lowest to highest capability."""

    VIEWER = "viewer"
    PROCESSOR = "processor"
    ANALYZER = "analyzer"
    CLIENT = "client"
    OWNER = "owner"


class AccessMode(str, PyEnum):
    """How a grantee reaches the object."""

    PLATFORM = "platform"
    OFFLINE = "offline"


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


OBJECT_TYPE_ENUM = Enum(ObjectType, name="accessobjecttype", values_callable=_enum_values)


# =============================================================================
# Directory Models (owned by the organization directory)
# =============================================================================


class Organization(Base):
    """Organization known to the platform; external orgs have no workspace."""

    __tablename__ = "organizations"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    workspace_id: Mapped[UUID | None] = mapped_column(
        comment="Platform workspace owned by this organization (NULL for external orgs)",
    )
    is_platform_workspace: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_organizations_workspace_id", "workspace_id"),)


class User(Base):
    """Platform user, used to re-derive an actor's organization."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    organization_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"),
    )
    email: Mapped[str | None] = mapped_column(String(255))
    display_name: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_users_organization_id", "organization_id"),)


# =============================================================================
# Owned Object Models (owned by the entity CRUD layer)
# =============================================================================


class OwnedObjectMixin:
    """Common columns for workspace-owned, soft-deletable objects."""

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Project(OwnedObjectMixin, Base):
    __tablename__ = "projects"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


class Sample(OwnedObjectMixin, Base):
    __tablename__ = "samples"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


class DerivedSample(OwnedObjectMixin, Base):
    """Derived samples can be owned by a workspace other than the root sample's."""

    __tablename__ = "derived_samples"

    owner_workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


class Batch(OwnedObjectMixin, Base):
    __tablename__ = "batches"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


class Analysis(OwnedObjectMixin, Base):
    __tablename__ = "analyses"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)
    execution_mode: Mapped[str | None] = mapped_column(
        String(32),
        comment="platform or external; external runs stay owned by the uploading workspace",
    )


class Document(OwnedObjectMixin, Base):
    __tablename__ = "documents"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


class AnalysisResult(OwnedObjectMixin, Base):
    __tablename__ = "analysis_results"

    workspace_id: Mapped[UUID] = mapped_column(nullable=False, index=True)


# =============================================================================
# Access Grant Model
# =============================================================================


class AccessGrant(Base):
    """
    Authorizes one organization to access one object at one role.

    Rows are append-only in spirit: revocation stamps ``revoked_*`` once and a
    re-grant inserts a new row.
    """

    __tablename__ = "access_grants"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    object_type: Mapped[ObjectType] = mapped_column(
        OBJECT_TYPE_ENUM,
        nullable=False,
    )
    object_id: Mapped[UUID] = mapped_column(nullable=False)
    granted_to_org_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"),
        nullable=False,
    )
    granted_role: Mapped[GrantRole] = mapped_column(
        Enum(GrantRole, name="grantrole", values_callable=_enum_values),
        nullable=False,
    )
    can_reshare: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    access_mode: Mapped[AccessMode] = mapped_column(
        Enum(AccessMode, name="accessmode", values_callable=_enum_values),
        default=AccessMode.PLATFORM,
        nullable=False,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    granted_by: Mapped[UUID] = mapped_column(
        nullable=False,
        comment="User id of the granting actor",
    )
    created_by_org_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("organizations.id"),
        comment="Organization of the granting actor",
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_by: Mapped[UUID | None] = mapped_column()
    revocation_reason: Mapped[str | None] = mapped_column(Text)
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        comment="Soft delete by the CRUD layer; deleted grants are invisible to every check",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_access_grants_object", "object_type", "object_id"),
        Index("ix_access_grants_org", "granted_to_org_id"),
        Index("ix_access_grants_created_at", "created_at"),
    )


# =============================================================================
# Download Token Model
# =============================================================================


class DownloadToken(Base):
    """
    Short-lived download credential.

    Only the SHA-256 hash of the opaque token is stored.
    """

    __tablename__ = "download_tokens"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    object_type: Mapped[ObjectType] = mapped_column(
        OBJECT_TYPE_ENUM,
        nullable=False,
    )
    object_id: Mapped[UUID] = mapped_column(nullable=False)
    organization_id: Mapped[UUID] = mapped_column(nullable=False)
    user_id: Mapped[UUID] = mapped_column(nullable=False)
    grant_id: Mapped[UUID | None] = mapped_column(
        comment="Parent grant; NULL only for owner-issued tokens",
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    one_time_use: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_download_tokens_grant_id", "grant_id"),
        Index("ix_download_tokens_object", "object_id", "organization_id"),
        Index("ix_download_tokens_expires_at", "expires_at"),
    )


# =============================================================================
# Audit Log Model
# =============================================================================


class AuditEntry(Base):
    """
    Append-only audit record for grant, revoke, token and download events.

    Never updated or deleted by this service.
    """

    __tablename__ = "audit_log"

    id: Mapped[UUID] = mapped_column(
        primary_key=True,
        server_default=func.uuid_generate_v7(),
    )
    object_type: Mapped[str] = mapped_column(String(50), nullable=False)
    object_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="grant_access, revoke_access, token_issued, download, access_anomaly, ...",
    )
    actor_id: Mapped[str | None] = mapped_column(
        String(255),
        comment="Acting user id (NULL for system events)",
    )
    actor_org_id: Mapped[str | None] = mapped_column(String(255))
    details: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    ip_address: Mapped[str | None] = mapped_column(String(45))
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_audit_log_object", "object_type", "object_id"),
        Index("ix_audit_log_actor", "actor_id", "action", "created_at"),
        Index("ix_audit_log_actor_org", "actor_org_id"),
        Index("ix_audit_log_created_at", "created_at"),
    )
