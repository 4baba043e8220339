"""Access control schema

Revision ID: 0001_access_control
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_access_control"
down_revision = None
branch_labels = None
depends_on = None

OBJECT_TYPES = (
    "project",
    "sample",
    "derived_sample",
    "batch",
    "analysis",
    "document",
    "result",
)
GRANT_ROLES = ("viewer", "processor", "analyzer", "client", "owner")
ACCESS_MODES = ("platform", "offline")

OWNED_TABLES = (
    ("projects", "workspace_id"),
    ("samples", "workspace_id"),
    ("derived_samples", "owner_workspace_id"),
    ("batches", "workspace_id"),
    ("analyses", "workspace_id"),
    ("documents", "workspace_id"),
    ("analysis_results", "workspace_id"),
)


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("uuid_generate_v7()"),
        nullable=False,
    )


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.text("now()"),
        nullable=False,
    )


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto";')
    op.execute(
        """
CREATE OR REPLACE FUNCTION uuid_generate_v7()
RETURNS uuid AS $$
DECLARE
    unix_ts_ms bytea;
    uuid_bytes bytea;
BEGIN
    unix_ts_ms = substring(int8send(floor(extract(epoch from clock_timestamp()) * 1000)::bigint) from 3);
    uuid_bytes = unix_ts_ms || gen_random_bytes(10);

    -- Set version 7
    uuid_bytes = set_byte(uuid_bytes, 6, (get_byte(uuid_bytes, 6) & 15) | 112);
    -- Set variant (RFC 4122)
    uuid_bytes = set_byte(uuid_bytes, 8, (get_byte(uuid_bytes, 8) & 63) | 128);

    RETURN encode(uuid_bytes, 'hex')::uuid;
END;
$$ LANGUAGE plpgsql VOLATILE;
        """
    )

    sa.Enum(*OBJECT_TYPES, name="accessobjecttype").create(op.get_bind(), checkfirst=True)
    sa.Enum(*GRANT_ROLES, name="grantrole").create(op.get_bind(), checkfirst=True)
    sa.Enum(*ACCESS_MODES, name="accessmode").create(op.get_bind(), checkfirst=True)
    object_type_enum = postgresql.ENUM(*OBJECT_TYPES, name="accessobjecttype", create_type=False)

    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "is_platform_workspace",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organizations_workspace_id", "organizations", ["workspace_id"])

    op.create_table(
        "users",
        _id_column(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        _created_at_column(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    for table, owner_column in OWNED_TABLES:
        columns = [
            _id_column(),
            sa.Column(owner_column, postgresql.UUID(as_uuid=True), nullable=False),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        ]
        if table == "analyses":
            columns.append(sa.Column("execution_mode", sa.String(length=32), nullable=True))
        op.create_table(table, *columns, sa.PrimaryKeyConstraint("id"))
        op.create_index(f"ix_{table}_{owner_column}", table, [owner_column])

    op.create_table(
        "access_grants",
        _id_column(),
        sa.Column("object_type", object_type_enum, nullable=False),
        sa.Column("object_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("granted_to_org_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "granted_role",
            postgresql.ENUM(*GRANT_ROLES, name="grantrole", create_type=False),
            nullable=False,
        ),
        sa.Column("can_reshare", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "access_mode",
            postgresql.ENUM(*ACCESS_MODES, name="accessmode", create_type=False),
            nullable=False,
            server_default="platform",
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("granted_by", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_by_org_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
        sa.ForeignKeyConstraint(["granted_to_org_id"], ["organizations.id"]),
        sa.ForeignKeyConstraint(["created_by_org_id"], ["organizations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_access_grants_object", "access_grants", ["object_type", "object_id"])
    op.create_index("ix_access_grants_org", "access_grants", ["granted_to_org_id"])
    op.create_index("ix_access_grants_created_at", "access_grants", ["created_at"])

    op.create_table(
        "download_tokens",
        _id_column(),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("object_type", object_type_enum, nullable=False),
        sa.Column("object_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("grant_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("one_time_use", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index("ix_download_tokens_grant_id", "download_tokens", ["grant_id"])
    op.create_index(
        "ix_download_tokens_object", "download_tokens", ["object_id", "organization_id"]
    )
    op.create_index("ix_download_tokens_expires_at", "download_tokens", ["expires_at"])

    op.create_table(
        "audit_log",
        _id_column(),
        sa.Column("object_type", sa.String(length=50), nullable=False),
        sa.Column("object_id", sa.String(length=255), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("actor_org_id", sa.String(length=255), nullable=True),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_log_object", "audit_log", ["object_type", "object_id"])
    op.create_index("ix_audit_log_actor", "audit_log", ["actor_id", "action", "created_at"])
    op.create_index("ix_audit_log_actor_org", "audit_log", ["actor_org_id"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_log_created_at", table_name="audit_log")
    op.drop_index("ix_audit_log_actor_org", table_name="audit_log")
    op.drop_index("ix_audit_log_actor", table_name="audit_log")
    op.drop_index("ix_audit_log_object", table_name="audit_log")
    op.drop_table("audit_log")

    op.drop_index("ix_download_tokens_expires_at", table_name="download_tokens")
    op.drop_index("ix_download_tokens_object", table_name="download_tokens")
    op.drop_index("ix_download_tokens_grant_id", table_name="download_tokens")
    op.drop_table("download_tokens")

    op.drop_index("ix_access_grants_created_at", table_name="access_grants")
    op.drop_index("ix_access_grants_org", table_name="access_grants")
    op.drop_index("ix_access_grants_object", table_name="access_grants")
    op.drop_table("access_grants")

    for table, owner_column in reversed(OWNED_TABLES):
        op.drop_index(f"ix_{table}_{owner_column}", table_name=table)
        op.drop_table(table)

    op.drop_index("ix_users_organization_id", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_organizations_workspace_id", table_name="organizations")
    op.drop_table("organizations")

    sa.Enum(*ACCESS_MODES, name="accessmode").drop(op.get_bind(), checkfirst=True)
    sa.Enum(*GRANT_ROLES, name="grantrole").drop(op.get_bind(), checkfirst=True)
    sa.Enum(*OBJECT_TYPES, name="accessobjecttype").drop(op.get_bind(), checkfirst=True)
    op.execute("DROP FUNCTION IF EXISTS uuid_generate_v7();")
