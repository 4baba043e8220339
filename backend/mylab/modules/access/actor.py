"""Authenticated actor identity as seen by the access-control services."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from mylab.core.security.oidc import TokenPayload


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class ActorContext:
    """
    The acting user with the organization and workspace taken from the token.

    External organizations have no platform workspace; their organization id
    stands in as the workspace so offline grants can be matched against it.
    """

    user_id: UUID
    organization_id: UUID | None
    workspace_id: UUID | None
    is_admin: bool = False
    is_platform_admin: bool = False

    @property
    def effective_workspace_id(self) -> UUID | None:
        return self.workspace_id or self.organization_id

    @classmethod
    def from_token(cls, payload: TokenPayload) -> ActorContext:
        user_id = _parse_uuid(payload.sub)
        if user_id is None:
            raise ValueError(f"Token subject is not a UUID: {payload.sub!r}")
        return cls(
            user_id=user_id,
            organization_id=_parse_uuid(payload.org_id),
            workspace_id=_parse_uuid(payload.workspace_id),
            is_admin=payload.is_admin,
            is_platform_admin=payload.is_platform_admin,
        )
