"""Domain exceptions raised by the access-control services.

Routers never format these directly; the application registers exception
handlers that collapse denials into a generic 403 so the precise reason only
reaches the logs.
"""

from __future__ import annotations

from typing import Literal

TokenFailureReason = Literal["not_found", "org_mismatch", "revoked", "expired", "already_used"]


class AccessControlError(Exception):
    """Base class for access-control failures."""


class NotOwnerError(AccessControlError):
    """The acting workspace does not own the object for an owner-only operation."""

    def __init__(self, object_type: str, object_id: object) -> None:
        super().__init__(f"Not the owner of {object_type} {object_id}")
        self.object_type = object_type
        self.object_id = object_id


class InvalidObjectTypeError(AccessControlError, ValueError):
    """An object type outside the closed set reached the resolver."""

    def __init__(self, object_type: object) -> None:
        super().__init__(f"Invalid object type: {object_type!r}")
        self.object_type = object_type


class GrantNotFoundError(AccessControlError):
    def __init__(self, grant_id: object) -> None:
        super().__init__(f"Grant {grant_id} not found")
        self.grant_id = grant_id


class InvalidGrantError(AccessControlError):
    """Grant parameters rejected before any row is written."""


class TokenInvalidError(AccessControlError):
    """A download token failed validation; ``reason`` is for logs only."""

    def __init__(self, reason: TokenFailureReason) -> None:
        super().__init__(f"Download token invalid: {reason}")
        self.reason = reason


class InsufficientRoleError(AccessControlError):
    def __init__(self, role: str | None, required: str) -> None:
        super().__init__(f"Role {role!r} does not satisfy required role {required!r}")
        self.role = role
        self.required = required
