"""Security modules for authentication and authorization."""

from mylab.core.security.oidc import (
    Admin,
    CurrentUser,
    TokenPayload,
    require_admin,
    verify_token,
)

__all__ = [
    "CurrentUser",
    "Admin",
    "TokenPayload",
    "verify_token",
    "require_admin",
]
