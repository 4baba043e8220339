"""
OIDC/JWT token verification for Keycloak integration.
Provides dependency injection for authenticated endpoints.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any, cast

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt  # type: ignore[import-untyped]

from mylab.core.config import get_settings
from mylab.core.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=True)

ORG_ADMIN_ROLES = frozenset({"admin", "owner"})


@dataclass(frozen=True)
class TokenPayload:
    """
    Validated token payload with essential claims.

    ``org_id`` and ``workspace_id`` come from custom claims mapped by the
    identity provider; both are UUID strings.
    """

    sub: str
    email: str | None
    preferred_username: str | None
    roles: list[str]
    org_id: str | None
    workspace_id: str | None
    exp: datetime
    iat: datetime
    raw_claims: dict[str, Any]

    @property
    def is_admin(self) -> bool:
        """Organization admin or owner."""
        return bool(ORG_ADMIN_ROLES.intersection(self.roles)) or self.is_platform_admin

    @property
    def is_platform_admin(self) -> bool:
        """Platform operator with cross-organization visibility."""
        return "platform_admin" in self.roles


class JWKSClient:
    """
    JWKS (JSON Web Key Set) client for fetching and caching public keys.

    Implements key rotation handling by refetching JWKS on unknown key ids.
    """

    def __init__(self) -> None:
        self._keys: dict[str, dict[str, Any]] = {}
        self._last_fetch: datetime | None = None
        self._cache_duration_seconds = 3600

    async def get_signing_key(self, kid: str) -> dict[str, Any]:
        """Get the signing key for a given key ID."""
        settings = get_settings()

        now = datetime.now(UTC)
        should_refresh = (
            self._last_fetch is None
            or (now - self._last_fetch).total_seconds() > self._cache_duration_seconds
            or kid not in self._keys
        )

        if should_refresh:
            await self._fetch_jwks(settings.keycloak_jwks_url)

        if kid not in self._keys:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token signing key not found",
            )

        return self._keys[kid]

    async def _fetch_jwks(self, jwks_url: str) -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(jwks_url, timeout=10.0)
                response.raise_for_status()
                jwks_data = cast(dict[str, Any], response.json())

            self._keys = {
                str(key_data["kid"]): key_data
                for key_data in jwks_data.get("keys", [])
                if isinstance(key_data, dict)
                and key_data.get("use") == "sig"
                and "kid" in key_data
            }
            self._last_fetch = datetime.now(UTC)
            logger.info("jwks_refreshed", key_count=len(self._keys))

        except httpx.HTTPError as e:
            logger.error("jwks_fetch_failed", error=str(e))
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to fetch signing keys from identity provider",
            )


_jwks_client = JWKSClient()


def extract_roles(payload: dict[str, Any], client_id: str) -> list[str]:
    """Collect realm, client and flat role claims into one deduplicated list."""
    roles: list[str] = []
    if "realm_access" in payload:
        roles.extend(payload["realm_access"].get("roles", []))
    if "resource_access" in payload:
        roles.extend(payload["resource_access"].get(client_id, {}).get("roles", []))
    if "roles" in payload:
        roles.extend(payload["roles"])
    return sorted(set(roles))


async def _decode_token(token: str) -> TokenPayload:
    """Decode and validate a JWT token against the configured issuers."""
    settings = get_settings()
    try:
        unverified_header = jwt.get_unverified_header(token)
        kid = unverified_header.get("kid")

        if not kid:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token missing key ID",
            )

        signing_key = await _jwks_client.get_signing_key(kid)

        payload = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            options={
                "verify_aud": False,  # Keycloak puts client ID in azp, not aud
                "verify_exp": True,
                "verify_iat": True,
                "verify_iss": False,
            },
        )

        token_issuer = payload.get("iss")
        if not token_issuer or token_issuer not in set(settings.keycloak_allowed_issuers_all):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token issuer",
            )

        return TokenPayload(
            sub=payload["sub"],
            email=payload.get("email"),
            preferred_username=payload.get("preferred_username"),
            roles=extract_roles(payload, settings.keycloak_client_id),
            org_id=payload.get("org_id"),
            workspace_id=payload.get("workspace_id"),
            exp=datetime.fromtimestamp(payload["exp"], tz=UTC),
            iat=datetime.fromtimestamp(payload["iat"], tz=UTC),
            raw_claims=payload,
        )

    except JWTError as e:
        logger.warning("token_verification_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


async def verify_token(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> TokenPayload:
    """Dependency that verifies JWT tokens and extracts claims."""
    return await _decode_token(credentials.credentials)


CurrentUser = Annotated[TokenPayload, Depends(verify_token)]


async def require_admin(user: CurrentUser) -> TokenPayload:
    """Dependency that requires organization admin (or owner) role."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Permission denied: Admin access required",
        )
    return user


Admin = Annotated[TokenPayload, Depends(require_admin)]
