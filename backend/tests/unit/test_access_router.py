"""
Unit tests for access router handlers.

Handlers are called directly with the services patched out; the
exception-handler mapping is covered through the ASGI app at the end.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse
from uuid import UUID, uuid4

import pytest
from fastapi import FastAPI, HTTPException
from httpx import ASGITransport, AsyncClient

from mylab.db.models import AuditEntry, GrantRole, ObjectType
from mylab.modules.access.abuse import Anomaly, QuotaDecision
from mylab.modules.access.errors import (
    GrantNotFoundError,
    InsufficientRoleError,
    TokenInvalidError,
)
from mylab.modules.access.grants import AccessCheck, GrantListing
from mylab.modules.access.janitor import CleanupFailure, CleanupReport, TokenStats
from mylab.modules.access.revocation import (
    RevocationPage,
    RevocationResult,
    RevokedGrant,
)
from mylab.modules.access.router import (
    DEFAULT_REVOCATION_REASON,
    download_file,
    get_grant,
    issue_download_token,
    list_object_grants,
    list_object_tokens,
    list_revocation_audit,
    revoke_grant,
    token_stats,
    trigger_cleanup,
)
from mylab.modules.access.schemas import RevokeGrantRequest
from mylab.modules.access.tokens import IssuedDownloadToken, TokenListing, TokenValidation
from tests.factories import make_actor, make_grant, make_token, make_token_payload

ROUTER = "mylab.modules.access.router"


def _issued(object_id: UUID, expires_in: int = 900) -> IssuedDownloadToken:
    return IssuedDownloadToken(
        token="a" * 64,
        token_id=uuid4(),
        object_type=ObjectType.DOCUMENT,
        object_id=object_id,
        grant_id=None,
        expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        one_time_use=True,
    )


def _quota(allowed: bool = True) -> QuotaDecision:
    return QuotaDecision(
        allowed=allowed,
        quota_bytes=1000,
        used_bytes=0 if allowed else 1000,
        remaining_bytes=1000 if allowed else 0,
        reset_at=datetime.now(UTC) + timedelta(hours=2),
    )


class TestIssueDownloadToken:
    @pytest.mark.asyncio
    async def test_returns_token_and_download_url(self) -> None:
        actor = make_actor(organization_id=uuid4(), workspace_id=uuid4())
        object_id = uuid4()
        generate = AsyncMock(return_value=_issued(object_id))

        with (
            patch(
                f"{ROUTER}.AccessGuard.authorize",
                new=AsyncMock(return_value=AccessCheck.owner()),
            ),
            patch(f"{ROUTER}.TokenService.generate_download_token", new=generate),
        ):
            response = await issue_download_token(
                object_id, MagicMock(), AsyncMock(), actor, "document", None
            )

        assert response.token == "a" * 64
        assert response.one_time_use is True
        assert 0 < response.expires_in <= 900
        url = urlparse(response.download_url)
        assert url.path == f"/api/v1/access/documents/{object_id}/download-file"
        assert parse_qs(url.query) == {
            "token": ["a" * 64],
            "org": [str(actor.organization_id)],
        }
        kwargs = generate.call_args.kwargs
        assert kwargs["one_time_use"] is True
        assert kwargs["workspace_id"] == actor.workspace_id
        assert kwargs["grant_id"] is None

    @pytest.mark.asyncio
    async def test_grantee_token_is_bound_to_the_grant(self) -> None:
        actor = make_actor(organization_id=uuid4())
        grant_id = uuid4()
        check = AccessCheck(
            is_owner=False, has_access=True, role=GrantRole.VIEWER, grant_id=grant_id
        )
        generate = AsyncMock(return_value=_issued(uuid4()))

        with (
            patch(f"{ROUTER}.AccessGuard.authorize", new=AsyncMock(return_value=check)),
            patch(f"{ROUTER}.TokenService.generate_download_token", new=generate),
        ):
            await issue_download_token(uuid4(), MagicMock(), AsyncMock(), actor, "result", 5)

        assert generate.call_args.kwargs["grant_id"] == grant_id
        assert generate.call_args.kwargs["ttl_minutes"] == 5
        assert generate.call_args.kwargs["object_type"] == "result"

    @pytest.mark.asyncio
    async def test_actor_without_organization_is_forbidden(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await issue_download_token(
                uuid4(), MagicMock(), AsyncMock(), make_actor(), "document", None
            )

        assert exc_info.value.status_code == 403


class TestDownloadFile:
    @pytest.fixture
    def files_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        monkeypatch.setenv("FILES_DIR", str(tmp_path))
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        from mylab.core.config import get_settings

        get_settings.cache_clear()
        return tmp_path

    def _validation(self, object_id: UUID, **overrides: object) -> TokenValidation:
        values = {
            "valid": True,
            "object_type": ObjectType.DOCUMENT,
            "object_id": object_id,
            "token_id": uuid4(),
            "user_id": uuid4(),
            "grant_id": uuid4(),
            "one_time_use": True,
        }
        values.update(overrides)
        return TokenValidation(**values)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_missing_token_is_bad_request(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await download_file(uuid4(), MagicMock(), AsyncMock(), MagicMock(), None, None)

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_org_is_bad_request(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await download_file(uuid4(), MagicMock(), AsyncMock(), MagicMock(), "t", "acme")

        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_token_is_raised_with_its_reason(self) -> None:
        with patch(
            f"{ROUTER}.TokenService.validate_download_token",
            new=AsyncMock(return_value=TokenValidation.failure("expired")),
        ):
            with pytest.raises(TokenInvalidError) as exc_info:
                await download_file(
                    uuid4(), MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
                )

        assert exc_info.value.reason == "expired"

    @pytest.mark.asyncio
    async def test_token_for_another_object_is_forbidden(self) -> None:
        with patch(
            f"{ROUTER}.TokenService.validate_download_token",
            new=AsyncMock(return_value=self._validation(uuid4())),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await download_file(
                    uuid4(), MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
                )

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_streams_file_consumes_token_and_audits(self, files_dir: Path) -> None:
        object_id = uuid4()
        (files_dir / "document").mkdir()
        (files_dir / "document" / str(object_id)).write_bytes(b"x" * 128)
        validation = self._validation(object_id)
        mark_used = AsyncMock(return_value=True)
        audit = AsyncMock()

        with (
            patch(
                f"{ROUTER}.TokenService.validate_download_token",
                new=AsyncMock(return_value=validation),
            ),
            patch(f"{ROUTER}.TokenService.mark_token_as_used", new=mark_used),
            patch(
                f"{ROUTER}.AbuseDetector.check_download_quota",
                new=AsyncMock(return_value=_quota()),
            ),
            patch(f"{ROUTER}.AbuseDetector.assess_access", new=AsyncMock(return_value=[])),
            patch(f"{ROUTER}.emit_audit_entry", new=audit),
        ):
            response = await download_file(
                object_id, MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
            )

        assert Path(response.path) == files_dir / "document" / str(object_id)
        assert response.media_type == "application/octet-stream"
        assert "x-access-anomaly" not in response.headers
        mark_used.assert_awaited_once_with("t")
        details = audit.call_args.kwargs["details"]
        assert audit.call_args.kwargs["action"] == "download"
        assert details["file_size"] == 128
        assert details["token_id"] == str(validation.token_id)

    @pytest.mark.asyncio
    async def test_anomalies_are_flagged_in_a_header(self, files_dir: Path) -> None:
        object_id = uuid4()
        (files_dir / "document").mkdir()
        (files_dir / "document" / str(object_id)).write_bytes(b"data")
        anomaly = Anomaly(type="rapid_requests", severity="medium", description="fast")

        with (
            patch(
                f"{ROUTER}.TokenService.validate_download_token",
                new=AsyncMock(return_value=self._validation(object_id)),
            ),
            patch(f"{ROUTER}.TokenService.mark_token_as_used", new=AsyncMock(return_value=True)),
            patch(
                f"{ROUTER}.AbuseDetector.check_download_quota",
                new=AsyncMock(return_value=_quota()),
            ),
            patch(
                f"{ROUTER}.AbuseDetector.assess_access", new=AsyncMock(return_value=[anomaly])
            ),
            patch(f"{ROUTER}.emit_audit_entry", new=AsyncMock()),
        ):
            response = await download_file(
                object_id, MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
            )

        assert response.headers["x-access-anomaly"] == "rapid_requests:medium"

    @pytest.mark.asyncio
    async def test_missing_file_is_not_found(self, files_dir: Path) -> None:
        object_id = uuid4()
        with patch(
            f"{ROUTER}.TokenService.validate_download_token",
            new=AsyncMock(return_value=self._validation(object_id)),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await download_file(
                    object_id, MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
                )

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_quota_exhaustion_is_429_and_token_survives(self, files_dir: Path) -> None:
        object_id = uuid4()
        (files_dir / "document").mkdir()
        (files_dir / "document" / str(object_id)).write_bytes(b"data")
        mark_used = AsyncMock(return_value=True)

        with (
            patch(
                f"{ROUTER}.TokenService.validate_download_token",
                new=AsyncMock(return_value=self._validation(object_id)),
            ),
            patch(f"{ROUTER}.TokenService.mark_token_as_used", new=mark_used),
            patch(
                f"{ROUTER}.AbuseDetector.check_download_quota",
                new=AsyncMock(return_value=_quota(allowed=False)),
            ),
        ):
            with pytest.raises(HTTPException) as exc_info:
                await download_file(
                    object_id, MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
                )

        exc = exc_info.value
        assert exc.status_code == 429
        assert exc.detail["error"] == "download_quota_exceeded"
        assert int(exc.headers["Retry-After"]) > 0
        mark_used.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_consumption_race_is_already_used(self, files_dir: Path) -> None:
        object_id = uuid4()
        (files_dir / "document").mkdir()
        (files_dir / "document" / str(object_id)).write_bytes(b"data")

        with (
            patch(
                f"{ROUTER}.TokenService.validate_download_token",
                new=AsyncMock(return_value=self._validation(object_id)),
            ),
            patch(f"{ROUTER}.TokenService.mark_token_as_used", new=AsyncMock(return_value=False)),
            patch(
                f"{ROUTER}.AbuseDetector.check_download_quota",
                new=AsyncMock(return_value=_quota()),
            ),
        ):
            with pytest.raises(TokenInvalidError) as exc_info:
                await download_file(
                    object_id, MagicMock(), AsyncMock(), MagicMock(), "t", str(uuid4())
                )

        assert exc_info.value.reason == "already_used"


class TestGrantRoutes:
    @pytest.mark.asyncio
    async def test_revoke_uses_default_reason(self) -> None:
        actor = make_actor(organization_id=uuid4())
        grant = make_grant()
        outcome = RevocationResult(
            revoked_at=datetime.now(UTC),
            grants=[
                RevokedGrant(
                    grant_id=grant.id,
                    granted_role=GrantRole.VIEWER,
                    original_expires_at=None,
                    token_ids=[uuid4(), uuid4()],
                )
            ],
        )
        revoke = AsyncMock(return_value=(grant, outcome))

        with patch(f"{ROUTER}.RevocationEngine.revoke_grant", new=revoke):
            response = await revoke_grant(grant.id, MagicMock(), AsyncMock(), actor, None)

        assert revoke.call_args[0][2] == DEFAULT_REVOCATION_REASON
        assert response.message == "Access grant revoked successfully"
        assert response.revoked_token_count == 2
        assert response.revoked_grant_ids == [grant.id]
        assert response.revoked_by == actor.user_id

    @pytest.mark.asyncio
    async def test_revoking_inactive_grant_reports_noop(self) -> None:
        grant = make_grant()
        outcome = RevocationResult(revoked_at=datetime.now(UTC))
        revoke = AsyncMock(return_value=(grant, outcome))

        with patch(f"{ROUTER}.RevocationEngine.revoke_grant", new=revoke):
            response = await revoke_grant(
                grant.id,
                MagicMock(),
                AsyncMock(),
                make_actor(),
                RevokeGrantRequest(reason="Study closed"),
            )

        assert revoke.call_args[0][2] == "Study closed"
        assert response.message == "Access grant was already inactive"
        assert response.revoked_token_count == 0

    @pytest.mark.asyncio
    async def test_grant_detail_includes_active_token_count(self) -> None:
        org = uuid4()
        grant = make_grant(granted_to_org_id=org)
        get = AsyncMock(return_value=grant)

        with (
            patch(f"{ROUTER}.GrantStore.get_grant", new=get),
            patch(f"{ROUTER}.load_users_by_id", new=AsyncMock(return_value={})),
            patch(
                f"{ROUTER}.load_organization_names",
                new=AsyncMock(return_value={org: "Partner Lab"}),
            ),
            patch(
                f"{ROUTER}.TokenService.count_active_download_tokens",
                new=AsyncMock(return_value=3),
            ),
        ):
            response = await get_grant(grant.id, AsyncMock(), make_actor(organization_id=org))

        assert response.active_token_count == 3
        assert response.granted_to_org_name == "Partner Lab"
        assert response.status == "active"
        assert response.is_revoked is False
        assert response.granted_by_actor.id == str(grant.granted_by)
        assert get.call_args.kwargs["visible_to_org_id"] == org

    @pytest.mark.asyncio
    async def test_platform_admin_sees_any_grant(self) -> None:
        grant = make_grant()
        get = AsyncMock(return_value=grant)

        with (
            patch(f"{ROUTER}.GrantStore.get_grant", new=get),
            patch(f"{ROUTER}.load_users_by_id", new=AsyncMock(return_value={})),
            patch(f"{ROUTER}.load_organization_names", new=AsyncMock(return_value={})),
            patch(
                f"{ROUTER}.TokenService.count_active_download_tokens",
                new=AsyncMock(return_value=0),
            ),
        ):
            admin = make_actor(is_admin=True, is_platform_admin=True)
            await get_grant(grant.id, AsyncMock(), admin)

        assert get.call_args.kwargs["visible_to_org_id"] is None

    @pytest.mark.asyncio
    async def test_object_grants_listing(self) -> None:
        grants = [make_grant(), make_grant(revoked_at=datetime.now(UTC))]
        listings = [GrantListing(grant=g, grantee_org_name=None) for g in grants]

        with patch(
            f"{ROUTER}.GrantStore.list_access_grants", new=AsyncMock(return_value=listings)
        ):
            response = await list_object_grants(
                ObjectType.SAMPLE, uuid4(), AsyncMock(), make_actor(workspace_id=uuid4())
            )

        assert response.count == 2
        assert [g.status for g in response.grants] == ["active", "revoked"]


class TestCleanupRoute:
    @pytest.mark.asyncio
    async def test_reports_errors(self) -> None:
        report = CleanupReport(
            scanned=3,
            deleted=2,
            errors=[CleanupFailure(token_id=uuid4(), error="locked")],
            duration_ms=12,
            stats=TokenStats(total=1, active=1, used=0, expired=0, revoked=0, orphaned=0),
        )

        with patch(
            f"{ROUTER}.TokenJanitor.trigger_manual_cleanup", new=AsyncMock(return_value=report)
        ):
            response = await trigger_cleanup(AsyncMock(), make_actor(is_admin=True))

        assert response.success is False
        assert response.message == "Token cleanup completed with 1 errors"
        assert response.deleted == 2
        assert response.stats is not None
        assert response.stats.active == 1


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_audit_lists_revocations_with_reason(self) -> None:
        actor_id, org_id, token_id = uuid4(), uuid4(), uuid4()
        entry = AuditEntry(
            action="revoke_access",
            object_type="document",
            object_id=str(uuid4()),
            actor_id=str(actor_id),
            details={
                "grant_id": str(uuid4()),
                "granted_to_org_id": str(uuid4()),
                "granted_role": "viewer",
                "revocation_reason": "Collaboration ended",
                "revoked_token_ids": [str(token_id)],
            },
        )
        entry.id = uuid4()
        entry.created_at = datetime.now(UTC)
        page = RevocationPage(entries=[entry], total=1)

        with (
            patch(
                f"{ROUTER}.RevocationEngine.list_revocations", new=AsyncMock(return_value=page)
            ) as mock_list,
            patch(f"{ROUTER}.load_users_by_id", new=AsyncMock(return_value={})) as mock_users,
        ):
            response = await list_revocation_audit(
                AsyncMock(), make_actor(organization_id=org_id, is_admin=True), limit=10
            )

        mock_list.assert_awaited_once_with(org_id, start=None, end=None, limit=10, offset=0)
        assert mock_users.await_args[0][1] == [actor_id]
        assert response.total == 1
        assert len(response.revocations) == 1
        revocation = response.revocations[0]
        assert revocation.revocation_reason == "Collaboration ended"
        assert revocation.revoked_by.id == str(actor_id)
        assert revocation.revoked_token_ids == [str(token_id)]

    @pytest.mark.asyncio
    async def test_audit_requires_organization(self) -> None:
        with pytest.raises(HTTPException) as exc:
            await list_revocation_audit(AsyncMock(), make_actor(is_admin=True))

        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_object_tokens_never_expose_the_hash(self) -> None:
        org_id, object_id = uuid4(), uuid4()
        token = make_token(
            expires_at=datetime.now(UTC) + timedelta(minutes=10),
            organization_id=org_id,
            object_id=object_id,
        )
        listing = TokenListing(
            token=token,
            status="active",
            expires_in=600,
            issued_to_name="Partner Lab",
            granted_role=GrantRole.VIEWER,
        )

        with patch(
            f"{ROUTER}.TokenService.list_tokens_for_object",
            new=AsyncMock(return_value=[listing]),
        ) as mock_list:
            response = await list_object_tokens(
                object_id, AsyncMock(), make_actor(organization_id=org_id, is_admin=True)
            )

        mock_list.assert_awaited_once_with(object_id, org_id)
        assert response.object_id == object_id
        summary = response.tokens[0]
        assert summary.id == token.id
        assert summary.status == "active"
        assert summary.expires_in == 600
        assert summary.issued_to_name == "Partner Lab"
        assert "token_hash" not in summary.model_dump()

    @pytest.mark.asyncio
    async def test_token_stats(self) -> None:
        stats = TokenStats(total=9, active=4, used=3, expired=1, revoked=1, orphaned=0)

        with patch(
            f"{ROUTER}.TokenJanitor.get_token_stats", new=AsyncMock(return_value=stats)
        ):
            response = await token_stats(AsyncMock(), make_actor(is_admin=True))

        assert response.model_dump() == stats.to_dict()


class TestExceptionHandlers:
    """Denials collapse into one generic response regardless of the reason."""

    @pytest.fixture
    def app(self, monkeypatch: pytest.MonkeyPatch) -> FastAPI:
        monkeypatch.setenv("TOKEN_CLEANUP_ENABLED", "false")
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
        from mylab.core.config import get_settings
        from mylab.core.security.oidc import verify_token
        from mylab.db.session import get_db_session
        from mylab.main import create_application

        get_settings.cache_clear()
        application = create_application()

        async def _db():
            yield AsyncMock()

        user_id = uuid4()
        application.dependency_overrides[get_db_session] = _db
        application.dependency_overrides[verify_token] = lambda: make_token_payload(user_id)
        return application

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason", ["not_found", "revoked", "expired", "already_used"])
    async def test_invalid_token_is_generic_403(self, app: FastAPI, reason: str) -> None:
        with patch(
            f"{ROUTER}.TokenService.validate_download_token",
            new=AsyncMock(return_value=TokenValidation.failure(reason)),  # type: ignore[arg-type]
        ):
            async with AsyncClient(
                transport=ASGITransport(app=app), base_url="http://test"
            ) as client:
                response = await client.get(
                    f"/api/v1/access/documents/{uuid4()}/download-file",
                    params={"token": "t", "org": str(uuid4())},
                )

        assert response.status_code == 403
        assert response.json() == {"detail": "Access denied"}

    @pytest.mark.asyncio
    async def test_missing_query_parameters_are_400(self, app: FastAPI) -> None:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get(f"/api/v1/access/documents/{uuid4()}/download-file")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_guard_denial_and_missing_grant(self, app: FastAPI) -> None:
        from mylab.modules.access.guard import get_actor

        app.dependency_overrides[get_actor] = lambda: make_actor(organization_id=uuid4())
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            with patch(
                f"{ROUTER}.AccessGuard.authorize",
                new=AsyncMock(side_effect=InsufficientRoleError(None, "viewer")),
            ):
                denied = await client.get(f"/api/v1/access/documents/{uuid4()}/download")
            with patch(
                f"{ROUTER}.GrantStore.get_grant",
                new=AsyncMock(side_effect=GrantNotFoundError("g")),
            ):
                missing = await client.get(f"/api/v1/access/grants/{uuid4()}")

        assert denied.status_code == 403
        assert denied.json() == {"detail": "Access denied"}
        assert missing.status_code == 404
        assert missing.json() == {"detail": "Grant not found"}
