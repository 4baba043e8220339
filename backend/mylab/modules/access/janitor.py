"""
Token janitor: housekeeping for the ``download_tokens`` table.

Deletes tokens that can no longer matter (long expired, long revoked, or
orphaned by a deleted grant) while keeping anything used recently so the
download trail stays inspectable for a while.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, exists, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.db.models import AccessGrant, DownloadToken
from mylab.db.session import get_background_session

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenStats:
    total: int
    active: int
    used: int
    expired: int
    revoked: int
    orphaned: int

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupFailure:
    token_id: UUID
    error: str


@dataclass
class CleanupReport:
    scanned: int = 0
    deleted: int = 0
    errors: list[CleanupFailure] = field(default_factory=list)
    duration_ms: int = 0
    stats: TokenStats | None = None


class TokenJanitor:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _candidate_filter(self, now: datetime) -> Any:
        settings = get_settings()
        expired_before = now - timedelta(days=settings.token_cleanup_expired_grace_days)
        revoked_before = now - timedelta(days=settings.token_cleanup_revoked_grace_days)
        used_before = now - timedelta(hours=settings.token_cleanup_used_grace_hours)

        orphaned = and_(
            DownloadToken.grant_id.is_not(None),
            ~exists().where(AccessGrant.id == DownloadToken.grant_id),
        )
        return and_(
            or_(
                DownloadToken.expires_at < expired_before,
                and_(
                    DownloadToken.revoked_at.is_not(None),
                    DownloadToken.revoked_at < revoked_before,
                ),
                orphaned,
            ),
            or_(DownloadToken.used_at.is_(None), DownloadToken.used_at < used_before),
        )

    async def trigger_manual_cleanup(self) -> CleanupReport:
        """
        Delete eligible tokens in batches, one SAVEPOINT per row.

        A row that fails to delete is recorded in ``errors`` and skipped on
        later batches; the sweep itself never raises for a single row.
        """
        settings = get_settings()
        started = time.monotonic()
        now = datetime.now(UTC)
        report = CleanupReport()
        failed: set[UUID] = set()

        while True:
            query = (
                select(DownloadToken.id)
                .where(self._candidate_filter(now))
                .order_by(DownloadToken.expires_at)
                .limit(settings.token_cleanup_batch_size)
            )
            if failed:
                query = query.where(DownloadToken.id.not_in(failed))
            batch = list((await self._session.execute(query)).scalars().all())
            report.scanned += len(batch)

            for token_id in batch:
                try:
                    async with self._session.begin_nested():
                        await self._session.execute(
                            delete(DownloadToken).where(DownloadToken.id == token_id)
                        )
                    report.deleted += 1
                except SQLAlchemyError as e:
                    failed.add(token_id)
                    report.errors.append(CleanupFailure(token_id=token_id, error=str(e)))
                    logger.warning(
                        "token_cleanup_row_failed", token_id=str(token_id), error=str(e)
                    )

            if len(batch) < settings.token_cleanup_batch_size:
                break

        report.stats = await self.get_token_stats()
        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "token_cleanup_finished",
            scanned=report.scanned,
            deleted=report.deleted,
            errors=len(report.errors),
            duration_ms=report.duration_ms,
        )
        return report

    async def get_token_stats(self) -> TokenStats:
        now = datetime.now(UTC)
        row = (
            await self._session.execute(
                select(
                    func.count(DownloadToken.id).label("total"),
                    func.count(DownloadToken.id)
                    .filter(DownloadToken.revoked_at.is_(None), DownloadToken.expires_at > now)
                    .label("active"),
                    func.count(DownloadToken.id)
                    .filter(DownloadToken.used_at.is_not(None))
                    .label("used"),
                    func.count(DownloadToken.id)
                    .filter(DownloadToken.expires_at <= now)
                    .label("expired"),
                    func.count(DownloadToken.id)
                    .filter(DownloadToken.revoked_at.is_not(None))
                    .label("revoked"),
                    func.count(DownloadToken.id)
                    .filter(DownloadToken.grant_id.is_not(None), AccessGrant.id.is_(None))
                    .label("orphaned"),
                )
                .select_from(DownloadToken)
                .outerjoin(AccessGrant, AccessGrant.id == DownloadToken.grant_id)
            )
        ).one()
        return TokenStats(
            total=int(row.total),
            active=int(row.active),
            used=int(row.used),
            expired=int(row.expired),
            revoked=int(row.revoked),
            orphaned=int(row.orphaned),
        )


SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class TokenCleanupScheduler:
    """Runs the janitor on a fixed interval until stopped."""

    def __init__(
        self,
        interval_seconds: int,
        session_factory: SessionFactory = get_background_session,
    ) -> None:
        self._interval = interval_seconds
        self._session_factory = session_factory
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="token-cleanup")
        logger.info("token_cleanup_scheduled", interval_seconds=self._interval)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run_once(self) -> CleanupReport | None:
        try:
            async with self._session_factory() as session:
                report = await TokenJanitor(session).trigger_manual_cleanup()
                await session.commit()
            return report
        except Exception:
            logger.exception("token_cleanup_failed")
            return None

    async def _run(self) -> None:
        while not self._stop.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            if self._stop.is_set():
                break
            await self.run_once()
