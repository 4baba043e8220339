"""
Abuse detection for the access endpoints.

Rate limiting lives in ``mylab.core.rate_limit``; this module covers the
other axis: anomaly heuristics over result sizes and access cadence, per-user
access statistics from the audit log, and the daily download byte quota.

Anomalies are reported, never enforced. The quota check fails open when the
audit log cannot be read.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from uuid import UUID

from fastapi import Request
from sqlalchemy import BigInteger, Integer, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.audit import emit_audit_entry
from mylab.core.config import get_settings
from mylab.core.logging import get_logger
from mylab.db.models import AuditEntry

logger = get_logger(__name__)

Severity = Literal["low", "medium", "high", "critical"]

DEFAULT_AVERAGE_RESULT_SIZE = 100.0
SPIKE_MULTIPLIER = 5
BULK_RECORD_THRESHOLD = 1000
RAPID_REQUESTS_MIN = 50
RAPID_REQUESTS_MAX = 300
NEW_OBJECT_THRESHOLD = 100

DOWNLOAD_ACTION = "download"
ACCESS_ACTIONS = (DOWNLOAD_ACTION, "token_issued")


@dataclass(frozen=True)
class Anomaly:
    type: str
    severity: Severity
    description: str
    details: dict[str, Any] = field(default_factory=dict)


def detect_access_anomalies(
    access_count: int,
    results_count: int,
    history: Sequence[int] | None = None,
    new_object_count: int = 0,
) -> list[Anomaly]:
    """
    Flag unusual access patterns.

    ``access_count`` is the number of requests inside the short window,
    ``results_count`` the size of the current result, ``history`` the actor's
    earlier result sizes and ``new_object_count`` how many objects in the
    window the actor had never touched before.
    """
    anomalies: list[Anomaly] = []
    average = sum(history) / len(history) if history else DEFAULT_AVERAGE_RESULT_SIZE

    if average > 0 and results_count > average * SPIKE_MULTIPLIER:
        anomalies.append(
            Anomaly(
                type="spike_in_result_size",
                severity="high",
                description=f"Result size {SPIKE_MULTIPLIER}x higher than user average",
                details={
                    "current": results_count,
                    "average": round(average, 1),
                    "multiplier": round(results_count / average, 1),
                },
            )
        )

    if results_count > BULK_RECORD_THRESHOLD:
        anomalies.append(
            Anomaly(
                type="bulk_data_request",
                severity="critical",
                description=f"Single request returning more than {BULK_RECORD_THRESHOLD} records",
                details={"record_count": results_count},
            )
        )

    if RAPID_REQUESTS_MIN < access_count < RAPID_REQUESTS_MAX:
        anomalies.append(
            Anomaly(
                type="rapid_requests",
                severity="medium",
                description="Unusually rapid series of requests",
                details={"request_count": access_count},
            )
        )

    if new_object_count > NEW_OBJECT_THRESHOLD:
        anomalies.append(
            Anomaly(
                type="new_batch_access",
                severity="medium",
                description="Accessing a large number of previously unseen objects",
                details={"new_object_count": new_object_count},
            )
        )

    return anomalies


@dataclass(frozen=True)
class UserAccessStats:
    request_count: int
    avg_result_size: float
    last_access: datetime | None
    unique_objects: int


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    quota_bytes: int
    used_bytes: int
    remaining_bytes: int
    reset_at: datetime
    degraded: bool = False


def _local_midnight(now: datetime | None = None) -> datetime:
    local_now = (now or datetime.now(UTC)).astimezone()
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0)


class AbuseDetector:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_user_access_stats(
        self,
        user_id: UUID,
        window_hours: int | None = None,
    ) -> UserAccessStats:
        settings = get_settings()
        hours = window_hours or settings.anomaly_history_hours
        since = datetime.now(UTC) - timedelta(hours=hours)

        row = (
            await self._session.execute(
                select(
                    func.count(AuditEntry.id).label("request_count"),
                    func.avg(AuditEntry.details["result_count"].astext.cast(Integer)).label(
                        "avg_result_size"
                    ),
                    func.max(AuditEntry.created_at).label("last_access"),
                    func.count(func.distinct(AuditEntry.object_id)).label("unique_objects"),
                ).where(
                    AuditEntry.actor_id == str(user_id),
                    AuditEntry.action.in_(ACCESS_ACTIONS),
                    AuditEntry.created_at > since,
                )
            )
        ).one()
        return UserAccessStats(
            request_count=int(row.request_count or 0),
            avg_result_size=float(row.avg_result_size or 0),
            last_access=row.last_access,
            unique_objects=int(row.unique_objects or 0),
        )

    async def assess_access(
        self,
        *,
        user_id: UUID,
        organization_id: UUID | None,
        object_type: str,
        object_id: UUID,
        results_count: int = 1,
        request: Request | None = None,
    ) -> list[Anomaly]:
        """Run the heuristics for one access and report what they find."""
        settings = get_settings()
        now = datetime.now(UTC)
        window_start = now - timedelta(minutes=settings.anomaly_window_minutes)
        history_start = now - timedelta(hours=settings.anomaly_history_hours)
        actor = str(user_id)

        access_count = (
            await self._session.execute(
                select(func.count(AuditEntry.id)).where(
                    AuditEntry.actor_id == actor,
                    AuditEntry.action.in_(ACCESS_ACTIONS),
                    AuditEntry.created_at > window_start,
                )
            )
        ).scalar_one()

        recent = await self._distinct_objects(actor, window_start, now)
        earlier = await self._distinct_objects(actor, history_start, window_start)
        history = await self._recent_result_sizes(actor, history_start)

        anomalies = detect_access_anomalies(
            access_count=int(access_count),
            results_count=results_count,
            history=history,
            new_object_count=len(recent - earlier),
        )
        if anomalies:
            await self.report_anomalies(
                anomalies,
                user_id=user_id,
                organization_id=organization_id,
                object_type=object_type,
                object_id=object_id,
                request=request,
            )
        return anomalies

    async def report_anomalies(
        self,
        anomalies: Sequence[Anomaly],
        *,
        user_id: UUID,
        organization_id: UUID | None,
        object_type: str,
        object_id: UUID,
        request: Request | None = None,
    ) -> None:
        for anomaly in anomalies:
            logger.warning(
                "access_anomaly_detected",
                anomaly_type=anomaly.type,
                severity=anomaly.severity,
                user_id=str(user_id),
                object_id=str(object_id),
                **anomaly.details,
            )
        await emit_audit_entry(
            db_session=self._session,
            action="access_anomaly",
            object_type=object_type,
            object_id=object_id,
            actor_id=user_id,
            actor_org_id=organization_id,
            request=request,
            details={
                "anomalies": [
                    {
                        "type": a.type,
                        "severity": a.severity,
                        "description": a.description,
                        "details": a.details,
                    }
                    for a in anomalies
                ]
            },
        )

    async def check_download_quota(
        self,
        user_id: UUID,
        file_size: int,
        quota_bytes: int | None = None,
    ) -> QuotaDecision:
        """
        Check a download against the actor's daily byte quota.

        Usage is the sum of audited download sizes since local midnight. When
        that sum cannot be read the download is allowed and ``degraded`` set.
        """
        settings = get_settings()
        quota = settings.download_quota_bytes_per_day if quota_bytes is None else quota_bytes
        midnight = _local_midnight()
        reset_at = midnight + timedelta(days=1)

        try:
            async with self._session.begin_nested():
                used = (
                    await self._session.execute(
                        select(
                            func.coalesce(
                                func.sum(AuditEntry.details["file_size"].astext.cast(BigInteger)),
                                0,
                            )
                        ).where(
                            AuditEntry.actor_id == str(user_id),
                            AuditEntry.action == DOWNLOAD_ACTION,
                            AuditEntry.created_at >= midnight,
                        )
                    )
                ).scalar_one()
        except (SQLAlchemyError, TimeoutError):
            logger.warning("download_quota_check_failed", user_id=str(user_id), exc_info=True)
            return QuotaDecision(
                allowed=True,
                quota_bytes=quota,
                used_bytes=0,
                remaining_bytes=quota,
                reset_at=reset_at,
                degraded=True,
            )

        used_bytes = int(used or 0)
        allowed = used_bytes + file_size <= quota
        if not allowed:
            logger.warning(
                "download_quota_exceeded",
                user_id=str(user_id),
                used_bytes=used_bytes,
                file_size=file_size,
                quota_bytes=quota,
            )
        return QuotaDecision(
            allowed=allowed,
            quota_bytes=quota,
            used_bytes=used_bytes,
            remaining_bytes=max(0, quota - used_bytes),
            reset_at=reset_at,
        )

    async def _distinct_objects(self, actor: str, start: datetime, end: datetime) -> set[str]:
        result = await self._session.execute(
            select(AuditEntry.object_id)
            .where(
                AuditEntry.actor_id == actor,
                AuditEntry.action.in_(ACCESS_ACTIONS),
                AuditEntry.created_at > start,
                AuditEntry.created_at <= end,
                AuditEntry.object_id.is_not(None),
            )
            .distinct()
        )
        return {str(object_id) for object_id in result.scalars().all()}

    async def _recent_result_sizes(self, actor: str, since: datetime) -> list[int]:
        result = await self._session.execute(
            select(AuditEntry.details["result_count"].astext.cast(Integer)).where(
                AuditEntry.actor_id == actor,
                AuditEntry.created_at > since,
                AuditEntry.details["result_count"].astext.is_not(None),
            )
        )
        return [int(size) for size in result.scalars().all() if size is not None]
