"""Ownership resolution for protected objects.

Ownership is implicit: a workspace owns every object it created that has not
been soft-deleted. It is never stored as a grant row.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mylab.core.logging import get_logger
from mylab.db.models import (
    Analysis,
    AnalysisResult,
    Batch,
    DerivedSample,
    Document,
    ObjectType,
    Project,
    Sample,
)
from mylab.modules.access.errors import InvalidObjectTypeError

logger = get_logger(__name__)

# (model, owning-workspace column name) per object type
_OWNERSHIP_TARGETS: dict[ObjectType, tuple[Any, str]] = {
    ObjectType.PROJECT: (Project, "workspace_id"),
    ObjectType.SAMPLE: (Sample, "workspace_id"),
    ObjectType.DERIVED_SAMPLE: (DerivedSample, "owner_workspace_id"),
    ObjectType.BATCH: (Batch, "workspace_id"),
    ObjectType.ANALYSIS: (Analysis, "workspace_id"),
    ObjectType.DOCUMENT: (Document, "workspace_id"),
    ObjectType.RESULT: (AnalysisResult, "workspace_id"),
}


def coerce_object_type(value: ObjectType | str) -> ObjectType:
    """Map a raw string onto the closed ``ObjectType`` set or fail fast."""
    if isinstance(value, ObjectType):
        return value
    try:
        return ObjectType(value)
    except ValueError:
        raise InvalidObjectTypeError(value) from None


class OwnershipResolver:
    """
    Answers "does this workspace own this object?".

    Instances are request scoped; positive and negative answers are memoized
    for the lifetime of the instance only.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._cache: dict[tuple[ObjectType, UUID, UUID], bool] = {}

    async def check_ownership(
        self,
        object_type: ObjectType | str,
        object_id: UUID,
        workspace_id: UUID | None,
    ) -> bool:
        kind = coerce_object_type(object_type)
        if workspace_id is None:
            return False

        cache_key = (kind, object_id, workspace_id)
        if cache_key in self._cache:
            return self._cache[cache_key]

        model, owner_column = _OWNERSHIP_TARGETS[kind]
        result = await self._session.execute(
            select(model.id)
            .where(
                model.id == object_id,
                getattr(model, owner_column) == workspace_id,
                model.deleted_at.is_(None),
            )
            .limit(1)
        )
        is_owner = result.scalar_one_or_none() is not None
        self._cache[cache_key] = is_owner

        logger.debug(
            "ownership_checked",
            object_type=kind.value,
            object_id=str(object_id),
            workspace_id=str(workspace_id),
            is_owner=is_owner,
        )
        return is_owner
