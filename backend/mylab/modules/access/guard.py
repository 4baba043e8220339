"""
Access guard: combines ownership and grants into one authorization decision.

Route handlers either call ``AccessGuard.authorize`` directly or declare the
``require_object_access(role)`` dependency, which also leaves the decision on
``request.state.access`` for downstream code.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status

from mylab.core.logging import get_logger
from mylab.core.security.oidc import Admin, CurrentUser
from mylab.db.models import GrantRole, ObjectType
from mylab.db.session import DbSession
from mylab.modules.access.actor import ActorContext
from mylab.modules.access.errors import InsufficientRoleError
from mylab.modules.access.grants import AccessCheck, GrantStore, has_sufficient_role

logger = get_logger(__name__)


async def get_actor(user: CurrentUser) -> ActorContext:
    """Dependency translating the verified token into an ``ActorContext``."""
    try:
        return ActorContext.from_token(user)
    except ValueError:
        logger.warning("actor_subject_invalid", sub=user.sub)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token subject",
        )


Actor = Annotated[ActorContext, Depends(get_actor)]


async def get_admin_actor(user: Admin) -> ActorContext:
    """Like ``get_actor`` but only for organization or platform admins."""
    return await get_actor(user)


AdminActor = Annotated[ActorContext, Depends(get_admin_actor)]


class AccessGuard:
    def __init__(self, grants: GrantStore) -> None:
        self._grants = grants

    async def authorize(
        self,
        actor: ActorContext,
        object_type: ObjectType | str,
        object_id: UUID,
        required_role: GrantRole = GrantRole.VIEWER,
    ) -> AccessCheck:
        check = await self._grants.check_access(
            object_type, object_id, actor.effective_workspace_id
        )
        if not check.has_access or not has_sufficient_role(check.role, required_role):
            logger.info(
                "access_denied",
                user_id=str(actor.user_id),
                object_type=str(object_type),
                object_id=str(object_id),
                role=check.role.value if check.role else None,
                required_role=required_role.value,
            )
            raise InsufficientRoleError(
                check.role.value if check.role else None, required_role.value
            )
        return check


def require_object_access(
    required_role: GrantRole = GrantRole.VIEWER,
) -> Callable[..., Awaitable[AccessCheck]]:
    """Dependency for routes with ``{object_type}/{object_id}`` path parameters."""

    async def _authorize(
        object_type: ObjectType,
        object_id: UUID,
        request: Request,
        actor: Actor,
        db: DbSession,
    ) -> AccessCheck:
        check = await AccessGuard(GrantStore(db)).authorize(
            actor, object_type, object_id, required_role
        )
        request.state.access = check
        return check

    return _authorize
