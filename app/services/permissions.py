"""Effective permission resolution: live role grants merged with live direct grants."""

import logging
import uuid

from app.core.clock import Clock
from app.repositories.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)


class PermissionResolver:
    """
    Computes what a user may do right now.

    Bound to one unit of work; build a new resolver per request. Liveness is evaluated
    against the injected clock, so expired grants drop out without any cleanup job.
    """

    def __init__(self, uow: UnitOfWork, clock: Clock) -> None:
        self._uow = uow
        self._clock = clock

    def effective_permissions(self, user_id: uuid.UUID) -> set[str]:
        """
        Union of active permission codes from live role grants and live direct grants.

        Permissions are deduplicated by id before codes are taken, so a permission
        reachable through a role and a direct grant appears once. A direct grant with
        is_granted=False is ignored; it does not subtract from role-derived permissions.
        """
        now = self._clock.now()
        by_id: dict[uuid.UUID, str] = {}

        for role in self._uow.roles.live_roles_for_user(user_id, now):
            for permission in self._uow.permissions.for_role(role.id):
                by_id.setdefault(permission.id, permission.code)

        for permission in self._uow.permissions.direct_for_user(user_id, now):
            by_id.setdefault(permission.id, permission.code)

        logger.debug(
            "Resolved %s effective permissions for user %s", len(by_id), user_id
        )
        return set(by_id.values())

    def live_role_names(self, user_id: uuid.UUID) -> list[str]:
        """Names of the user's live roles, ordered by priority then name."""
        roles = self._uow.roles.live_roles_for_user(user_id, self._clock.now())
        return [role.name for role in roles]

    def has_permission(self, user_id: uuid.UUID, code: str) -> bool:
        return code in self.effective_permissions(user_id)
