"""Maintenance: clear stored refresh tokens whose expiry has passed."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from app.repositories.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)


def clear_expired_refresh_tokens(
    uow: UnitOfWork, settings: "Settings", now: datetime
) -> int:
    """
    Null out refresh tokens that expired at or before `now`.

    Expired tokens are already rejected by refresh; this only keeps the column tidy.
    Idempotent: safe to run repeatedly. Returns the number of users touched.
    """
    if not settings.TOKEN_CLEANUP_ENABLED:
        logger.info("Token cleanup is disabled (TOKEN_CLEANUP_ENABLED=false); skipping.")
        return 0

    with uow.transaction():
        cleared = uow.users.clear_expired_refresh_tokens(now)

    if cleared > 0:
        logger.info(
            "Token cleanup run: cutoff=%s, tokens_cleared=%s", now.isoformat(), cleared
        )
    return cleared
