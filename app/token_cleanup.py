"""
CLI entrypoint for the expired refresh token cleanup job. Run from cron, e.g.:

  python -m app.token_cleanup

Or nightly: 0 3 * * * cd /path/to/dvc-identity && .venv/bin/python -m app.token_cleanup
"""

import logging
import sys

from app.core.clock import SystemClock
from app.core.config import get_settings
from app.core.database import new_unit_of_work
from app.repositories.errors import StorageError
from app.services.token_cleanup import clear_expired_refresh_tokens

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def main() -> int:
    """Clear refresh tokens that are past their expiry."""
    settings = get_settings()
    with new_unit_of_work() as uow:
        try:
            cleared = clear_expired_refresh_tokens(uow, settings, SystemClock().now())
            logger.info("Token cleanup completed: tokens_cleared=%s", cleared)
            return 0
        except StorageError as e:
            logger.exception("Token cleanup job failed: %s", e.message)
            return 1


if __name__ == "__main__":
    sys.exit(main())
