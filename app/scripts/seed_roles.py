"""
Create the built-in roles if they are missing. Run from project root:
  python -m app.scripts.seed_roles
"""
import logging
import sys

from app.core.config import get_settings
from app.core.database import new_unit_of_work
from app.core.security import CredentialHasher
from app.repositories.errors import StorageError
from app.services.users import UserProvisioning

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def main() -> int:
    hasher = CredentialHasher(iterations=get_settings().PASSWORD_HASH_ITERATIONS)
    with new_unit_of_work() as uow:
        try:
            created = UserProvisioning(uow, hasher).ensure_system_roles()
        except StorageError as e:
            logger.exception("Seeding roles failed: %s", e.message)
            return 1
    logger.info("System roles ensured: created=%s", len(created))
    return 0


if __name__ == "__main__":
    sys.exit(main())
