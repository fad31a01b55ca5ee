"""
Create a user (e.g. first admin). Run from project root:
  python -m app.scripts.create_user USERNAME EMAIL PASSWORD [--full-name NAME] [--role ROLE]
Example:
  python -m app.scripts.create_user admin admin@example.gov.vn 'S3cure!pass' --role Admin
"""
import argparse
import logging
import sys

from pydantic import ValidationError

from app.core.config import get_settings
from app.core.database import new_unit_of_work
from app.core.security import CredentialHasher, InvalidInputError
from app.repositories.errors import StorageError
from app.schemas.auth import CreateUserRequest
from app.services.users import ConflictError, NotFoundError, UserProvisioning

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an identity user (no registration UI).")
    parser.add_argument("username", help="Username (3-50 chars: letters, digits, '.', '-', '_')")
    parser.add_argument("email", help="Email address")
    parser.add_argument("password", help="Password (8+ chars, upper, lower, digit and symbol)")
    parser.add_argument("--full-name", default=None, help="Display name (defaults to username)")
    parser.add_argument("--role", default=None, help="Role to assign, e.g. Admin or Viewer")
    args = parser.parse_args()

    try:
        request = CreateUserRequest(
            username=args.username.strip(),
            email=args.email,
            full_name=args.full_name or args.username.strip(),
            password=args.password,
        )
    except ValidationError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 1

    hasher = CredentialHasher(iterations=get_settings().PASSWORD_HASH_ITERATIONS)
    with new_unit_of_work() as uow:
        provisioning = UserProvisioning(uow, hasher)
        try:
            provisioning.ensure_system_roles()
            if args.role:
                with uow.transaction():
                    role = uow.roles.by_name(args.role)
                if role is None:
                    print(f"Role '{args.role}' not found; no user was created.", file=sys.stderr)
                    return 1
            user = provisioning.create_user(request)
            if args.role:
                provisioning.assign_role(user.id, args.role, assigned_by="create_user")
        except (ConflictError, NotFoundError, InvalidInputError) as e:
            print(e.message, file=sys.stderr)
            return 1
        except StorageError as e:
            print(f"Database error while {e.operation}.", file=sys.stderr)
            return 1

    role_note = f" with role '{args.role}'" if args.role else ""
    print(f"Created user '{request.username}'{role_note}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
