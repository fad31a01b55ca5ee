"""Shared helpers for database-backed tests: in-memory or file SQLite, a fixed clock, seed data."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import CredentialHasher
from app.core.tokens import TokenIssuer, TokenSettings
from app.models import Base, Permission, Role, User, UserPermission, UserRole
from app.repositories.unit_of_work import UnitOfWork

T0 = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
TEST_SECRET = "unit-test-signing-key-with-at-least-32-bytes"
TEST_ISSUER = "dvc-identity"
TEST_AUDIENCE = "dvc-services"
PASSWORD = "Correct#Horse9"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        self._now += timedelta(**kwargs)


def memory_sessions() -> sessionmaker:
    """Session factory over a fresh in-memory SQLite database with all tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )


def file_sessions(path: str) -> sessionmaker:
    """Session factory over a SQLite file; each session gets its own connection."""
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )


def uow_factory(sessions: sessionmaker):
    return lambda: UnitOfWork(sessions())


def token_issuer(clock: FixedClock, **overrides: object) -> TokenIssuer:
    values = {
        "secret_key": TEST_SECRET,
        "issuer": TEST_ISSUER,
        "audience": TEST_AUDIENCE,
        "access_token_minutes": 15,
        "refresh_token_days": 7,
    }
    values.update(overrides)
    return TokenIssuer(TokenSettings(**values), clock)


def make_user(
    uow: UnitOfWork,
    hasher: CredentialHasher,
    username: str = "alice",
    password: str = PASSWORD,
    **fields: object,
) -> User:
    password_hash, salt = hasher.hash(password)
    user = User(
        username=username,
        email=f"{username}@example.gov.vn",
        full_name=username.title(),
        password_hash=password_hash,
        salt=salt,
        **fields,
    )
    with uow.transaction():
        uow.users.add(user)
    return user


def make_permission(uow: UnitOfWork, code: str, is_active: bool = True) -> Permission:
    with uow.transaction():
        permission = uow.permissions.by_code(code)
        if permission is None:
            module, _, action = code.partition(".")
            permission = uow.permissions.add(
                Permission(
                    code=code,
                    name=code,
                    module=module,
                    resource=module,
                    action=action,
                    is_active=is_active,
                )
            )
    return permission


def make_role(
    uow: UnitOfWork,
    name: str,
    permissions: tuple[str, ...] = (),
    priority: int = 0,
    is_active: bool = True,
) -> Role:
    linked = [make_permission(uow, code) for code in permissions]
    with uow.transaction():
        role = uow.roles.add(Role(name=name, priority=priority, is_active=is_active))
        for permission in linked:
            uow.roles.link_permission(role.id, permission.id)
    return role


def grant_role(
    uow: UnitOfWork,
    user: User,
    role: Role,
    expires_at: datetime | None = None,
    is_active: bool = True,
) -> UserRole:
    with uow.transaction():
        grant = uow.roles.add_grant(
            UserRole(
                user_id=user.id,
                role_id=role.id,
                expires_at=expires_at,
                is_active=is_active,
            )
        )
    return grant


def grant_permission(
    uow: UnitOfWork,
    user: User,
    code: str,
    is_granted: bool = True,
    expires_at: datetime | None = None,
) -> UserPermission:
    permission = make_permission(uow, code)
    with uow.transaction():
        grant = uow.permissions.add_grant(
            UserPermission(
                user_id=user.id,
                permission_id=permission.id,
                is_granted=is_granted,
                expires_at=expires_at,
            )
        )
    return grant
