"""
Authentication engine: login with lockout and MFA gate, refresh-token rotation, logout.

Expected outcomes (bad password, locked account, MFA needed) are returned as AuthResult
values. Only cancellation and transaction-protocol bugs escape as exceptions; any other
unexpected fault is logged and collapsed to a generic internal error.
"""

from __future__ import annotations

import binascii
import json
import logging
import secrets
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import pyotp

from app.core.clock import Clock, SystemClock
from app.core.security import CredentialHasher
from app.core.tokens import TokenIssuer, TokenSettings
from app.models import AuditLog, User
from app.repositories.errors import (
    ConcurrencyConflictError,
    StorageError,
    TransactionStateError,
)
from app.repositories.unit_of_work import UnitOfWork
from app.schemas.auth import AuthFailure, AuthResult
from app.services.permissions import PermissionResolver

if TYPE_CHECKING:
    from app.core.config import Settings

logger = logging.getLogger(__name__)

# Re-read and re-apply a user update at most this many times on version conflicts.
MAX_CONFLICT_RETRIES = 3

AUDIT_LOGIN = "auth.login"
AUDIT_LOGIN_FAILED = "auth.login_failed"
AUDIT_LOCKOUT = "auth.lockout"
AUDIT_REFRESH = "auth.refresh"
AUDIT_REFRESH_FAILED = "auth.refresh_failed"
AUDIT_LOGOUT = "auth.logout"

UnitOfWorkFactory = Callable[[], UnitOfWork]
T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when the caller's cancellation event is set before work is persisted."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class LockoutPolicy:
    """Lock the account for `duration` once consecutive failures reach `threshold`."""

    threshold: int = 5
    duration: timedelta = timedelta(minutes=30)


@dataclass(frozen=True)
class RequestContext:
    """Caller metadata recorded on audit entries."""

    ip_address: str | None = None
    user_agent: str | None = None


class MfaVerifier(Protocol):
    def verify(self, secret: str, code: str, at: datetime) -> bool: ...


class TotpVerifier:
    """RFC 6238 TOTP check with a tolerance of `valid_window` steps either side."""

    def __init__(self, valid_window: int = 1) -> None:
        self.valid_window = valid_window

    def verify(self, secret: str, code: str, at: datetime) -> bool:
        try:
            return pyotp.TOTP(secret).verify(
                code, for_time=at, valid_window=self.valid_window
            )
        except (binascii.Error, ValueError, TypeError) as e:
            logger.warning("Stored MFA secret could not be used: %s", e)
            return False


def _check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled()


class AuthEngine:
    """
    Orchestrates login, refresh, logout and token checks.

    All collaborators are injected. The engine holds no per-request state: every call
    opens its own unit of work from the factory and closes it before returning.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        hasher: CredentialHasher,
        tokens: TokenIssuer,
        clock: Clock | None = None,
        lockout: LockoutPolicy | None = None,
        mfa: MfaVerifier | None = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._hasher = hasher
        self._tokens = tokens
        self._clock = clock or SystemClock()
        self._lockout = lockout or LockoutPolicy()
        self._mfa = mfa or TotpVerifier()
        # Unknown usernames still pay for one KDF run so they are not distinguishable by timing.
        self._dummy_hash, self._dummy_salt = hasher.hash(secrets.token_urlsafe(16))

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        mfa_code: str | None = None,
        *,
        cancel: threading.Event | None = None,
        context: RequestContext | None = None,
    ) -> AuthResult:
        """Authenticate with username and password (and TOTP code when MFA is enabled)."""
        with self._uow_factory() as uow:
            try:
                return self._login(uow, username, password, mfa_code, cancel, context)
            except (OperationCancelled, TransactionStateError):
                raise
            except Exception:
                logger.exception("Error during login for username: %s", username)
                return AuthResult.failed(AuthFailure.INTERNAL_ERROR)

    def _login(
        self,
        uow: UnitOfWork,
        username: str,
        password: str,
        mfa_code: str | None,
        cancel: threading.Event | None,
        context: RequestContext | None,
    ) -> AuthResult:
        _check_cancelled(cancel)
        with uow.transaction():
            user = uow.users.by_username(username)

        if user is None:
            # Matches the KDF cost of a wrong password, not the counter write that follows it.
            self._hasher.verify(password, self._dummy_hash, self._dummy_salt)
            logger.warning("Login attempt with non-existent username: %s", username)
            return self._fail(
                uow, AuthFailure.INVALID_CREDENTIALS, None, context, username=username
            )

        user_id = user.id
        if not user.is_active:
            logger.warning("Login attempt with inactive user: %s", user_id)
            return self._fail(uow, AuthFailure.ACCOUNT_DISABLED, user_id, context)

        if self._is_locked(user, self._clock.now()):
            logger.warning("Login attempt with locked user: %s", user_id)
            return self._fail(uow, AuthFailure.ACCOUNT_LOCKED, user_id, context)

        if not self._hasher.verify(password, user.password_hash, user.salt or ""):
            locked = self._record_failed_attempt(uow, user_id, cancel)
            logger.warning("Failed login attempt for user: %s", user_id)
            if locked:
                logger.warning("User %s locked out after repeated failures", user_id)
                self._audit(uow, AUDIT_LOCKOUT, user_id, False, context)
            return self._fail(uow, AuthFailure.INVALID_CREDENTIALS, user_id, context)

        if user.mfa_enabled:
            if not mfa_code:
                logger.info("MFA code required for user: %s", user_id)
                return AuthResult.failed(AuthFailure.MFA_REQUIRED)
            # Known gap: wrong MFA codes are audited but not counted toward the lockout.
            if not user.mfa_secret or not self._mfa.verify(
                user.mfa_secret, mfa_code, self._clock.now()
            ):
                logger.warning("Invalid MFA code for user: %s", user_id)
                return self._fail(uow, AuthFailure.INVALID_MFA_CODE, user_id, context)

        _, result = self._update_user(
            uow,
            lambda u: u.users.get(user_id, fresh=True),
            lambda fresh: self._complete_login(uow, fresh),
            cancel,
            "completing login",
        )
        if result is None:
            return AuthResult.failed(AuthFailure.INVALID_CREDENTIALS)
        if result.success:
            logger.info("Successful login for user: %s", user_id)
            self._audit(uow, AUDIT_LOGIN, user_id, True, context)
        else:
            self._audit(uow, AUDIT_LOGIN_FAILED, user_id, False, context, error=result.error)
        return result

    def _is_locked(self, user: User, now: datetime) -> bool:
        # A lock without an end time stays until an administrator resets it.
        if not user.is_locked:
            return False
        return user.locked_until is None or user.locked_until > now

    def _record_failed_attempt(
        self, uow: UnitOfWork, user_id: uuid.UUID, cancel: threading.Event | None
    ) -> bool:
        """Persist the incremented counter (and lock) before the failure is returned."""

        def increment(user: User) -> bool:
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
            if user.failed_login_attempts >= self._lockout.threshold:
                user.is_locked = True
                user.locked_until = self._clock.now() + self._lockout.duration
            return bool(user.is_locked)

        _, locked = self._update_user(
            uow,
            lambda u: u.users.get(user_id, fresh=True),
            increment,
            cancel,
            "recording failed login",
        )
        return bool(locked)

    def _complete_login(self, uow: UnitOfWork, user: User) -> AuthResult:
        # Re-checked on the reloaded row: a lock set by concurrent failures must survive.
        if not user.is_active:
            return AuthResult.failed(AuthFailure.ACCOUNT_DISABLED)
        if self._is_locked(user, self._clock.now()):
            logger.warning("User %s was locked while login was in progress", user.id)
            return AuthResult.failed(AuthFailure.ACCOUNT_LOCKED)
        user.failed_login_attempts = 0
        user.is_locked = False
        user.locked_until = None
        user.last_login_at = self._clock.now()
        return self._issue_tokens(uow, user)

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(
        self,
        refresh_token: str,
        *,
        cancel: threading.Event | None = None,
        context: RequestContext | None = None,
    ) -> AuthResult:
        """Exchange a stored, unexpired refresh token for a new token pair (single use)."""
        if not refresh_token:
            return AuthResult.failed(AuthFailure.TOKEN_EXPIRED)
        with self._uow_factory() as uow:
            try:
                user, result = self._update_user(
                    uow,
                    lambda u: u.users.by_refresh_token(refresh_token),
                    lambda user: self._rotate(uow, user),
                    cancel,
                    "rotating refresh token",
                )
                if user is None or result is None:
                    logger.warning("Invalid or expired refresh token")
                    return AuthResult.failed(AuthFailure.TOKEN_EXPIRED)
                if result.success:
                    self._audit(uow, AUDIT_REFRESH, user.id, True, context)
                else:
                    logger.warning("Expired refresh token for user: %s", user.id)
                    self._audit(
                        uow, AUDIT_REFRESH_FAILED, user.id, False, context, error=result.error
                    )
                return result
            except (OperationCancelled, TransactionStateError):
                raise
            except Exception:
                logger.exception("Error during token refresh")
                return AuthResult.failed(AuthFailure.INTERNAL_ERROR)

    def _rotate(self, uow: UnitOfWork, user: User) -> AuthResult:
        expires_at = user.refresh_token_expires_at
        if expires_at is None or expires_at <= self._clock.now() or not user.is_active:
            return AuthResult.failed(AuthFailure.TOKEN_EXPIRED)
        # Roles and permissions are re-derived; nothing is carried over from the old token.
        return self._issue_tokens(uow, user)

    def logout(
        self,
        user_id: uuid.UUID,
        *,
        cancel: threading.Event | None = None,
        context: RequestContext | None = None,
    ) -> bool:
        """Clear the stored refresh token. Idempotent: an unknown user counts as success."""

        def clear(user: User) -> None:
            user.refresh_token = None
            user.refresh_token_expires_at = None

        with self._uow_factory() as uow:
            try:
                user, _ = self._update_user(
                    uow,
                    lambda u: u.users.get(user_id, fresh=True),
                    clear,
                    cancel,
                    "logging out",
                )
                if user is not None:
                    logger.info("User logged out: %s", user_id)
                    self._audit(uow, AUDIT_LOGOUT, user_id, True, context)
                return True
            except (OperationCancelled, TransactionStateError):
                raise
            except Exception:
                logger.exception("Error during logout for user: %s", user_id)
                return False

    # ------------------------------------------------------------------
    # Token checks and permissions
    # ------------------------------------------------------------------

    def validate_token(self, token: str) -> bool:
        return self._tokens.validate(token)

    def user_id_from_token(self, token: str) -> uuid.UUID | None:
        """Non-authoritative: the signature is not checked."""
        return self._tokens.extract_user_id(token)

    def effective_permissions(
        self, user_id: uuid.UUID, *, cancel: threading.Event | None = None
    ) -> list[str]:
        """Sorted effective permission codes. StorageError propagates to the caller."""
        _check_cancelled(cancel)
        with self._uow_factory() as uow:
            with uow.transaction():
                codes = PermissionResolver(uow, self._clock).effective_permissions(user_id)
        return sorted(codes)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_tokens(self, uow: UnitOfWork, user: User) -> AuthResult:
        resolver = PermissionResolver(uow, self._clock)
        permissions = sorted(resolver.effective_permissions(user.id))
        roles = resolver.live_role_names(user.id)
        access_token = self._tokens.issue_access_token(
            user.id, user.username, user.email, roles, permissions
        )
        refresh_token = self._tokens.issue_refresh_token()
        user.refresh_token = refresh_token
        user.refresh_token_expires_at = self._tokens.refresh_token_expiry()
        return AuthResult.succeeded(
            access_token, refresh_token, self._tokens.access_token_expiry()
        )

    def _update_user(
        self,
        uow: UnitOfWork,
        load: Callable[[UnitOfWork], User | None],
        apply: Callable[[User], T],
        cancel: threading.Event | None,
        operation: str,
    ) -> tuple[User | None, T | None]:
        """
        Load, mutate and persist one user row in its own transaction.

        The version column makes the write conditional on the row being unchanged since
        it was read; on conflict the row is re-read and the change re-applied. Nothing
        is persisted if cancellation is requested before the write.
        """
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            _check_cancelled(cancel)
            try:
                with uow.transaction():
                    user = load(uow)
                    if user is None:
                        return None, None
                    outcome = apply(user)
                    _check_cancelled(cancel)
                    uow.users.update(user)
                return user, outcome
            except ConcurrencyConflictError:
                if attempt == MAX_CONFLICT_RETRIES:
                    logger.error(
                        "Giving up %s after %s concurrent modifications",
                        operation,
                        attempt,
                    )
                    raise
                logger.warning(
                    "Concurrent modification while %s (attempt %s/%s); retrying",
                    operation,
                    attempt,
                    MAX_CONFLICT_RETRIES,
                )
        raise AssertionError("unreachable")

    def _fail(
        self,
        uow: UnitOfWork,
        failure: AuthFailure,
        user_id: uuid.UUID | None,
        context: RequestContext | None,
        **data: Any,
    ) -> AuthResult:
        self._audit(uow, AUDIT_LOGIN_FAILED, user_id, False, context, error=failure, **data)
        return AuthResult.failed(failure)

    def _audit(
        self,
        uow: UnitOfWork,
        action: str,
        user_id: uuid.UUID | None,
        is_success: bool,
        context: RequestContext | None,
        error: AuthFailure | None = None,
        **data: Any,
    ) -> None:
        """Best-effort audit write in its own transaction; failure never changes the result."""
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource="auth",
            resource_id=str(user_id) if user_id else None,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
            timestamp=self._clock.now(),
            is_success=is_success,
            error_message=error.value if error else None,
            additional_data=json.dumps(data) if data else None,
        )
        try:
            with uow.transaction():
                uow.audit_logs.add(entry)
        except StorageError:
            logger.warning(
                "Failed to write audit entry %s for user %s", action, user_id, exc_info=True
            )


def build_auth_engine(
    settings: Settings,
    uow_factory: UnitOfWorkFactory,
    clock: Clock | None = None,
) -> AuthEngine:
    """
    Wire an engine from settings.

    Raises TokenConfigurationError when JWT_SECRET is absent: without a signing key the
    service refuses to start issuing tokens instead of issuing unsigned ones.
    """
    clock = clock or SystemClock()
    tokens = TokenIssuer(TokenSettings.from_settings(settings), clock)
    hasher = CredentialHasher(iterations=settings.PASSWORD_HASH_ITERATIONS)
    lockout = LockoutPolicy(
        threshold=settings.LOCKOUT_THRESHOLD,
        duration=timedelta(minutes=settings.LOCKOUT_MINUTES),
    )
    return AuthEngine(
        uow_factory,
        hasher,
        tokens,
        clock=clock,
        lockout=lockout,
        mfa=TotpVerifier(settings.MFA_VALID_WINDOW),
    )
