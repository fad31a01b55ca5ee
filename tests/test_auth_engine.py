"""Tests for AuthEngine: login flow, lockout, MFA gate, refresh rotation, logout, audit, cancellation."""

import os
import tempfile
import threading
import unittest
import uuid
from datetime import timedelta
from unittest.mock import patch

import jwt
import pyotp

from app.core.security import CredentialHasher
from app.repositories import (
    AuditRepository,
    ConcurrencyConflictError,
    StorageError,
    UnitOfWork,
    UserRepository,
)
from app.schemas.auth import AuthFailure
from app.services.auth import (
    AUDIT_LOCKOUT,
    AUDIT_LOGIN,
    AUDIT_LOGIN_FAILED,
    AUDIT_LOGOUT,
    AUDIT_REFRESH,
    MAX_CONFLICT_RETRIES,
    AuthEngine,
    LockoutPolicy,
    OperationCancelled,
    RequestContext,
    TotpVerifier,
)
from tests.support import (
    PASSWORD,
    FixedClock,
    file_sessions,
    grant_permission,
    grant_role,
    make_role,
    make_user,
    memory_sessions,
    token_issuer,
    uow_factory,
)


class EngineTestCase(unittest.TestCase):
    """In-memory directory with one active user 'alice' and a fixed clock."""

    hasher = CredentialHasher()

    def setUp(self) -> None:
        self.sessions = memory_sessions()
        self.clock = FixedClock()
        self.tokens = token_issuer(self.clock)
        self.engine = AuthEngine(
            uow_factory(self.sessions),
            self.hasher,
            self.tokens,
            clock=self.clock,
            lockout=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
            mfa=TotpVerifier(valid_window=1),
        )
        self.uow = UnitOfWork(self.sessions())
        self.user = make_user(self.uow, self.hasher, "alice")

    def tearDown(self) -> None:
        self.uow.close()

    def reload_user(self):
        return self.uow.users.get(self.user.id, fresh=True)

    def audit_actions(self) -> list[str]:
        return [e.action for e in self.uow.audit_logs.by_user(self.user.id, limit=100)]


class TestLoginSuccess(EngineTestCase):
    def test_returns_tokens_with_roles_and_permissions(self) -> None:
        grant_role(self.uow, self.user, make_role(self.uow, "TiepNhan", ("doc.receive",)))
        grant_permission(self.uow, self.user, "report.view")

        result = self.engine.login("alice", PASSWORD)

        self.assertTrue(result.success)
        self.assertIsNone(result.error)
        self.assertEqual(result.expires_at, self.clock.now() + timedelta(minutes=15))
        claims = self.tokens.principal_from_token(result.access_token)
        self.assertEqual(claims.user_id, self.user.id)
        self.assertEqual(claims.roles, ["TiepNhan"])
        self.assertEqual(claims.permissions, ["doc.receive", "report.view"])
        self.assertTrue(self.engine.validate_token(result.access_token))

    def test_persists_refresh_token_and_last_login(self) -> None:
        result = self.engine.login("alice", PASSWORD)
        user = self.reload_user()
        self.assertEqual(user.refresh_token, result.refresh_token)
        self.assertEqual(user.refresh_token_expires_at, self.clock.now() + timedelta(days=7))
        self.assertEqual(user.last_login_at, self.clock.now())

    def test_resets_failed_attempts(self) -> None:
        for _ in range(3):
            self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(self.reload_user().failed_login_attempts, 3)
        self.assertTrue(self.engine.login("alice", PASSWORD).success)
        self.assertEqual(self.reload_user().failed_login_attempts, 0)

    def test_audit_entry_with_request_context(self) -> None:
        context = RequestContext(ip_address="10.0.0.8", user_agent="pytest")
        self.engine.login("alice", PASSWORD, context=context)
        entries = self.uow.audit_logs.by_action(AUDIT_LOGIN)
        self.assertEqual(len(entries), 1)
        self.assertTrue(entries[0].is_success)
        self.assertEqual(entries[0].ip_address, "10.0.0.8")
        self.assertEqual(entries[0].user_agent, "pytest")


class TestLoginFailures(EngineTestCase):
    def test_unknown_user_and_wrong_password_are_indistinguishable(self) -> None:
        unknown = self.engine.login("mallory", PASSWORD)
        wrong = self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(unknown.error, AuthFailure.INVALID_CREDENTIALS)
        self.assertEqual(
            unknown.model_dump(exclude={"expires_at"}),
            wrong.model_dump(exclude={"expires_at"}),
        )

    def test_unknown_user_still_runs_one_verification(self) -> None:
        with patch.object(self.hasher, "verify", wraps=self.hasher.verify) as verify:
            self.engine.login("mallory", PASSWORD)
        verify.assert_called_once()

    def test_wrong_password_increments_counter(self) -> None:
        result = self.engine.login("alice", "Wrong#pass1")
        self.assertFalse(result.success)
        self.assertIsNone(result.access_token)
        self.assertEqual(self.reload_user().failed_login_attempts, 1)
        self.assertIn(AUDIT_LOGIN_FAILED, self.audit_actions())

    def test_inactive_user_is_disabled_without_password_check(self) -> None:
        with self.uow.transaction():
            self.uow.users.delete(self.user.id)
        self.assertEqual(
            self.engine.login("alice", "anything").error, AuthFailure.ACCOUNT_DISABLED
        )
        self.assertEqual(self.reload_user().failed_login_attempts, 0)

    def test_username_is_case_sensitive(self) -> None:
        self.assertEqual(
            self.engine.login("Alice", PASSWORD).error, AuthFailure.INVALID_CREDENTIALS
        )


class TestLockout(EngineTestCase):
    def fail_logins(self, times: int) -> None:
        for _ in range(times):
            self.engine.login("alice", "Wrong#pass1")

    def test_locks_at_threshold(self) -> None:
        self.fail_logins(4)
        self.assertFalse(self.reload_user().is_locked)
        result = self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(result.error, AuthFailure.INVALID_CREDENTIALS)
        user = self.reload_user()
        self.assertTrue(user.is_locked)
        self.assertEqual(user.failed_login_attempts, 5)
        self.assertEqual(user.locked_until, self.clock.now() + timedelta(minutes=30))
        self.assertIn(AUDIT_LOCKOUT, self.audit_actions())

    def test_locked_account_rejects_correct_password(self) -> None:
        self.fail_logins(5)
        self.clock.advance(minutes=29, seconds=59)
        self.assertEqual(self.engine.login("alice", PASSWORD).error, AuthFailure.ACCOUNT_LOCKED)
        # Attempts while locked do not extend the lock.
        self.assertEqual(self.reload_user().failed_login_attempts, 5)

    def test_lock_expires_and_success_resets(self) -> None:
        self.fail_logins(5)
        self.clock.advance(minutes=30)
        self.assertTrue(self.engine.login("alice", PASSWORD).success)
        user = self.reload_user()
        self.assertFalse(user.is_locked)
        self.assertIsNone(user.locked_until)
        self.assertEqual(user.failed_login_attempts, 0)

    def test_lock_without_end_time_is_permanent(self) -> None:
        with self.uow.transaction():
            user = self.uow.users.get(self.user.id)
            user.is_locked = True
            user.locked_until = None
            self.uow.users.update(user)
        self.clock.advance(days=365)
        self.assertEqual(self.engine.login("alice", PASSWORD).error, AuthFailure.ACCOUNT_LOCKED)


class TestMfa(EngineTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.secret = pyotp.random_base32()
        with self.uow.transaction():
            user = self.uow.users.get(self.user.id)
            user.mfa_enabled = True
            user.mfa_secret = self.secret
            self.uow.users.update(user)
        self.totp = pyotp.TOTP(self.secret)

    def test_missing_code_requires_mfa_without_counting_failure(self) -> None:
        result = self.engine.login("alice", PASSWORD)
        self.assertFalse(result.success)
        self.assertEqual(result.error, AuthFailure.MFA_REQUIRED)
        self.assertTrue(result.requires_mfa)
        self.assertEqual(self.reload_user().failed_login_attempts, 0)

    def test_valid_code_at_clock_time(self) -> None:
        code = self.totp.at(self.clock.now())
        self.assertTrue(self.engine.login("alice", PASSWORD, code).success)

    def test_previous_step_accepted_within_window(self) -> None:
        code = self.totp.at(self.clock.now() - timedelta(seconds=30))
        self.assertTrue(self.engine.login("alice", PASSWORD, code).success)

    def test_invalid_code(self) -> None:
        valid = {self.totp.at(self.clock.now(), offset) for offset in (-1, 0, 1)}
        wrong = next(
            f"{n:06d}" for n in range(1_000_000) if f"{n:06d}" not in valid
        )
        result = self.engine.login("alice", PASSWORD, wrong)
        self.assertEqual(result.error, AuthFailure.INVALID_MFA_CODE)
        self.assertFalse(result.requires_mfa)
        # Wrong codes are audited only; the lockout counter is untouched.
        self.assertEqual(self.reload_user().failed_login_attempts, 0)
        self.assertIn(AUDIT_LOGIN_FAILED, self.audit_actions())

    def test_wrong_password_checked_before_mfa(self) -> None:
        result = self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(result.error, AuthFailure.INVALID_CREDENTIALS)


class TestRefresh(EngineTestCase):
    def test_rotates_refresh_token(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        self.clock.advance(minutes=20)
        second = self.engine.refresh(first.refresh_token)
        self.assertTrue(second.success)
        self.assertNotEqual(second.refresh_token, first.refresh_token)
        self.assertEqual(self.reload_user().refresh_token, second.refresh_token)
        self.assertTrue(self.engine.validate_token(second.access_token))
        self.assertIn(AUDIT_REFRESH, self.audit_actions())

    def test_old_refresh_token_single_use(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        self.assertTrue(self.engine.refresh(first.refresh_token).success)
        self.assertEqual(
            self.engine.refresh(first.refresh_token).error, AuthFailure.TOKEN_EXPIRED
        )

    def test_expired_refresh_token(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        self.clock.advance(days=7)
        self.assertEqual(
            self.engine.refresh(first.refresh_token).error, AuthFailure.TOKEN_EXPIRED
        )

    def test_unknown_or_empty_token(self) -> None:
        self.assertEqual(self.engine.refresh("nope").error, AuthFailure.TOKEN_EXPIRED)
        self.assertEqual(self.engine.refresh("").error, AuthFailure.TOKEN_EXPIRED)

    def test_permissions_rederived(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        grant_permission(self.uow, self.user, "doc.approve")
        second = self.engine.refresh(first.refresh_token)
        claims = self.tokens.principal_from_token(second.access_token)
        self.assertEqual(claims.permissions, ["doc.approve"])

    def test_deactivated_user_cannot_refresh(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        # Pick up the version written by login before updating from this session.
        self.reload_user()
        with self.uow.transaction():
            self.uow.users.delete(self.user.id)
        self.assertEqual(
            self.engine.refresh(first.refresh_token).error, AuthFailure.TOKEN_EXPIRED
        )


class TestLogout(EngineTestCase):
    def test_clears_refresh_token(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        self.assertTrue(self.engine.logout(self.user.id))
        self.assertIsNone(self.reload_user().refresh_token)
        self.assertEqual(
            self.engine.refresh(first.refresh_token).error, AuthFailure.TOKEN_EXPIRED
        )
        self.assertIn(AUDIT_LOGOUT, self.audit_actions())

    def test_unknown_user_is_success(self) -> None:
        self.assertTrue(self.engine.logout(uuid.uuid4()))

    def test_storage_failure_returns_false(self) -> None:
        with patch.object(
            UserRepository, "get", side_effect=StorageError("retrieving User")
        ):
            self.assertFalse(self.engine.logout(self.user.id))


class TestTokenHelpers(EngineTestCase):
    def test_validate_and_extract(self) -> None:
        result = self.engine.login("alice", PASSWORD)
        self.assertEqual(self.engine.user_id_from_token(result.access_token), self.user.id)
        self.clock.advance(minutes=15)
        self.assertFalse(self.engine.validate_token(result.access_token))
        # Extraction does not check expiry or signature.
        self.assertEqual(self.engine.user_id_from_token(result.access_token), self.user.id)

    def test_effective_permissions_sorted(self) -> None:
        grant_permission(self.uow, self.user, "b.two")
        grant_permission(self.uow, self.user, "a.one")
        self.assertEqual(self.engine.effective_permissions(self.user.id), ["a.one", "b.two"])


class TestAuditIsBestEffort(EngineTestCase):
    def test_audit_failure_does_not_change_result(self) -> None:
        with patch.object(
            AuditRepository, "add", side_effect=StorageError("adding AuditLog")
        ):
            result = self.engine.login("alice", PASSWORD)
        self.assertTrue(result.success)
        self.assertEqual(self.reload_user().refresh_token, result.refresh_token)


class TestConcurrentUpdates(EngineTestCase):
    def test_failed_attempt_retried_after_conflict(self) -> None:
        real_update = UserRepository.update
        calls: list[int] = []

        def conflict_once(repo: UserRepository, user):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflictError("updating User")
            return real_update(repo, user)

        with patch.object(UserRepository, "update", autospec=True, side_effect=conflict_once):
            result = self.engine.login("alice", "Wrong#pass1")

        self.assertEqual(result.error, AuthFailure.INVALID_CREDENTIALS)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.reload_user().failed_login_attempts, 1)

    def test_unpersistable_failed_attempt_fails_login(self) -> None:
        with patch.object(
            UserRepository, "update", side_effect=ConcurrencyConflictError("updating User")
        ) as update:
            result = self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(result.error, AuthFailure.INTERNAL_ERROR)
        self.assertEqual(update.call_count, MAX_CONFLICT_RETRIES)
        self.assertEqual(self.reload_user().failed_login_attempts, 0)

    def test_lock_set_while_login_in_flight_is_kept(self) -> None:
        real_verify = self.hasher.verify
        raced: list[bool] = []

        def verify_then_lock_out(*args, **kwargs) -> bool:
            outcome = real_verify(*args, **kwargs)
            if not raced:
                raced.append(True)
                for _ in range(5):
                    self.engine.login("alice", "Wrong#pass1")
            return outcome

        with patch.object(self.hasher, "verify", side_effect=verify_then_lock_out):
            result = self.engine.login("alice", PASSWORD)

        self.assertFalse(result.success)
        self.assertEqual(result.error, AuthFailure.ACCOUNT_LOCKED)
        self.assertIsNone(result.access_token)
        user = self.reload_user()
        self.assertTrue(user.is_locked)
        self.assertEqual(user.failed_login_attempts, 5)
        self.assertIsNone(user.refresh_token)
        self.assertNotIn(AUDIT_LOGIN, self.audit_actions())

    def test_storage_error_during_lookup_is_internal_error(self) -> None:
        with patch.object(
            UserRepository, "by_username", side_effect=StorageError("retrieving user")
        ):
            result = self.engine.login("alice", PASSWORD)
        self.assertEqual(result.error, AuthFailure.INTERNAL_ERROR)
        self.assertEqual(result.error_message, "Internal error.")


class TestRacingLoginsOnSharedFile(unittest.TestCase):
    """Two engine calls on separate connections write the same user row."""

    hasher = CredentialHasher()

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.sessions = file_sessions(os.path.join(self.tmp.name, "identity.db"))
        self.clock = FixedClock()
        self.engine = AuthEngine(
            uow_factory(self.sessions),
            self.hasher,
            token_issuer(self.clock),
            clock=self.clock,
        )
        with UnitOfWork(self.sessions()) as uow:
            self.user_id = make_user(uow, self.hasher, "alice").id

    def tearDown(self) -> None:
        self.sessions.kw["bind"].dispose()
        self.tmp.cleanup()

    def stored_user(self):
        with UnitOfWork(self.sessions()) as uow:
            with uow.transaction():
                return uow.users.get(self.user_id)

    def test_interleaved_failures_are_both_counted(self) -> None:
        real_update = UserRepository.update
        interleaved: list[bool] = []

        def write_from_other_connection_first(repo: UserRepository, user):
            if not interleaved:
                interleaved.append(True)
                other = self.engine.login("alice", "Wrong#pass1")
                self.assertEqual(other.error, AuthFailure.INVALID_CREDENTIALS)
            return real_update(repo, user)

        with patch.object(
            UserRepository,
            "update",
            autospec=True,
            side_effect=write_from_other_connection_first,
        ) as update:
            result = self.engine.login("alice", "Wrong#pass1")

        self.assertEqual(result.error, AuthFailure.INVALID_CREDENTIALS)
        # Interrupted write, the other connection's write, then the retry.
        self.assertEqual(update.call_count, 3)
        user = self.stored_user()
        self.assertEqual(user.failed_login_attempts, 2)
        self.assertEqual(user.version, 3)

    def test_sequential_failures_reach_lockout(self) -> None:
        for _ in range(5):
            self.engine.login("alice", "Wrong#pass1")
        self.assertEqual(self.engine.login("alice", PASSWORD).error, AuthFailure.ACCOUNT_LOCKED)
        self.assertEqual(self.stored_user().failed_login_attempts, 5)


class TestCancellation(EngineTestCase):
    def test_cancelled_before_start(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(OperationCancelled):
            self.engine.login("alice", PASSWORD, cancel=cancel)
        self.assertIsNone(self.reload_user().refresh_token)

    def test_cancelled_after_password_check_leaves_no_partial_state(self) -> None:
        cancel = threading.Event()
        real_verify = self.hasher.verify

        def verify_then_cancel(*args, **kwargs) -> bool:
            outcome = real_verify(*args, **kwargs)
            cancel.set()
            return outcome

        with patch.object(self.hasher, "verify", side_effect=verify_then_cancel):
            with self.assertRaises(OperationCancelled):
                self.engine.login("alice", "Wrong#pass1", cancel=cancel)
        self.assertEqual(self.reload_user().failed_login_attempts, 0)
        self.assertEqual(self.audit_actions(), [])

    def test_cancelled_refresh_keeps_old_token(self) -> None:
        first = self.engine.login("alice", PASSWORD)
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(OperationCancelled):
            self.engine.refresh(first.refresh_token, cancel=cancel)
        self.assertEqual(self.reload_user().refresh_token, first.refresh_token)


class TestTotpVerifier(unittest.TestCase):
    def test_bad_secret_is_rejected_not_raised(self) -> None:
        clock = FixedClock()
        self.assertFalse(TotpVerifier().verify("not base32 !!", "123456", clock.now()))

    def test_window_zero_rejects_previous_step(self) -> None:
        clock = FixedClock()
        secret = pyotp.random_base32()
        previous = pyotp.TOTP(secret).at(clock.now() - timedelta(seconds=30))
        current = pyotp.TOTP(secret).at(clock.now())
        if previous == current:
            self.skipTest("adjacent TOTP steps collided")
        self.assertFalse(TotpVerifier(valid_window=0).verify(secret, previous, clock.now()))


class TestTokenClaimsDecodeWithPyJwt(EngineTestCase):
    """Consumers decode with plain PyJWT using issuer and audience."""

    def test_decodes_with_standard_library_call(self) -> None:
        result = self.engine.login("alice", PASSWORD)
        payload = jwt.decode(
            result.access_token,
            "unit-test-signing-key-with-at-least-32-bytes",
            algorithms=["HS256"],
            audience="dvc-services",
            issuer="dvc-identity",
            options={"verify_exp": False, "verify_iat": False},
        )
        self.assertEqual(payload["username"], "alice")


if __name__ == "__main__":
    unittest.main()
