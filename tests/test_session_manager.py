"""Unit tests for signup, email verification and sign-in.

Tests for:
- Signup role and duplicate handling
- Verification code matching, expiry and lockout
- Sign-in lockout and disabled accounts
- Anti-enumeration timing floor
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from portalauth.service.auth import RESEND_MESSAGE, SessionManager
from portalauth.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConflictError,
    InvalidOTPError,
    OTPLockedError,
    UnauthorizedError,
    ValidationError,
)
from portalauth.service.otp import hash_code
from portalauth.service.tokens import ACCESS, REFRESH, token_hash

PASSWORD = "Password123"


async def _signup(auth, email="seeker@example.com", role="job_seeker"):
    return (await auth.signup("Jane Seeker", email, PASSWORD, role)).unwrap()


async def _verified_user(auth, email_service, email="seeker@example.com"):
    await _signup(auth, email)
    return (await auth.verify_email(email, email_service.codes[email])).unwrap()


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestSignup:
    async def test_signup_creates_unverified_inactive_principal(self, auth, store, email_service):
        result = await _signup(auth, "  Seeker@Example.com ")

        assert result.email == "seeker@example.com"
        assert result.verified is False
        stored = store.get_user(result.user_id)
        assert stored.status == "inactive"
        assert stored.password_hash != PASSWORD
        assert len(email_service.codes["seeker@example.com"]) == 6

    async def test_verification_code_is_stored_hashed(self, auth, store, email_service):
        await _signup(auth)
        code = email_service.codes["seeker@example.com"]
        record = store.get_otp("seeker@example.com")

        assert record.code_hash != code
        assert record.code_hash == hash_code("seeker@example.com", code)

    async def test_duplicate_email_conflicts(self, auth):
        await _signup(auth)
        outcome = await auth.signup("Other", "SEEKER@example.com", PASSWORD, "employer")

        assert isinstance(outcome.error, ConflictError)

    async def test_admin_role_cannot_self_register(self, auth):
        outcome = await auth.signup("Mallory", "m@example.com", PASSWORD, "admin")

        assert isinstance(outcome.error, ValidationError)

    async def test_email_failure_does_not_fail_signup(self, auth, email_service, store):
        email_service.fail = True
        result = await _signup(auth)

        assert store.get_user(result.user_id) is not None
        assert store.get_otp("seeker@example.com") is not None


class TestVerifyEmail:
    async def test_correct_code_verifies_and_activates(self, auth, store, email_service):
        principal = await _verified_user(auth, email_service)

        assert principal.verified is True
        assert principal.status == "active"
        assert principal.verified_at is not None
        assert store.get_otp("seeker@example.com") is None

    async def test_code_cannot_be_replayed(self, auth, email_service):
        await _signup(auth)
        code = email_service.codes["seeker@example.com"]
        assert (await auth.verify_email("seeker@example.com", code)).ok

        outcome = await auth.verify_email("seeker@example.com", code)
        assert isinstance(outcome.error, InvalidOTPError)

    async def test_expired_code_is_rejected(self, auth, store, email_service):
        await _signup(auth)
        code = email_service.codes["seeker@example.com"]
        store.otps["seeker@example.com"].expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        outcome = await auth.verify_email("seeker@example.com", code)
        assert isinstance(outcome.error, InvalidOTPError)

    async def test_third_wrong_code_locks(self, auth, email_service):
        await _signup(auth)
        code = email_service.codes["seeker@example.com"]

        for _ in range(2):
            outcome = await auth.verify_email("seeker@example.com", _wrong(code))
            assert isinstance(outcome.error, InvalidOTPError)

        outcome = await auth.verify_email("seeker@example.com", _wrong(code))
        assert isinstance(outcome.error, OTPLockedError)
        assert outcome.error.detail["minutes_remaining"] == 15

        # even the right code is refused while locked
        outcome = await auth.verify_email("seeker@example.com", code)
        assert isinstance(outcome.error, OTPLockedError)

    async def test_lock_survives_resend(self, auth, email_service):
        await _signup(auth)
        code = email_service.codes["seeker@example.com"]
        for _ in range(3):
            await auth.verify_email("seeker@example.com", _wrong(code))

        await auth.resend_verification("seeker@example.com")
        fresh = email_service.codes["seeker@example.com"]

        outcome = await auth.verify_email("seeker@example.com", fresh)
        assert isinstance(outcome.error, OTPLockedError)

    async def test_unknown_email_gets_generic_error(self, auth):
        outcome = await auth.verify_email("nobody@example.com", "123456")

        assert isinstance(outcome.error, InvalidOTPError)


class TestResend:
    async def test_resend_replaces_code(self, auth, store, email_service):
        await _signup(auth)
        first = store.get_otp("seeker@example.com")

        outcome = await auth.resend_verification("seeker@example.com")

        assert outcome.value == RESEND_MESSAGE
        replaced = store.get_otp("seeker@example.com")
        assert replaced.id != first.id
        code = email_service.codes["seeker@example.com"]
        assert replaced.code_hash == hash_code("seeker@example.com", code)

    async def test_resend_response_is_identical_for_unknown_and_verified(self, auth, email_service):
        await _verified_user(auth, email_service)

        unknown = await auth.resend_verification("ghost@example.com")
        verified = await auth.resend_verification("seeker@example.com")

        assert unknown.value == verified.value == RESEND_MESSAGE
        assert "ghost@example.com" not in email_service.codes


class TestSignIn:
    async def test_sign_in_issues_token_pair_and_session(self, auth, runtime, email_service):
        principal = await _verified_user(auth, email_service)

        result = (await auth.sign_in("seeker@example.com", PASSWORD)).unwrap()

        assert result.verified is True
        assert result.session_established is True
        access = runtime.codec.verify(result.tokens.access_token).of_type(ACCESS)
        refresh = runtime.codec.verify(result.tokens.refresh_token).of_type(REFRESH)
        assert access["userId"] == refresh["userId"] == principal.id
        record = await runtime.sessions.load(principal.id)
        assert record.token_hash == token_hash(result.tokens.refresh_token)
        assert record.token_hash != result.tokens.refresh_token

    async def test_unverified_principal_still_signs_in(self, auth):
        await _signup(auth)

        result = (await auth.sign_in("seeker@example.com", PASSWORD)).unwrap()

        assert result.verified is False
        assert result.tokens is not None

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth, email_service):
        await _verified_user(auth, email_service)

        unknown = await auth.sign_in("ghost@example.com", PASSWORD)
        wrong = await auth.sign_in("seeker@example.com", "Password999")

        assert isinstance(unknown.error, UnauthorizedError)
        assert isinstance(wrong.error, UnauthorizedError)
        assert unknown.error.message == wrong.error.message

    async def test_fifth_failure_locks_for_fifteen_minutes(self, auth, store, email_service):
        principal = await _verified_user(auth, email_service)

        for _ in range(4):
            outcome = await auth.sign_in("seeker@example.com", "Password999")
            assert isinstance(outcome.error, UnauthorizedError)

        outcome = await auth.sign_in("seeker@example.com", "Password999")
        assert isinstance(outcome.error, AccountLockedError)
        assert outcome.error.detail["minutes_remaining"] == 15
        locked_until = store.get_user(principal.id).locked_until
        remaining = locked_until - datetime.now(timezone.utc)
        assert timedelta(minutes=14) < remaining <= timedelta(minutes=15)

        # the correct password does not bypass the lock
        outcome = await auth.sign_in("seeker@example.com", PASSWORD)
        assert isinstance(outcome.error, AccountLockedError)

    async def test_success_resets_failure_counter(self, auth, store, email_service):
        principal = await _verified_user(auth, email_service)
        for _ in range(3):
            await auth.sign_in("seeker@example.com", "Password999")

        assert (await auth.sign_in("seeker@example.com", PASSWORD)).ok
        assert store.get_user(principal.id).failed_login_attempts == 0

    async def test_expired_lock_allows_sign_in(self, auth, store, email_service):
        principal = await _verified_user(auth, email_service)
        store.users[principal.id].failed_login_attempts = 5
        store.users[principal.id].locked_until = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert (await auth.sign_in("seeker@example.com", PASSWORD)).ok

    @pytest.mark.parametrize("status", ["suspended", "deactivated"])
    async def test_blocked_status_is_refused(self, auth, store, email_service, status):
        principal = await _verified_user(auth, email_service)
        store.update_user_status(principal.id, status)

        outcome = await auth.sign_in("seeker@example.com", PASSWORD)

        assert isinstance(outcome.error, AccountDisabledError)
        assert outcome.error.detail["status"] == status
        assert outcome.error.status_code == 403

    async def test_session_write_failure_reports_no_session(self, auth, runtime, email_service):
        await _verified_user(auth, email_service)

        async def _broken_save(record):
            raise RuntimeError("cache down")

        runtime.sessions.save = _broken_save
        result = (await auth.sign_in("seeker@example.com", PASSWORD)).unwrap()

        assert result.session_established is False
        assert result.tokens is None


class TestEnumerationFloor:
    async def test_resend_takes_at_least_the_floor(self, runtime):
        manager = SessionManager(
            runtime.store,
            runtime.codec,
            runtime.sessions,
            runtime.revocations,
            runtime.hasher,
            runtime.email,
            anti_enumeration_floor_ms=200,
        )
        started = time.monotonic()
        await manager.resend_verification("ghost@example.com")
        elapsed = time.monotonic() - started

        assert elapsed >= 0.19

    async def test_unknown_email_sign_in_still_hashes(self, auth, hasher):
        calls = []
        original = hasher.dummy_verify

        async def _tracking(password):
            calls.append(password)
            await original(password)

        hasher.dummy_verify = _tracking
        await auth.sign_in("ghost@example.com", PASSWORD)

        assert calls == [PASSWORD]

    async def test_unknown_email_and_wrong_password_take_similar_time(self, auth, email_service):
        await _verified_user(auth, email_service)

        def _median(samples):
            return sorted(samples)[len(samples) // 2]

        unknown, wrong = [], []
        for _ in range(5):
            started = time.perf_counter()
            await auth.sign_in("ghost@example.com", "Password999")
            unknown.append(time.perf_counter() - started)
            started = time.perf_counter()
            await auth.sign_in("seeker@example.com", "Password999")
            wrong.append(time.perf_counter() - started)
            auth.store.reset_login_failures(
                auth.store.get_user_by_email("seeker@example.com").id
            )

        assert abs(_median(unknown) - _median(wrong)) < 0.05
