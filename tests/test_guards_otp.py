from datetime import datetime, timedelta, timezone

from portalauth.service.errors import minutes_until
from portalauth.service.guards import AttemptPolicy
from portalauth.service.otp import code_matches, generate_code, hash_code


class TestAttemptPolicy:
    def test_defaults(self):
        assert AttemptPolicy.login() == AttemptPolicy(5, timedelta(minutes=15))
        assert AttemptPolicy.otp() == AttemptPolicy(3, timedelta(minutes=15))

    def test_is_locked(self):
        now = datetime.now(timezone.utc)

        assert not AttemptPolicy.is_locked(None, now)
        assert AttemptPolicy.is_locked(now + timedelta(seconds=1), now)
        assert not AttemptPolicy.is_locked(now, now)
        # naive timestamps from a store are treated as UTC
        assert AttemptPolicy.is_locked((now + timedelta(minutes=1)).replace(tzinfo=None), now)

    def test_minutes_remaining_rounds_up(self):
        now = datetime.now(timezone.utc)

        assert AttemptPolicy.minutes_remaining(now + timedelta(minutes=14, seconds=1), now) == 15
        assert AttemptPolicy.minutes_remaining(now + timedelta(seconds=5), now) == 1
        assert minutes_until(0) == 1
        assert minutes_until(120) == 2


class TestOTP:
    def test_codes_are_six_digits(self):
        codes = {generate_code() for _ in range(200)}

        assert all(len(code) == 6 and code.isdigit() for code in codes)
        assert len(codes) > 150

    def test_hash_is_bound_to_email(self):
        digest = hash_code("ada@example.com", "123456")

        assert code_matches(digest, "ADA@example.com ", "123456")
        assert not code_matches(digest, "bob@example.com", "123456")
        assert not code_matches(digest, "ada@example.com", "123457")
