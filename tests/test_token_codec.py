"""Unit tests for the access/refresh token codec."""

import base64
import json

import pytest

from portalauth.service.tokens import (
    ACCESS,
    REFRESH,
    TokenCodec,
    TokenFailure,
    token_hash,
)

SECRET = "codec-test-secret-0123456789abcdefghijkl"


@pytest.fixture
def codec():
    return TokenCodec(SECRET, access_ttl_seconds=60, refresh_ttl_seconds=120)


def _claims():
    return {
        "userId": "u-1",
        "email": "ada@example.com",
        "name": "Ada",
        "role": "job_seeker",
        "verified": True,
    }


class TestIssue:
    def test_access_token_carries_identity_claims(self, codec):
        token = codec.issue_access(_claims())
        verification = codec.verify(token)

        assert verification.ok
        claims = verification.claims
        assert claims["type"] == ACCESS
        assert claims["userId"] == "u-1"
        assert claims["email"] == "ada@example.com"
        assert claims["exp"] - claims["iat"] == 60

    def test_refresh_token_carries_only_subject(self, codec):
        claims = codec.verify(codec.issue_refresh("u-1")).claims

        assert claims["type"] == REFRESH
        assert set(claims) == {"userId", "type", "iat", "exp", "jti"}
        assert claims["exp"] - claims["iat"] == 120

    def test_tokens_issued_together_are_distinct(self, codec):
        assert codec.issue_refresh("u-1") != codec.issue_refresh("u-1")

    def test_caller_cannot_override_standard_claims(self, codec):
        token = codec.issue_access({**_claims(), "type": REFRESH, "exp": 1})
        claims = codec.verify(token).claims

        assert claims["type"] == ACCESS
        assert claims["exp"] > 1

    def test_short_secret_is_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("too-short")

    def test_missing_secret_is_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec(None)


class TestVerify:
    def test_type_discriminator(self, codec):
        access = codec.verify(codec.issue_access(_claims()))
        refresh = codec.verify(codec.issue_refresh("u-1"))

        assert access.of_type(REFRESH) is None
        assert refresh.of_type(ACCESS) is None
        assert refresh.of_type(REFRESH)["userId"] == "u-1"

    def test_expired_token(self):
        codec = TokenCodec(SECRET, access_ttl_seconds=-5, refresh_ttl_seconds=-5)
        verification = codec.verify(codec.issue_refresh("u-1"))

        assert not verification.ok
        assert verification.failure == TokenFailure.EXPIRED

    def test_tampered_payload_fails_signature(self, codec):
        header, payload, signature = codec.issue_access(_claims()).split(".")
        data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        data["role"] = "admin"
        forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

        verification = codec.verify(f"{header}.{forged}.{signature}")
        assert verification.failure == TokenFailure.MALFORMED_SIGNATURE

    def test_other_secret_fails_signature(self, codec):
        other = TokenCodec("another-secret-0123456789abcdefghijklmn")
        verification = codec.verify(other.issue_access(_claims()))

        assert verification.failure == TokenFailure.MALFORMED_SIGNATURE

    def test_unsigned_algorithm_is_rejected(self, codec):
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
        _, payload, _ = codec.issue_access(_claims()).split(".")

        verification = codec.verify(f"{header}.{payload}.")
        assert verification.failure == TokenFailure.INVALID

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_garbage_never_raises(self, codec, token):
        verification = codec.verify(token)

        assert not verification.ok
        assert verification.failure in {TokenFailure.INVALID, TokenFailure.MALFORMED_SIGNATURE}


def test_token_hash_is_stable_hex_digest():
    assert token_hash("abc") == token_hash("abc")
    assert token_hash("abc") != token_hash("abd")
    assert len(token_hash("abc")) == 64
    assert token_hash("abc") != "abc"
