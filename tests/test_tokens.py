"""Tests for the HS256 token codec."""

import base64
import json
from datetime import timedelta

import pytest

from genesis_auth.service.tokens import (
    TokenCodec,
    TokenExpiredError,
    TokenInvalidError,
    epoch_millis,
    hash_token,
)

ACCESS_SECRET = "codec-access-secret-0123456789-abcdefghij"
REFRESH_SECRET = "codec-refresh-secret-0123456789-abcdefghij"


@pytest.fixture
def codec(clock):
    return TokenCodec(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="genesis-auth-api",
        audience="genesis-users",
        clock=clock,
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestRoundTrip:
    def test_access_round_trip(self, codec, clock):
        token, jti, expires_at = codec.sign_access("user-1", {"email": "a@example.com", "role": "admin"})
        claims = codec.verify_access(token)

        assert claims.user_id == "user-1"
        assert claims.email == "a@example.com"
        assert claims.role == "admin"
        assert claims.jti == jti
        assert claims.expires_at == expires_at
        assert expires_at == clock.now + timedelta(minutes=15)

    def test_refresh_round_trip_keeps_supplied_jti(self, codec, clock):
        token, jti, expires_at = codec.sign_refresh("user-1", jti="record-42")
        claims = codec.verify_refresh(token)

        assert jti == "record-42"
        assert claims.jti == "record-42"
        assert claims.user_id == "user-1"
        assert expires_at == clock.now + timedelta(days=7)

    def test_tokens_are_unique_per_call(self, codec):
        first, _, _ = codec.sign_refresh("user-1")
        second, _, _ = codec.sign_refresh("user-1")
        assert first != second


class TestExpiry:
    def test_expiry_boundary_is_inclusive(self, codec, clock):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})
        clock.advance(minutes=15)
        with pytest.raises(TokenExpiredError):
            codec.verify_access(token)

    def test_one_second_before_expiry_is_valid(self, codec, clock):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})
        clock.advance(minutes=15, seconds=-1)
        assert codec.verify_access(token).user_id == "user-1"

    def test_refresh_expires_after_seven_days(self, codec, clock):
        token, _, _ = codec.sign_refresh("user-1")
        clock.advance(days=7, seconds=1)
        with pytest.raises(TokenExpiredError):
            codec.verify_refresh(token)

    def test_access_issue_time_keeps_milliseconds(self, codec, clock):
        clock.advance(milliseconds=250)
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})

        claims = codec.verify_access(token)
        assert epoch_millis(claims.issued_at) == epoch_millis(clock.now)
        assert claims.issued_at.microsecond == 250_000


class TestRejection:
    def test_secrets_must_differ(self):
        with pytest.raises(ValueError):
            TokenCodec(
                access_secret=ACCESS_SECRET,
                refresh_secret=ACCESS_SECRET,
                issuer="i",
                audience="a",
            )

    def test_refresh_token_rejected_as_access(self, codec):
        token, _, _ = codec.sign_refresh("user-1")
        with pytest.raises(TokenInvalidError):
            codec.verify_access(token)

    def test_access_token_rejected_as_refresh(self, codec):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})
        with pytest.raises(TokenInvalidError):
            codec.verify_refresh(token)

    def test_tampered_payload_rejected(self, codec):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com", "role": "user"})
        header, _payload, signature = token.split(".")
        forged = _b64(
            {
                "sub": "user-1",
                "role": "admin",
                "iat": 0,
                "exp": 9999999999,
                "iss": "genesis-auth-api",
                "aud": "genesis-users",
                "jti": "x",
                "token_type": "access",
            }
        )
        with pytest.raises(TokenInvalidError):
            codec.verify_access(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, codec):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})
        _header, payload, _sig = token.split(".")
        none_header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalidError):
            codec.verify_access(f"{none_header}.{payload}.")

    def test_forged_expired_token_reports_invalid(self, codec, clock):
        token, _, _ = codec.sign_access("user-1", {"email": "a@example.com"})
        clock.advance(days=1)
        header, payload, signature = token.split(".")
        bad_signature = ("A" if signature[0] != "A" else "B") + signature[1:]
        with pytest.raises(TokenInvalidError):
            codec.verify_access(f"{header}.{payload}.{bad_signature}")

    def test_wrong_audience_rejected(self, codec, clock):
        other = TokenCodec(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            issuer="genesis-auth-api",
            audience="someone-else",
            clock=clock,
        )
        token, _, _ = other.sign_access("user-1", {"email": "a@example.com"})
        with pytest.raises(TokenInvalidError):
            codec.verify_access(token)

    @pytest.mark.parametrize(
        "garbage",
        [
            "",
            "abc",
            "a.b",
            "a.b.c.d",
            "!!!.???.***",
            "eyJhbGciOiJIUzI1NiJ9.e30.\u00e9",
            "eyJhbGciOiJIUzI1NiJ9.e\ud800.sig",
        ],
    )
    def test_malformed_tokens_rejected(self, codec, garbage):
        with pytest.raises(TokenInvalidError):
            codec.verify_access(garbage)


def test_hash_token_is_sha256_hex():
    digest = hash_token("raw-token")
    assert len(digest) == 64
    assert digest == hash_token("raw-token")
    assert digest != hash_token("raw-token2")
