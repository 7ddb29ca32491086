"""Tests for the access token codec and refresh token hashing."""

import base64
import hashlib
import json
import time

import pytest

from unityauth.config import Settings
from unityauth.service.tokens import TokenCodec, hash_refresh_token

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET)


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestAccessTokens:
    def test_issue_and_verify_round_trip(self, codec):
        token = codec.issue("f" * 64, "dk", "user-1", "alice")
        claims = codec.verify(token)

        assert claims is not None
        assert claims.sub == "f" * 64
        assert claims.territory_code == "dk"
        assert claims.user_id == "user-1"
        assert claims.username == "alice"
        assert claims.exp - claims.iat == 900

    def test_payload_carries_issuer_audience_and_type(self, codec):
        payload = _payload(codec.issue("sub", "dk", "user-1", "alice"))

        assert payload["iss"] == "unityauth"
        assert payload["aud"] == "unityplan-clients"
        assert payload["token_type"] == "access"

    def test_header_is_hs256(self, codec):
        header_segment = codec.issue("sub", "dk", "u", "a").split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_segment + "=="))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_expires_in_follows_settings(self):
        codec = TokenCodec(Settings(jwt_secret=SECRET, access_token_ttl_seconds=60))
        assert codec.expires_in == 60
        claims = codec.verify(codec.issue("sub", "dk", "u", "a"))
        assert claims.exp - claims.iat == 60

    def test_expired_token_rejected(self, codec):
        issued = int(time.time()) - 901
        assert codec.verify(codec.issue("sub", "dk", "u", "a", now=issued)) is None

    def test_leeway_tolerates_recent_expiry(self):
        codec = TokenCodec(Settings(jwt_secret=SECRET, jwt_leeway_seconds=30))
        issued = int(time.time()) - 905
        assert codec.verify(codec.issue("sub", "dk", "u", "a", now=issued)) is not None

    def test_tampered_payload_rejected(self, codec):
        header, _, signature = codec.issue("sub", "dk", "u", "alice").split(".")
        forged = _segment(
            {
                "sub": "sub",
                "territory_code": "dk",
                "user_id": "u",
                "username": "mallory",
                "iat": int(time.time()),
                "exp": int(time.time()) + 900,
                "iss": "unityauth",
                "aud": "unityplan-clients",
                "token_type": "access",
            }
        )
        assert codec.verify(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self, codec):
        other = TokenCodec(Settings(jwt_secret="another-secret-that-is-long-enough-0123"))
        assert codec.verify(other.issue("sub", "dk", "u", "a")) is None

    def test_wrong_audience_rejected(self, codec):
        other = TokenCodec(Settings(jwt_secret=SECRET, jwt_audience="someone-else"))
        assert codec.verify(other.issue("sub", "dk", "u", "a")) is None

    def test_wrong_issuer_rejected(self, codec):
        other = TokenCodec(Settings(jwt_secret=SECRET, jwt_issuer="elsewhere"))
        assert codec.verify(other.issue("sub", "dk", "u", "a")) is None

    def test_alg_none_rejected(self, codec):
        _, payload, _ = codec.issue("sub", "dk", "u", "a").split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert codec.verify(f"{header}.{payload}.") is None

    def test_non_access_token_type_rejected(self, codec):
        payload = _payload(codec.issue("sub", "dk", "u", "a"))
        payload["token_type"] = "refresh"
        token = codec._encode_jwt(payload)
        assert codec.verify(token) is None

    @pytest.mark.parametrize(
        "garbage",
        ["", "abc", "a.b", "a.b.c.d", "!!!.???.***", "eyJhbGciOiJIUzI1NiJ9.e30.ü"],
    )
    def test_garbage_rejected_without_raising(self, codec, garbage):
        assert codec.verify(garbage) is None


class TestRefreshTokens:
    def test_refresh_tokens_are_random_and_urlsafe(self, codec):
        first, second = codec.issue_refresh(), codec.issue_refresh()

        assert first != second
        assert len(first) >= 64
        assert all(c.isalnum() or c in "-_" for c in first)

    def test_hash_is_sha256_hex(self, codec):
        raw = codec.issue_refresh()
        expected = hashlib.sha256(raw.encode()).hexdigest()

        assert hash_refresh_token(raw) == expected
        assert codec.hash_refresh(raw) == expected
        assert codec.hash_refresh(raw) != raw


class TestHostileInput:
    def _raw_segment(self, raw: bytes) -> str:
        return base64.urlsafe_b64encode(raw).decode().rstrip("=")

    def test_deeply_nested_header_rejected(self, codec):
        header = self._raw_segment(b"[" * 5000)
        token = f"{header}.{_segment({})}.sig"

        assert codec.verify(token) is None

    def test_deeply_nested_payload_rejected(self, codec):
        header = _segment({"alg": "HS256", "typ": "JWT"})
        payload = self._raw_segment(b"{\"a\":" * 5000)
        signing_input = f"{header}.{payload}"
        token = f"{signing_input}.{codec._sign(signing_input)}"

        assert codec.verify(token) is None
