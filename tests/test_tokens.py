"""Tests for JWT issuance/validation and bearer header parsing."""

import base64
import json
import re
import time
from datetime import datetime, timezone

import pytest

from authkernel.service.errors import (
    InvalidTokenFormatError,
    TokenExpiredError,
    TokenInvalidError,
)
from authkernel.service.tokens import TokenAuthority, extract_bearer_token

ACCESS_SECRET = "access-secret-for-tests"
REFRESH_SECRET = "refresh-secret-for-tests"


def _authority(**overrides) -> TokenAuthority:
    kwargs = {"issuer": "auth-service", "audience": "social-network"}
    kwargs.update(overrides)
    access = kwargs.pop("access_secret", ACCESS_SECRET)
    refresh = kwargs.pop("refresh_secret", REFRESH_SECRET)
    return TokenAuthority(access, refresh, **kwargs)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


@pytest.fixture
def authority():
    return _authority()


class TestAccessTokens:
    def test_round_trip(self, authority):
        """Validated claims carry back exactly what was issued."""
        token = authority.issue_access("u1", "a@example.com", "alice", ["user", "admin"], 900)
        claims = authority.validate_access(token)

        assert claims.user_id == "u1"
        assert claims.email == "a@example.com"
        assert claims.username == "alice"
        assert claims.roles == ["user", "admin"]
        assert claims.issuer == "auth-service"
        assert claims.audience == ["social-network"]
        assert claims.subject == "u1"
        assert claims.expires_at - claims.issued_at == 900
        assert claims.not_before == claims.issued_at

    def test_registered_claims_shape(self, authority):
        payload = _payload(authority.issue_access("u1", "a@example.com", "alice", [], 60))

        assert payload["iss"] == "auth-service"
        assert payload["aud"] == ["social-network"]
        assert payload["token_type"] == "access"
        assert re.fullmatch(r"[0-9a-f-]{36}", payload["jti"])

    def test_token_ids_are_unique(self, authority):
        first = authority.validate_access(authority.issue_access("u1", "a@x.io", "a", [], 60))
        second = authority.validate_access(authority.issue_access("u1", "a@x.io", "a", [], 60))
        assert first.token_id != second.token_id

    def test_empty_roles_round_trip(self, authority):
        claims = authority.validate_access(authority.issue_access("u1", "a@x.io", "a", [], 60))
        assert claims.roles == []

    def test_non_positive_ttl_rejected(self, authority):
        with pytest.raises(ValueError):
            authority.issue_access("u1", "a@x.io", "a", [], 0)
        with pytest.raises(ValueError):
            authority.issue_refresh("u1", -5)

    def test_token_expiration(self, authority):
        authority.clock.frozen = 1_700_000_000
        token = authority.issue_access("u1", "a@x.io", "a", [], 900)
        assert authority.token_expiration(token) == datetime.fromtimestamp(
            1_700_000_900, tz=timezone.utc
        )


class TestRefreshTokens:
    def test_round_trip(self, authority):
        claims = authority.validate_refresh(authority.issue_refresh("u1", 3600))
        assert claims.user_id == "u1"
        assert claims.subject == "u1"
        assert claims.expires_at - claims.issued_at == 3600

    def test_access_token_is_not_a_refresh_token(self, authority):
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        with pytest.raises(TokenInvalidError):
            authority.validate_refresh(token)

    def test_refresh_token_is_not_an_access_token(self, authority):
        token = authority.issue_refresh("u1", 60)
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)

    def test_generate_refresh_token(self):
        first = TokenAuthority.generate_refresh_token()
        second = TokenAuthority.generate_refresh_token()
        assert re.fullmatch(r"[0-9a-f]{64}", first)
        assert first != second


class TestRejection:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c", "a.b.c.d"])
    def test_garbage_rejected(self, authority, token):
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)

    def test_tampered_payload_rejected(self, authority):
        token = authority.issue_access("u1", "a@x.io", "a", ["user"], 60)
        header, _, signature = token.split(".")
        payload = _payload(token)
        payload["roles"] = ["admin"]
        with pytest.raises(TokenInvalidError):
            authority.validate_access(f"{header}.{_segment(payload)}.{signature}")

    def test_tampered_signature_rejected(self, authority):
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        head, _, signature = token.rpartition(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        with pytest.raises(TokenInvalidError):
            authority.validate_access(f"{head}.{flipped}")

    def test_non_ascii_signature_rejected(self, authority):
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        head, _, _ = token.rpartition(".")
        with pytest.raises(TokenInvalidError):
            authority.validate_access(f"{head}.été")

    @pytest.mark.parametrize("alg", ["none", "HS512", "RS256"])
    def test_other_algorithms_rejected(self, authority, alg):
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        _, payload, signature = token.split(".")
        header = _segment({"alg": alg, "typ": "JWT"})
        with pytest.raises(TokenInvalidError):
            authority.validate_access(f"{header}.{payload}.{signature}")
        with pytest.raises(TokenInvalidError):
            authority.validate_access(f"{header}.{payload}.")

    def test_other_secret_rejected(self, authority):
        other = _authority(access_secret="different-access-secret")
        token = other.issue_access("u1", "a@x.io", "a", [], 60)
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)

    def test_wrong_issuer_rejected(self, authority):
        token = _authority(issuer="someone-else").issue_access("u1", "a@x.io", "a", [], 60)
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)

    def test_wrong_audience_rejected(self, authority):
        token = _authority(audience="another-app").issue_access("u1", "a@x.io", "a", [], 60)
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)


class TestExpiry:
    def test_valid_until_one_second_before_expiry(self, authority):
        authority.clock.frozen = 1_700_000_000
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        authority.clock.frozen = 1_700_000_059
        assert authority.validate_access(token).user_id == "u1"

    def test_expired_at_exact_expiry(self, authority):
        """A token is expired from the instant ``exp`` is reached."""
        authority.clock.frozen = 1_700_000_000
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        authority.clock.frozen = 1_700_000_060
        with pytest.raises(TokenExpiredError):
            authority.validate_access(token)

    def test_expired_refresh_token(self, authority):
        authority.clock.frozen = 1_700_000_000
        token = authority.issue_refresh("u1", 60)
        authority.clock.frozen = 1_700_001_000
        with pytest.raises(TokenExpiredError):
            authority.validate_refresh(token)

    def test_leeway_tolerates_skew(self):
        authority = _authority(leeway_seconds=5)
        authority.clock.frozen = 1_700_000_000
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        authority.clock.frozen = 1_700_000_064
        assert authority.validate_access(token).user_id == "u1"
        authority.clock.frozen = 1_700_000_065
        with pytest.raises(TokenExpiredError):
            authority.validate_access(token)

    def test_not_yet_valid_rejected(self, authority):
        authority.clock.frozen = time.time() + 3600
        token = authority.issue_access("u1", "a@x.io", "a", [], 60)
        authority.clock.frozen = None
        with pytest.raises(TokenInvalidError):
            authority.validate_access(token)


class TestConstruction:
    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenAuthority("", REFRESH_SECRET, issuer="i", audience="a")


class TestBearerExtraction:
    def test_extracts_token(self):
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "Bearer",
            "Bearer ",
            "bearer abc",
            "BEARER abc",
            "Basic abc",
            "Bearer  abc",
            "Bearer abc\tdef",
            "Bearer abc\n",
            "Bearer\tabc",
            "Bearer abc def",
            "abc",
        ],
    )
    def test_malformed_headers_rejected(self, header):
        with pytest.raises(InvalidTokenFormatError):
            extract_bearer_token(header)
