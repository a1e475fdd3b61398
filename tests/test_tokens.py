"""Tests for JWT signing and the refresh-token revocation markers."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docprescrip.config import Settings
from docprescrip.service.errors import AuthenticationError, ConfigurationError, ServerError
from docprescrip.service.tokens import (
    TokenIssuer,
    decode_jwt,
    encode_jwt,
    refresh_marker_key,
)
from docprescrip.storage.memory_cache import MemoryCache
from docprescrip.storage.models import Doctor


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def issuer(settings, cache, clock):
    return TokenIssuer(settings, cache, clock=clock)


@pytest.fixture
def doctor():
    return Doctor(id="dr_test", email="house@ppth.org", name="Gregory House")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestJwtCodec:
    def test_round_trip_claims(self):
        payload = {"iss": "i", "aud": "a", "sub": "x", "exp": 2_000_000_000}
        token = encode_jwt(payload, "k")
        assert decode_jwt(token, "k", issuer="i", audience="a", now=1_000) == payload

    def test_wrong_secret_rejected(self):
        token = encode_jwt({"iss": "i", "aud": "a", "exp": 2_000_000_000}, "k")
        assert decode_jwt(token, "other", issuer="i", audience="a", now=1_000) is None

    def test_expired_token_rejected(self):
        token = encode_jwt({"iss": "i", "aud": "a", "exp": 1_000}, "k")
        assert decode_jwt(token, "k", issuer="i", audience="a", now=1_000) is None

    def test_wrong_audience_rejected(self):
        token = encode_jwt({"iss": "i", "aud": "b", "exp": 2_000_000_000}, "k")
        assert decode_jwt(token, "k", issuer="i", audience="a", now=1_000) is None

    def test_algorithm_none_rejected(self):
        header = _b64({"alg": "none", "typ": "JWT"})
        body = _b64({"iss": "i", "aud": "a", "exp": 2_000_000_000})
        assert decode_jwt(f"{header}.{body}.", "k", issuer="i", audience="a") is None

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c", None])
    def test_malformed_tokens_return_none(self, token):
        assert decode_jwt(token, "k", issuer="i", audience="a") is None

    @pytest.mark.parametrize("signature", ["\xe9", "abc\u2603", "\U0001f600"])
    def test_non_ascii_signature_returns_none(self, signature):
        header = _b64({"alg": "HS256"})
        token = f"{header}.e30.{signature}"
        assert decode_jwt(token, "k", issuer="i", audience="a") is None


class TestTokenIssuer:
    def test_missing_secret_is_fatal(self, cache):
        with pytest.raises(ConfigurationError):
            TokenIssuer(Settings(jwt_secret=None), cache)

    def test_access_token_carries_identity(self, issuer, doctor):
        claims = issuer.validate_access_token(issuer.issue_access_token(doctor))
        assert claims["sub"] == "dr_test"
        assert claims["email"] == "house@ppth.org"
        assert claims["role"] == "doctor"
        assert claims["exp"] - claims["iat"] == 900

    def test_access_token_expires(self, issuer, doctor, clock):
        token = issuer.issue_access_token(doctor)
        clock.advance(901)
        assert issuer.validate_access_token(token) is None

    async def test_refresh_token_is_not_an_access_token(self, issuer, doctor):
        refresh = await issuer.issue_refresh_token(doctor.id)
        assert issuer.validate_access_token(refresh) is None

    async def test_issue_refresh_writes_marker(self, issuer, cache, doctor):
        refresh = await issuer.issue_refresh_token(doctor.id)
        assert await cache.get(refresh_marker_key(doctor.id, refresh)) == "valid"
        assert await cache.ttl(refresh_marker_key(doctor.id, refresh)) == 30 * 24 * 3600

    async def test_revoked_refresh_token_is_rejected(self, issuer, doctor):
        refresh = await issuer.issue_refresh_token(doctor.id)
        await issuer.revoke(doctor.id, refresh)

        assert await issuer.validate_refresh_token(refresh) is None
        with pytest.raises(AuthenticationError):
            await issuer.rotate_refresh_token(refresh)

    async def test_revoke_is_idempotent(self, issuer, doctor):
        refresh = await issuer.issue_refresh_token(doctor.id)
        await issuer.revoke(doctor.id, refresh)
        await issuer.revoke(doctor.id, refresh)

    async def test_rotation_consumes_old_token(self, issuer, cache, doctor):
        refresh = await issuer.issue_refresh_token(doctor.id)
        doctor_id, new_refresh = await issuer.rotate_refresh_token(refresh)

        assert doctor_id == doctor.id
        assert new_refresh != refresh
        assert not await cache.exists(refresh_marker_key(doctor.id, refresh))
        assert await cache.exists(refresh_marker_key(doctor.id, new_refresh))
        with pytest.raises(AuthenticationError):
            await issuer.rotate_refresh_token(refresh)

    async def test_marker_check_fails_closed(self, settings, doctor):
        cache = MagicMock()
        cache.set = AsyncMock()
        cache.exists = AsyncMock(side_effect=RedisConnectionError("down"))
        issuer = TokenIssuer(settings, cache)
        refresh = await issuer.issue_refresh_token(doctor.id)

        with pytest.raises(ServerError):
            await issuer.validate_refresh_token(refresh)

    async def test_marker_write_failure_still_returns_token(self, settings, doctor):
        cache = MagicMock()
        cache.set = AsyncMock(side_effect=RedisConnectionError("down"))
        issuer = TokenIssuer(settings, cache)
        assert await issuer.issue_refresh_token(doctor.id)

    def test_federated_session_round_trip(self, issuer):
        doctor = Doctor(id="dr_g", email="g@ppth.org", google_id="1234", is_federated=True)
        claims = issuer.validate_federated_session(issuer.issue_federated_session(doctor))
        assert claims["sub"] == "dr_g"
        assert claims["google_id"] == "1234"
        assert claims["role"] == "doctor"

    def test_federated_session_is_not_an_access_token(self, issuer, doctor):
        session = issuer.issue_federated_session(doctor)
        assert issuer.validate_access_token(session) is None
        assert issuer.validate_federated_session(issuer.issue_access_token(doctor)) is None
