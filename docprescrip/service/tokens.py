from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional, Tuple

from docprescrip.config import Settings
from docprescrip.logging import get_logger, sanitize_error_message
from docprescrip.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ServerError,
)
from docprescrip.service.rate_limit import STORE_ERRORS
from docprescrip.storage.models import Doctor

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_SESSION = "session"
REFRESH_MARKER_VALUE = "valid"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
    payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def decode_jwt(
    token: str,
    secret: str,
    *,
    issuer: str,
    audience: str,
    now: Optional[float] = None,
    leeway_seconds: float = 0.0,
) -> Optional[dict[str, Any]]:
    """Verify an HS256 token and return its claims, or None on any failure."""
    if not token or not isinstance(token, str):
        return None
    # compare_digest refuses non-ASCII str; a valid token is always ASCII
    if not token.isascii():
        return None
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        return None

    # reject anything but HS256 to avoid algorithm confusion
    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError):
        logger.warning("jwt_header_decode_failed")
        return None
    alg = header.get("alg") if isinstance(header, dict) else None
    if alg != "HS256":
        logger.warning("jwt_invalid_algorithm", alg=alg)
        return None

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig, sig_b64):
        return None
    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        logger.warning("jwt_payload_decode_failed", error=str(exc))
        return None
    if not isinstance(payload, dict):
        return None
    if payload.get("iss") != issuer:
        return None
    aud = payload.get("aud")
    if isinstance(aud, str):
        valid_aud = aud == audience
    elif isinstance(aud, list):
        valid_aud = audience in aud
    else:
        valid_aud = False
    if not valid_aud:
        return None
    try:
        exp_ts = float(payload.get("exp"))
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    if exp_ts <= current - leeway_seconds:
        return None
    return payload


def refresh_marker_key(doctor_id: str, refresh_token: str) -> str:
    return f"refresh:{doctor_id}:{refresh_token}"


class TokenIssuer:
    """Mints access/refresh tokens and owns the refresh revocation markers.

    The signed refresh token alone is not enough: it is only honoured while
    ``refresh:{doctor_id}:{token}`` exists in the cache. Logout and rotation
    delete the marker, which revokes the token before its ``exp``.
    """

    def __init__(
        self,
        settings: Settings,
        cache,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not settings.jwt_secret:
            raise ConfigurationError(
                "JWT_SECRET is not configured; refusing to start without a signing secret"
            )
        self.settings = settings
        self.cache = cache
        self._secret = settings.jwt_secret
        self._clock = clock

    def _base_claims(self, subject: str, token_type: str, ttl_seconds: int) -> dict[str, Any]:
        now = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_seconds,
        }

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        return decode_jwt(
            token,
            self._secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            now=self._clock(),
        )

    def issue_access_token(self, doctor: Doctor) -> str:
        payload = self._base_claims(
            doctor.id, TOKEN_TYPE_ACCESS, self.settings.access_token_ttl_seconds
        )
        payload.update(
            {
                "email": doctor.email,
                "name": doctor.name,
                "role": doctor.access_type or "doctor",
            }
        )
        return encode_jwt(payload, self._secret)

    async def issue_refresh_token(self, doctor_id: str) -> str:
        ttl = self.settings.refresh_token_ttl_seconds
        token = encode_jwt(
            self._base_claims(doctor_id, TOKEN_TYPE_REFRESH, ttl), self._secret
        )
        try:
            await self.cache.set(
                refresh_marker_key(doctor_id, token), REFRESH_MARKER_VALUE, ttl
            )
        except STORE_ERRORS as exc:
            # token is still returned; without a marker it simply cannot be used
            logger.error(
                "refresh_marker_write_failed",
                doctor_id=doctor_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
        return token

    async def issue_pair(self, doctor: Doctor) -> dict[str, str]:
        return {
            "access_token": self.issue_access_token(doctor),
            "refresh_token": await self.issue_refresh_token(doctor.id),
        }

    async def revoke(self, doctor_id: str, refresh_token: str) -> None:
        """Delete the refresh marker. Safe to call for absent markers."""
        try:
            await self.cache.delete(refresh_marker_key(doctor_id, refresh_token))
        except STORE_ERRORS as exc:
            logger.warning(
                "refresh_revoke_failed",
                doctor_id=doctor_id,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    def validate_access_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        try:
            claims = self._decode(token) if token else None
        except Exception as exc:
            logger.warning("access_token_validation_error", error_type=type(exc).__name__)
            return None
        if not claims or claims.get("token_type") != TOKEN_TYPE_ACCESS:
            return None
        if not claims.get("sub"):
            return None
        return claims

    def decode_refresh_claims(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Signature/claim check only; says nothing about revocation."""
        claims = self._decode(token) if token else None
        if not claims or claims.get("token_type") != TOKEN_TYPE_REFRESH:
            return None
        if not claims.get("sub"):
            return None
        return claims

    async def validate_refresh_token(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        claims = self.decode_refresh_claims(token)
        if not claims:
            return None
        try:
            present = await self.cache.exists(refresh_marker_key(claims["sub"], token))
        except STORE_ERRORS as exc:
            # an unverifiable refresh token is never honoured
            logger.error(
                "refresh_marker_check_failed",
                doctor_id=claims["sub"],
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServerError("unable to verify session, please sign in again") from exc
        if not present:
            logger.info("refresh_token_revoked_or_unknown", doctor_id=claims["sub"])
            return None
        return claims

    async def rotate_refresh_token(self, token: Optional[str]) -> Tuple[str, str]:
        """Consume a valid refresh token and return (doctor_id, new_refresh_token)."""
        claims = await self.validate_refresh_token(token)
        if not claims:
            raise AuthenticationError("invalid or expired refresh token")
        doctor_id = claims["sub"]
        try:
            removed = await self.cache.delete(refresh_marker_key(doctor_id, token))
        except STORE_ERRORS as exc:
            raise ServerError("unable to refresh session") from exc
        if not removed:
            # lost a race with a concurrent rotation or logout
            raise AuthenticationError("invalid or expired refresh token")
        return doctor_id, await self.issue_refresh_token(doctor_id)

    def issue_federated_session(self, doctor: Doctor) -> str:
        """Session token for Google sign-ins, signed with the federated secret."""
        payload = self._base_claims(
            doctor.id, TOKEN_TYPE_SESSION, self.settings.federated_session_ttl_seconds
        )
        payload.update(
            {
                "email": doctor.email,
                "role": doctor.access_type or "doctor",
                "google_id": doctor.google_id,
                "provider": "google",
            }
        )
        return encode_jwt(payload, self._federated_secret)

    @property
    def _federated_secret(self) -> str:
        return self.settings.federated_session_secret or self._secret

    def validate_federated_session(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        try:
            claims = (
                decode_jwt(
                    token,
                    self._federated_secret,
                    issuer=self.settings.jwt_issuer,
                    audience=self.settings.jwt_audience,
                    now=self._clock(),
                )
                if token
                else None
            )
        except Exception as exc:
            logger.warning("federated_session_validation_error", error_type=type(exc).__name__)
            return None
        if not claims or claims.get("token_type") != TOKEN_TYPE_SESSION:
            return None
        return claims
