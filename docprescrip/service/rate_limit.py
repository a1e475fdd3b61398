"""Attempt counters and lockouts for the guarded auth flows.

Each guarded flow owns two keys per (identity, origin) pair::

    {flow}:attempts:{identity}:{origin}   -> failure count, TTL = window
    {flow}:lockout:{identity}:{origin}    -> "1", TTL = lockout duration

An unexpired lock always wins over the counter. ``check_and_consume`` is
called before the guarded operation and the caller then reports the outcome
with ``record_failure`` or ``record_success``.

The check and the report are separate store round trips, so concurrent
requests for the same pair can each see the pre-increment count. At most one
extra attempt per in-flight request gets through before the lock lands. The
failure increment itself (count, compare, promote to lock) is one atomic
script.

When the store cannot be reached the limiter fails open: the request is
allowed and a ``REDIS_ERROR`` event is logged. Credential checks elsewhere
fail closed; do not unify the two.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, Optional

from redis.exceptions import RedisError

from docprescrip.config import Settings
from docprescrip.logging import get_logger, sanitize_error_message

logger = get_logger(__name__)

FLOW_LOGIN = "login"
FLOW_REGISTRATION = "registration"
FLOW_FORGOT_PASSWORD = "forgot-password"
FLOW_OTP_VERIFY = "otp-verify"
FLOW_PIN = "pin"

REDIS_ERROR = "REDIS_ERROR"

STORE_ERRORS = (RedisError, OSError)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int
    window_seconds: int
    lockout_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    locked: bool = False
    degraded: bool = False


@dataclass(frozen=True)
class FailureOutcome:
    attempts: int
    remaining: Optional[int]
    locked: bool
    retry_after_seconds: Optional[int] = None


def policies_from_settings(settings: Settings) -> Dict[str, LockoutPolicy]:
    return {
        FLOW_LOGIN: LockoutPolicy(
            settings.login_max_attempts,
            settings.login_window_seconds,
            settings.login_lockout_seconds,
        ),
        FLOW_REGISTRATION: LockoutPolicy(
            settings.registration_max_attempts,
            settings.registration_window_seconds,
            settings.registration_lockout_seconds,
        ),
        FLOW_FORGOT_PASSWORD: LockoutPolicy(
            settings.forgot_password_max_attempts,
            settings.forgot_password_window_seconds,
            settings.forgot_password_lockout_seconds,
        ),
        FLOW_OTP_VERIFY: LockoutPolicy(
            settings.otp_max_attempts,
            settings.otp_window_seconds,
            settings.otp_lockout_seconds,
        ),
        # PIN lockouts are scaled per call by the progressive multiplier
        FLOW_PIN: LockoutPolicy(
            settings.pin_max_attempts,
            settings.pin_base_lockout_seconds,
            settings.pin_base_lockout_seconds,
        ),
    }


def attempts_key(flow: str, identity: str, origin: str) -> str:
    return f"{flow}:attempts:{identity}:{origin}"


def lockout_key(flow: str, identity: str, origin: str) -> str:
    return f"{flow}:lockout:{identity}:{origin}"


def _fingerprint(identity: str) -> str:
    return hashlib.sha256(identity.encode()).hexdigest()[:12]


class RateLimiter:
    """Counter + lockout primitive shared by every guarded flow."""

    def __init__(self, cache, policies: Dict[str, LockoutPolicy]):
        self.cache = cache
        self.policies = dict(policies)

    def policy(self, flow: str) -> LockoutPolicy:
        try:
            return self.policies[flow]
        except KeyError:
            raise ValueError(f"no lockout policy for flow {flow!r}") from None

    def _log_store_error(self, operation: str, flow: str, origin: str, exc: Exception) -> None:
        logger.error(
            "rate_limit_store_error",
            event_type=REDIS_ERROR,
            operation=operation,
            flow=flow,
            origin=origin,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )

    async def check_and_consume(
        self,
        flow: str,
        identity: str,
        origin: str,
        *,
        lockout_seconds: Optional[int] = None,
    ) -> RateLimitDecision:
        policy = self.policy(flow)
        lock = lockout_key(flow, identity, origin)
        try:
            retry_after = await self.cache.ttl(lock)
            if retry_after is not None:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after_seconds=retry_after,
                    locked=True,
                )
            raw = await self.cache.get(attempts_key(flow, identity, origin))
            attempts = int(raw) if raw else 0
            if attempts >= policy.max_attempts:
                duration = lockout_seconds or policy.lockout_seconds
                await self.cache.set(lock, "1", duration)
                await self.cache.delete(attempts_key(flow, identity, origin))
                logger.warning(
                    "rate_limit_lockout",
                    flow=flow,
                    origin=origin,
                    identity_hash=_fingerprint(identity),
                    lockout_seconds=duration,
                    trigger="check",
                )
                return RateLimitDecision(
                    allowed=False, remaining=0, retry_after_seconds=duration, locked=True
                )
        except STORE_ERRORS as exc:
            self._log_store_error("check", flow, origin, exc)
            return RateLimitDecision(allowed=True, degraded=True)
        return RateLimitDecision(allowed=True, remaining=policy.max_attempts - attempts)

    async def record_failure(
        self,
        flow: str,
        identity: str,
        origin: str,
        *,
        lockout_seconds: Optional[int] = None,
    ) -> FailureOutcome:
        policy = self.policy(flow)
        duration = lockout_seconds or policy.lockout_seconds
        try:
            locked, attempts = await self.cache.record_failed_attempt(
                lockout_key(flow, identity, origin),
                attempts_key(flow, identity, origin),
                max_attempts=policy.max_attempts,
                window_seconds=policy.window_seconds,
                lockout_seconds=duration,
            )
        except STORE_ERRORS as exc:
            self._log_store_error("record_failure", flow, origin, exc)
            return FailureOutcome(attempts=0, remaining=None, locked=False)
        if locked:
            if attempts >= 0:
                logger.warning(
                    "rate_limit_lockout",
                    flow=flow,
                    origin=origin,
                    identity_hash=_fingerprint(identity),
                    attempts=attempts,
                    lockout_seconds=duration,
                    trigger="failure",
                )
            return FailureOutcome(
                attempts=max(attempts, policy.max_attempts),
                remaining=0,
                locked=True,
                retry_after_seconds=duration,
            )
        return FailureOutcome(
            attempts=attempts,
            remaining=max(0, policy.max_attempts - attempts),
            locked=False,
        )

    async def record_success(self, flow: str, identity: str, origin: str) -> None:
        try:
            await self.cache.delete(
                attempts_key(flow, identity, origin),
                lockout_key(flow, identity, origin),
            )
        except STORE_ERRORS as exc:
            self._log_store_error("record_success", flow, origin, exc)
