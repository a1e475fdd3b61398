"""Site-wide PIN check with progressive lockout and security event logging.

Per client origin the gate is OPEN, RATE_LIMITED (more than the allowed
requests in the sliding window, checked first) or LOCKED (too many failed
PINs). Each lockout of an origin within the monitoring window doubles the
next lockout, up to the configured cap.

Only OPEN is returned from ``PinGate.verify``; the other states are raised
as RateLimitedError or LockedError with the state named in ``detail``.
"""

from __future__ import annotations

import hmac
import ipaddress
import json
import math
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from docprescrip.config import Settings
from docprescrip.logging import get_logger, sanitize_error_message
from docprescrip.service.errors import (
    AuthenticationError,
    LockedError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from docprescrip.service.rate_limit import FLOW_PIN, STORE_ERRORS, REDIS_ERROR, RateLimiter

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown-client"

# checked in order; x-forwarded-for contributes its first hop only
ORIGIN_HEADERS = (
    "x-vercel-forwarded-for",
    "cf-connecting-ip",
    "x-forwarded-for",
    "x-real-ip",
)

LOCKOUT_MULTIPLIERS = (1, 2, 4, 8, 16)

_PIN_PATTERN = re.compile(r"[0-9]{4,10}")
_PIN_IDENTITY = "site"

SECURITY_EVENTS_KEY = "security:events"
LOCKED_OUT_THRESHOLD = 3
RATE_LIMITED_THRESHOLD = 5


class PinState(str, Enum):
    OPEN = "OPEN"
    RATE_LIMITED = "RATE_LIMITED"
    LOCKED = "LOCKED"


class SecurityEvent(str, Enum):
    SUCCESS = "PIN_SUCCESS"
    FAILED_ATTEMPT = "FAILED_ATTEMPT"
    INVALID_FORMAT = "INVALID_FORMAT"
    RATE_LIMITED = "RATE_LIMITED"
    LOCKOUT_TRIGGERED = "LOCKOUT_TRIGGERED"
    LOCKED_ATTEMPT = "LOCKED_ATTEMPT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


@dataclass(frozen=True)
class PinOutcome:
    state: PinState
    origin: str


def _valid_ip(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    value = candidate.strip()
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def get_client_origin(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Best-effort client address for throttling.

    Proxy headers are consulted in ``ORIGIN_HEADERS`` order, then the socket
    peer. Anything that does not parse as an IP address is skipped.
    """
    for header in ORIGIN_HEADERS:
        raw = headers.get(header)
        if not raw:
            continue
        if header == "x-forwarded-for":
            raw = raw.split(",")[0]
        address = _valid_ip(raw)
        if address:
            return address
    return _valid_ip(peer) or UNKNOWN_CLIENT


def multiplier_for(prior_lockout_count: int) -> float:
    index = min(max(0, prior_lockout_count), len(LOCKOUT_MULTIPLIERS) - 1)
    return float(LOCKOUT_MULTIPLIERS[index])


def lockout_duration(prior_lockout_count: int, base_seconds: int, max_seconds: int) -> int:
    return int(min(base_seconds * multiplier_for(prior_lockout_count), max_seconds))


def format_remaining(seconds: int) -> str:
    minutes = max(1, math.ceil(seconds / 60))
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


class PinGate:
    def __init__(
        self,
        settings: Settings,
        cache,
        limiter: RateLimiter,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.limiter = limiter
        self._clock = clock

    @staticmethod
    def _history_key(origin: str) -> str:
        return f"pin:lockout-history:{origin}"

    @staticmethod
    def _count_key(origin: str, event_type: str) -> str:
        return f"security:count:{origin}:{event_type}"

    async def prior_lockouts(self, origin: str) -> int:
        try:
            raw = await self.cache.get(self._history_key(origin))
        except STORE_ERRORS as exc:
            logger.error(
                "pin_history_read_failed",
                event_type=REDIS_ERROR,
                origin=origin,
                error=sanitize_error_message(str(exc)),
            )
            return 0
        return int(raw) if raw else 0

    async def log_security_event(
        self, origin: str, event_type: SecurityEvent, details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record an event for post-hoc review and flag repeat offenders.

        Observability only: store failures are logged and never change the
        outcome of the request.
        """
        details = details or {}
        log_fn = logger.info if event_type == SecurityEvent.SUCCESS else logger.warning
        log_fn("security_event", security_event=event_type.value, origin=origin, **details)
        entry = {
            "timestamp": self._clock(),
            "origin": origin,
            "event_type": event_type.value,
            "details": details,
        }
        try:
            await self.cache.push_capped(
                SECURITY_EVENTS_KEY,
                json.dumps(entry),
                max_entries=self.settings.security_event_max_entries,
                ttl_seconds=self.settings.security_event_retention_seconds,
            )
            count = await self.cache.increment(
                self._count_key(origin, event_type.value),
                self.settings.pin_monitoring_window_seconds,
            )
        except STORE_ERRORS as exc:
            logger.error(
                "security_event_store_failed",
                event_type=REDIS_ERROR,
                origin=origin,
                error=sanitize_error_message(str(exc)),
            )
            return
        if (
            event_type == SecurityEvent.LOCKOUT_TRIGGERED and count >= LOCKED_OUT_THRESHOLD
        ) or (event_type == SecurityEvent.RATE_LIMITED and count >= RATE_LIMITED_THRESHOLD):
            logger.error(
                "suspicious_activity_detected",
                origin=origin,
                trigger=event_type.value,
                occurrences=count,
            )
            await self.log_security_event(
                origin,
                SecurityEvent.SUSPICIOUS_ACTIVITY,
                {"trigger": event_type.value, "occurrences": count},
            )

    async def recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        raw = await self.cache.list_range(SECURITY_EVENTS_KEY, 0, limit - 1)
        return [json.loads(item) for item in raw]

    async def _check_request_rate(self, origin: str) -> None:
        try:
            allowed, _, reset_after = await self.cache.check_rate_limit(
                f"pin:rate:{origin}",
                self.settings.pin_rate_limit_requests,
                self.settings.pin_rate_limit_window_seconds,
            )
        except STORE_ERRORS as exc:
            logger.error(
                "pin_rate_limit_store_error",
                event_type=REDIS_ERROR,
                origin=origin,
                error=sanitize_error_message(str(exc)),
            )
            return
        if not allowed:
            await self.log_security_event(
                origin, SecurityEvent.RATE_LIMITED, {"retry_after_seconds": reset_after}
            )
            raise RateLimitedError(
                "Too many requests. Please wait before trying again.",
                retry_after=reset_after,
                detail={"rate_limited": True, "state": PinState.RATE_LIMITED.value},
            )

    def _locked(self, retry_after: int) -> LockedError:
        return LockedError(
            f"Access temporarily locked. Try again in {format_remaining(retry_after)}.",
            retry_after=retry_after,
            detail={
                "locked_out": True,
                "remaining_time": retry_after,
                "state": PinState.LOCKED.value,
            },
        )

    async def _register_failure(
        self, origin: str, duration: int, prior: int, event: SecurityEvent
    ) -> int:
        outcome = await self.limiter.record_failure(
            FLOW_PIN, _PIN_IDENTITY, origin, lockout_seconds=duration
        )
        if outcome.locked:
            try:
                await self.cache.increment(
                    self._history_key(origin), self.settings.pin_monitoring_window_seconds
                )
            except STORE_ERRORS as exc:
                logger.error(
                    "pin_history_write_failed",
                    event_type=REDIS_ERROR,
                    origin=origin,
                    error=sanitize_error_message(str(exc)),
                )
            await self.log_security_event(
                origin,
                SecurityEvent.LOCKOUT_TRIGGERED,
                {
                    "lockout_seconds": duration,
                    "prior_lockouts": prior,
                    "multiplier": multiplier_for(prior),
                },
            )
        else:
            await self.log_security_event(
                origin, event, {"remaining_attempts": outcome.remaining}
            )
        return outcome.remaining if outcome.remaining is not None else 0

    async def verify(self, pin: Any, origin: str) -> PinOutcome:
        site_pin = self.settings.site_pin
        if not site_pin:
            await self.log_security_event(origin, SecurityEvent.CONFIGURATION_ERROR)
            raise ServerError("PIN access is not configured")

        await self._check_request_rate(origin)

        prior = await self.prior_lockouts(origin)
        duration = lockout_duration(
            prior,
            self.settings.pin_base_lockout_seconds,
            self.settings.pin_max_lockout_seconds,
        )
        decision = await self.limiter.check_and_consume(
            FLOW_PIN, _PIN_IDENTITY, origin, lockout_seconds=duration
        )
        if not decision.allowed:
            retry_after = decision.retry_after_seconds or duration
            await self.log_security_event(
                origin, SecurityEvent.LOCKED_ATTEMPT, {"remaining_time": retry_after}
            )
            raise self._locked(retry_after)

        # malformed input counts against the same attempt count as a wrong PIN
        if not isinstance(pin, str) or not _PIN_PATTERN.fullmatch(pin):
            remaining = await self._register_failure(
                origin, duration, prior, SecurityEvent.INVALID_FORMAT
            )
            message = (
                "PIN must be between 4 and 10 digits"
                if isinstance(pin, str) and pin.isascii() and pin.isdigit()
                else "Invalid PIN format"
            )
            raise ValidationError(message, detail={"remaining_attempts": remaining})

        if not hmac.compare_digest(pin.encode(), site_pin.encode()):
            remaining = await self._register_failure(
                origin, duration, prior, SecurityEvent.FAILED_ATTEMPT
            )
            message = "Invalid PIN. Please try again."
            if 0 < remaining <= 2:
                message += f" {remaining} attempt{'s' if remaining != 1 else ''} remaining."
            raise AuthenticationError(message, detail={"remaining_attempts": remaining})

        await self.limiter.record_success(FLOW_PIN, _PIN_IDENTITY, origin)
        await self.log_security_event(origin, SecurityEvent.SUCCESS)
        return PinOutcome(state=PinState.OPEN, origin=origin)
