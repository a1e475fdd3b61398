"""Per-request identity resolution and page routing.

Two credential schemes coexist: a Google-backed federated session cookie and
the first-party access-token cookie. Each is wrapped in an
``IdentityStrategy``; ``SessionResolver`` tries them in order and the first
that yields an identity wins. Resolution only reads cookies and validates
signatures, it never writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from docprescrip.api.cookies import ACCESS_COOKIE, SESSION_COOKIE
from docprescrip.logging import get_logger
from docprescrip.service.tokens import TokenIssuer

logger = get_logger(__name__)

DOCTOR_ID_HEADER = "x-doctor-id"

LOGIN_PATH = "/login"
HOME_PATH = "/"
LEGACY_PIN_PATH = "/pin-entry"

PUBLIC_PATHS = frozenset(
    {"/terms", "/privacy", "/terms.html", "/privacy.html", "/favicon.ico", "/healthz"}
)
PUBLIC_PREFIXES = ("/static/",)
AUTH_API_PREFIXES = ("/api/auth", "/api/logout", "/api/verify-pin")


@dataclass(frozen=True)
class Identity:
    doctor_id: str
    role: str = "doctor"
    email: Optional[str] = None
    source: str = "bearer"


class IdentityStrategy(Protocol):
    name: str

    def resolve(self, cookies: Mapping[str, str]) -> Optional[Identity]: ...


class FederatedSessionStrategy:
    """Google sign-in session; must carry both a subject and a role."""

    name = "federated"

    def __init__(self, issuer: TokenIssuer, cookie_name: str = SESSION_COOKIE) -> None:
        self.issuer = issuer
        self.cookie_name = cookie_name

    def resolve(self, cookies: Mapping[str, str]) -> Optional[Identity]:
        claims = self.issuer.validate_federated_session(cookies.get(self.cookie_name))
        if not claims or not claims.get("sub") or not claims.get("role"):
            return None
        return Identity(
            doctor_id=claims["sub"],
            role=claims["role"],
            email=claims.get("email"),
            source=self.name,
        )


class BearerTokenStrategy:
    name = "bearer"

    def __init__(self, issuer: TokenIssuer, cookie_name: str = ACCESS_COOKIE) -> None:
        self.issuer = issuer
        self.cookie_name = cookie_name

    def resolve(self, cookies: Mapping[str, str]) -> Optional[Identity]:
        claims = self.issuer.validate_access_token(cookies.get(self.cookie_name))
        if not claims:
            return None
        return Identity(
            doctor_id=claims["sub"],
            role=claims.get("role") or "doctor",
            email=claims.get("email"),
            source=self.name,
        )


class SessionResolver:
    def __init__(self, strategies: Sequence[IdentityStrategy]) -> None:
        self.strategies = list(strategies)

    @classmethod
    def default(cls, issuer: TokenIssuer) -> "SessionResolver":
        return cls([FederatedSessionStrategy(issuer), BearerTokenStrategy(issuer)])

    def resolve(self, cookies: Mapping[str, str]) -> Optional[Identity]:
        for strategy in self.strategies:
            identity = strategy.resolve(cookies)
            if identity:
                return identity
        return None


class RouteAction(str, Enum):
    PASS = "pass"
    REDIRECT = "redirect"
    FORWARD = "forward"


@dataclass(frozen=True)
class RouteDecision:
    action: RouteAction
    location: Optional[str] = None
    doctor_id: Optional[str] = None


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def _matches_prefix(path: str, prefixes: Iterable[str]) -> bool:
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def route_request(path: str, identity: Optional[Identity]) -> RouteDecision:
    """Decide what the middleware does with a request for ``path``."""
    if is_public_path(path):
        return RouteDecision(RouteAction.PASS)
    if path == LOGIN_PATH:
        if identity:
            return RouteDecision(RouteAction.REDIRECT, location=HOME_PATH)
        return RouteDecision(RouteAction.PASS)
    if path == LEGACY_PIN_PATH:
        return RouteDecision(RouteAction.REDIRECT, location=LOGIN_PATH)
    if _matches_prefix(path, AUTH_API_PREFIXES):
        # these endpoints perform their own checks
        return RouteDecision(RouteAction.PASS)
    if not identity:
        return RouteDecision(RouteAction.REDIRECT, location=LOGIN_PATH)
    return RouteDecision(RouteAction.FORWARD, doctor_id=identity.doctor_id)
