from __future__ import annotations

import asyncio
import hmac
import re
import secrets
import string
import uuid
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlencode, urlparse

import httpx
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from docprescrip.config import Settings
from docprescrip.logging import get_logger, sanitize_error_message
from docprescrip.service.email import EmailService
from docprescrip.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from docprescrip.service.pin_gate import format_remaining
from docprescrip.service.rate_limit import (
    FLOW_FORGOT_PASSWORD,
    FLOW_LOGIN,
    FLOW_OTP_VERIFY,
    FLOW_REGISTRATION,
    STORE_ERRORS,
    RateLimiter,
)
from docprescrip.service.tokens import TokenIssuer
from docprescrip.storage.errors import ConstraintViolation
from docprescrip.storage.models import AccessKey, Doctor, new_doctor_id

logger = get_logger(__name__)

GOOGLE_OAUTH = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}
OAUTH_STATE_TTL_SECONDS = 600
OTP_VERIFIED_TTL_SECONDS = 30 * 60

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9]{10,15}$")
OTP_RE = re.compile(r"[0-9]{6}")
_SPECIAL_CHARS = "!@#$%^&*()_-+=[]{};':\",.<>/?\\|`~"
_GENERATED_PASSWORD_SYMBOLS = "!@#$%^&*"

REGISTRATION_REQUIRED_FIELDS = (
    "name",
    "email",
    "password",
    "hospital_name",
    "degree",
    "registration_number",
)


class AuthStore(Protocol):
    def find_by_email(self, email: str) -> Optional[Doctor]: ...

    def find_by_id(self, doctor_id: str) -> Optional[Doctor]: ...

    def find_by_phone(self, phone: str) -> Optional[Doctor]: ...

    def create_account(self, fields: Dict[str, Any]) -> Doctor: ...

    def update_fields(self, doctor_id: str, partial: Dict[str, Any]) -> Optional[Doctor]: ...

    def create_access_key(self, key: str) -> AccessKey: ...

    def get_access_key(self, key: str) -> Optional[AccessKey]: ...

    def consume_access_key(self, key: str, doctor_id: str) -> bool: ...

    def release_access_key(self, key: str, doctor_id: str) -> bool: ...


def password_strength_error(password: str) -> Optional[str]:
    if not password or len(password) < 8:
        return "Password must be at least 8 characters long"
    if not (
        any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
        and any(c in _SPECIAL_CHARS for c in password)
    ):
        return "Password must include uppercase, lowercase, number, and special character"
    return None


def generate_password(length: int = 12) -> str:
    """Random password with at least one character from every class."""
    classes = [
        string.ascii_uppercase,
        string.ascii_lowercase,
        string.digits,
        _GENERATED_PASSWORD_SYMBOLS,
    ]
    alphabet = "".join(classes)
    chars = [secrets.choice(group) for group in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_access_key_value() -> str:
    raw = secrets.token_hex(6).upper()
    return f"DP-{raw[:4]}-{raw[4:8]}-{raw[8:]}"


def otp_key(email: str) -> str:
    return f"otp:email:{email}"


def otp_verified_key(email: str) -> str:
    return f"otp:verified:{email}"


class AuthService:
    """Credential flows for doctors: password login, registration, recovery,
    email OTP, registration access keys and Google sign-in.

    Every guarded flow consults the rate limiter before touching the
    credential store and reports the outcome afterwards. Failures of the
    credential store are fatal to the request (generic 500); failures of the
    rate-limit store are not.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        limiter: RateLimiter,
        email: EmailService,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.limiter = limiter
        self.email = email
        self._http_transport = http_transport
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # ------------------------------------------------------------------
    # helpers

    def _store_call(self, operation: str, fn, *args):
        try:
            return fn(*args)
        except (ConstraintViolation, ServiceError):
            raise
        except Exception as exc:
            self.logger.error(
                "credential_store_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise ServerError("internal server error") from exc

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, doctor: Doctor, password: str) -> bool:
        if not doctor.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(doctor.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def _guard(self, flow: str, identity: str, origin: str) -> None:
        decision = await self.limiter.check_and_consume(flow, identity, origin)
        if not decision.allowed:
            retry_after = decision.retry_after_seconds or self.limiter.policy(flow).lockout_seconds
            raise RateLimitedError(
                f"Too many failed attempts. Try again in {format_remaining(retry_after)}.",
                retry_after=retry_after,
                detail={"locked": decision.locked},
            )

    async def _fail(
        self, flow: str, identity: str, origin: str, error: ServiceError
    ) -> ServiceError:
        """Count a failed attempt and return ``error`` annotated for the client."""
        outcome = await self.limiter.record_failure(flow, identity, origin)
        if outcome.remaining is not None:
            error.detail.setdefault("remaining_attempts", outcome.remaining)
        return error

    # ------------------------------------------------------------------
    # password login

    async def login(self, email: str, password: str, origin: str) -> Tuple[Doctor, dict]:
        email = (email or "").strip()
        await self._guard(FLOW_LOGIN, email, origin)

        if not EMAIL_RE.match(email) or not password:
            raise await self._fail(
                FLOW_LOGIN, email, origin, ValidationError("Invalid email or password format")
            )

        doctor = self._store_call("find_by_email", self.store.find_by_email, email)
        if not doctor or not self.verify_password(doctor, password):
            error = AuthenticationError("Invalid email or password")
            outcome = await self.limiter.record_failure(FLOW_LOGIN, email, origin)
            if outcome.remaining is not None:
                error.detail["remaining_attempts"] = outcome.remaining
                if 0 < outcome.remaining <= 2:
                    plural = "s" if outcome.remaining != 1 else ""
                    error.message += f". {outcome.remaining} attempt{plural} remaining."
            self.logger.warning("login_failed", origin=origin, remaining=outcome.remaining)
            raise error

        await self.limiter.record_success(FLOW_LOGIN, email, origin)
        if not doctor.is_active:
            raise ForbiddenError("Account is inactive. Please contact support.")
        tokens = await self.tokens.issue_pair(doctor)
        self.logger.info("login_success", doctor_id=doctor.id, origin=origin)
        return doctor, tokens

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[Doctor, dict]:
        doctor_id, new_refresh = await self.tokens.rotate_refresh_token(refresh_token)
        doctor = self._store_call("find_by_id", self.store.find_by_id, doctor_id)
        if not doctor or not doctor.is_active:
            await self.tokens.revoke(doctor_id, new_refresh)
            raise AuthenticationError("invalid or expired refresh token")
        return doctor, {
            "access_token": self.tokens.issue_access_token(doctor),
            "refresh_token": new_refresh,
        }

    async def logout(self, refresh_token: Optional[str]) -> None:
        """Best-effort revocation; logout itself never fails."""
        try:
            claims = self.tokens.decode_refresh_claims(refresh_token)
        except Exception as exc:
            self.logger.warning("logout_token_decode_failed", error_type=type(exc).__name__)
            return
        if claims:
            await self.tokens.revoke(claims["sub"], refresh_token)
            self.logger.info("logout_refresh_revoked", doctor_id=claims["sub"])

    # ------------------------------------------------------------------
    # registration

    def _validate_registration(self, fields: Dict[str, Any]) -> Optional[str]:
        missing = [f for f in REGISTRATION_REQUIRED_FIELDS if not str(fields.get(f) or "").strip()]
        if missing:
            return "All required fields must be provided"
        if not EMAIL_RE.match(fields["email"]):
            return "Invalid email format"
        phone = fields.get("phone")
        if phone and not PHONE_RE.match(phone):
            return "Invalid phone number"
        return password_strength_error(fields["password"])

    def _access_key_usable(self, key: Optional[str]) -> bool:
        if not key or not key.strip():
            return False
        record = self._store_call("get_access_key", self.store.get_access_key, key.strip())
        return bool(record and not record.is_used)

    async def _email_verified(self, email: str) -> bool:
        try:
            return bool(await self.cache.get(otp_verified_key(email)))
        except STORE_ERRORS as exc:
            self.logger.error(
                "otp_verified_check_failed", error=sanitize_error_message(str(exc))
            )
            raise ServerError("unable to verify email, please try again") from exc

    def _release_access_key(self, key: str, doctor_id: str) -> None:
        try:
            self._store_call(
                "release_access_key", self.store.release_access_key, key, doctor_id
            )
        except ServerError:
            self.logger.warning("access_key_release_failed", doctor_id=doctor_id)

    async def register(self, fields: Dict[str, Any], origin: str) -> Doctor:
        fields = {k: v.strip() if isinstance(v, str) and k != "password" else v for k, v in fields.items()}
        email = fields.get("email") or ""
        await self._guard(FLOW_REGISTRATION, email, origin)

        problem = self._validate_registration(fields)
        if problem:
            raise await self._fail(FLOW_REGISTRATION, email, origin, ValidationError(problem))

        access_key = fields.get("access_key")
        if self.settings.require_access_key and not self._access_key_usable(access_key):
            raise await self._fail(
                FLOW_REGISTRATION,
                email,
                origin,
                ForbiddenError("Access key is invalid or already used"),
            )
        if self.settings.require_email_verification and not await self._email_verified(email):
            raise await self._fail(
                FLOW_REGISTRATION,
                email,
                origin,
                ForbiddenError("Email address has not been verified"),
            )

        # duplicates are rejected before any hashing work
        if self._store_call("find_by_email", self.store.find_by_email, email):
            raise await self._fail(
                FLOW_REGISTRATION,
                email,
                origin,
                ConflictError("A doctor with this email already exists", detail={"field": "email"}),
            )
        phone = fields.get("phone")
        if phone and self._store_call("find_by_phone", self.store.find_by_phone, phone):
            raise await self._fail(
                FLOW_REGISTRATION,
                email,
                origin,
                ConflictError(
                    "A doctor with this phone number already exists", detail={"field": "phone"}
                ),
            )

        doctor_id = new_doctor_id()
        # the key is claimed before the account exists so it can admit only one
        if self.settings.require_access_key and not self._store_call(
            "consume_access_key", self.store.consume_access_key, access_key.strip(), doctor_id
        ):
            raise await self._fail(
                FLOW_REGISTRATION,
                email,
                origin,
                ForbiddenError("Access key is invalid or already used"),
            )

        record = {
            "id": doctor_id,
            "email": email,
            "name": fields["name"],
            "password_hash": self.hash_password(fields["password"]),
            "phone": phone or None,
            "hospital_name": fields["hospital_name"],
            "hospital_address": fields.get("hospital_address") or "",
            "degree": fields["degree"],
            "registration_number": fields["registration_number"],
            "is_active": True,
            "profile_complete": True,
        }
        try:
            doctor = self._store_call("create_account", self.store.create_account, record)
        except ConstraintViolation as exc:
            if self.settings.require_access_key:
                self._release_access_key(access_key.strip(), doctor_id)
            raise await self._fail(
                FLOW_REGISTRATION, email, origin, ConflictError(exc.message, detail=exc.detail)
            )
        except ServiceError:
            if self.settings.require_access_key:
                self._release_access_key(access_key.strip(), doctor_id)
            raise

        await self.limiter.record_success(FLOW_REGISTRATION, email, origin)
        if self.settings.require_email_verification:
            try:
                await self.cache.delete(otp_verified_key(email))
            except STORE_ERRORS as exc:
                self.logger.warning(
                    "otp_verified_cleanup_failed", error=sanitize_error_message(str(exc))
                )
        self.logger.info("doctor_registered", doctor_id=doctor.id, origin=origin)
        return doctor

    # ------------------------------------------------------------------
    # forgot password

    async def forgot_password(self, email: str, origin: str) -> None:
        """Replace the password with a random one and email it.

        The password travels by email; this mirrors the product's existing
        behaviour rather than a reset-link flow.
        """
        email = (email or "").strip()
        await self._guard(FLOW_FORGOT_PASSWORD, email, origin)
        if not EMAIL_RE.match(email):
            raise await self._fail(
                FLOW_FORGOT_PASSWORD, email, origin, ValidationError("Invalid email format")
            )
        doctor = self._store_call("find_by_email", self.store.find_by_email, email)
        if not doctor:
            raise await self._fail(
                FLOW_FORGOT_PASSWORD,
                email,
                origin,
                NotFoundError("No account found with this email address"),
            )

        new_password = generate_password()
        self._store_call(
            "update_fields",
            self.store.update_fields,
            doctor.id,
            {"password_hash": self.hash_password(new_password)},
        )
        sent = await asyncio.to_thread(
            self.email.send_new_password, doctor.email, doctor.name, new_password
        )
        if not sent:
            raise await self._fail(
                FLOW_FORGOT_PASSWORD,
                email,
                origin,
                ServerError("Failed to send password reset email"),
            )
        await self.limiter.record_success(FLOW_FORGOT_PASSWORD, email, origin)
        self.logger.info("password_reset_issued", doctor_id=doctor.id, origin=origin)

    # ------------------------------------------------------------------
    # email OTP

    async def send_otp(
        self,
        email: str,
        phone: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        resend: bool = False,
    ) -> None:
        email = (email or "").strip()
        phone = (phone or "").strip()
        if not (first_name and last_name and email and phone):
            raise ValidationError("All required fields must be provided")
        if not EMAIL_RE.match(email):
            raise ValidationError("Invalid email format")
        if not resend:
            if self._store_call("find_by_email", self.store.find_by_email, email):
                raise ConflictError(
                    "An account with this email already exists", detail={"field": "email"}
                )
            if self._store_call("find_by_phone", self.store.find_by_phone, phone):
                raise ConflictError(
                    "An account with this phone number already exists", detail={"field": "phone"}
                )

        code = f"{secrets.randbelow(10**6):06d}"
        try:
            await self.cache.set(otp_key(email), code, self.settings.otp_ttl_seconds)
        except STORE_ERRORS as exc:
            self.logger.error("otp_store_failed", error=sanitize_error_message(str(exc)))
            raise ServerError("Failed to generate verification code") from exc
        sent = await asyncio.to_thread(self.email.send_otp, email, code, first_name)
        if not sent:
            raise ServerError("Failed to send email verification code")
        self.logger.info("otp_sent", resend=resend)

    async def verify_otp(self, email: str, code: str, origin: str) -> None:
        email = (email or "").strip()
        await self._guard(FLOW_OTP_VERIFY, email, origin)
        if not EMAIL_RE.match(email) or not isinstance(code, str) or not OTP_RE.fullmatch(code):
            raise await self._fail(
                FLOW_OTP_VERIFY, email, origin, ValidationError("Invalid verification code format")
            )
        try:
            stored = await self.cache.get(otp_key(email))
        except STORE_ERRORS as exc:
            self.logger.error("otp_lookup_failed", error=sanitize_error_message(str(exc)))
            raise ServerError("unable to verify code, please try again") from exc
        if not stored or not hmac.compare_digest(stored, code):
            raise await self._fail(
                FLOW_OTP_VERIFY,
                email,
                origin,
                AuthenticationError("Invalid or expired verification code"),
            )
        try:
            await self.cache.delete(otp_key(email))
            await self.cache.set(otp_verified_key(email), "1", OTP_VERIFIED_TTL_SECONDS)
        except STORE_ERRORS as exc:
            raise ServerError("unable to verify code, please try again") from exc
        await self.limiter.record_success(FLOW_OTP_VERIFY, email, origin)

    # ------------------------------------------------------------------
    # registration access keys

    def validate_access_key(self, key: Optional[str]) -> bool:
        if not key or not key.strip():
            raise ValidationError("Access key is required")
        return self._access_key_usable(key)

    def generate_access_key(self, admin_password: Optional[str]) -> str:
        if not admin_password:
            raise ValidationError("Password is required")
        configured = self.settings.admin_password
        if not configured:
            self.logger.error("admin_password_not_configured")
            raise ServerError("Key generation is not configured")
        if not hmac.compare_digest(admin_password.encode(), configured.encode()):
            self.logger.warning("access_key_admin_auth_failed")
            raise AuthenticationError("Invalid admin password")
        return self.issue_access_key()

    def issue_access_key(self) -> str:
        for _ in range(3):
            key = generate_access_key_value()
            try:
                self._store_call("create_access_key", self.store.create_access_key, key)
            except ConstraintViolation:
                continue
            self.logger.info("access_key_generated")
            return key
        raise ServerError("Failed to generate key")

    # ------------------------------------------------------------------
    # account linking

    def _require_doctor(self, doctor_id: str) -> Doctor:
        doctor = self._store_call("find_by_id", self.store.find_by_id, doctor_id)
        if not doctor:
            raise NotFoundError("Doctor not found")
        return doctor

    def set_password(self, doctor_id: str, password: str) -> Doctor:
        problem = password_strength_error(password)
        if problem:
            raise ValidationError(problem)
        self._require_doctor(doctor_id)
        updated = self._store_call(
            "update_fields",
            self.store.update_fields,
            doctor_id,
            {"password_hash": self.hash_password(password)},
        )
        self.logger.info("password_set", doctor_id=doctor_id)
        return updated

    def link_google(self, doctor_id: str, google_id: Optional[str]) -> Doctor:
        doctor = self._require_doctor(doctor_id)
        if not doctor.has_password:
            raise ValidationError("No password set for this account")
        if doctor.google_id:
            raise ValidationError("Google account is already linked to this account")
        if not google_id:
            raise ValidationError("No Google identity in the current session")
        return self._store_call(
            "update_fields",
            self.store.update_fields,
            doctor_id,
            {"google_id": google_id, "is_federated": True},
        )

    def unlink_google(self, doctor_id: str) -> Doctor:
        doctor = self._require_doctor(doctor_id)
        # the account must keep at least one way to sign in
        if not doctor.has_password:
            raise ValidationError("Set a password before disconnecting Google")
        updated = self._store_call(
            "update_fields",
            self.store.update_fields,
            doctor_id,
            {"google_id": None, "is_federated": False},
        )
        self.logger.info("google_unlinked", doctor_id=doctor_id)
        return updated

    # ------------------------------------------------------------------
    # Google sign-in

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("Insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def _callback_uri(self) -> str:
        uri = self.settings.oauth_redirect_uri or (
            f"{self.settings.app_base_url.rstrip('/')}/api/auth/google/callback"
        )
        return self._validate_redirect_uri(uri)

    async def start_google_oauth(self) -> dict:
        client_id = self.settings.oauth_google_client_id
        if not client_id:
            self.logger.warning("oauth_not_configured", provider="google")
            raise ServerError("Google sign-in is not configured")
        callback_uri = self._callback_uri()
        state = uuid.uuid4().hex
        try:
            await self.cache.set(f"oauth:state:{state}", "google", OAUTH_STATE_TTL_SECONDS)
        except STORE_ERRORS as exc:
            self.logger.error("oauth_state_store_failed", error=sanitize_error_message(str(exc)))
            raise ServerError("Google sign-in is temporarily unavailable") from exc
        params = {
            "client_id": client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": GOOGLE_OAUTH["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return {
            "authorization_url": f"{GOOGLE_OAUTH['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": "google",
        }

    async def _exchange_google_code(self, code: str) -> Optional[dict]:
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._http_transport) as client:
                token_response = await client.post(
                    GOOGLE_OAUTH["token_url"],
                    data={
                        "code": code,
                        "client_id": self.settings.oauth_google_client_id,
                        "client_secret": self.settings.oauth_google_client_secret,
                        "redirect_uri": self._callback_uri(),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = token_response.json().get("access_token")
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider="google")
                    return None
                userinfo_response = await client.get(
                    GOOGLE_OAUTH["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=e.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(
                "oauth_exchange_error", provider="google", error_type=type(e).__name__
            )
            return None
        if not userinfo.get("id") or not userinfo.get("email"):
            self.logger.error("oauth_identity_incomplete", provider="google")
            return None
        return {
            "google_id": str(userinfo["id"]),
            "email": userinfo["email"],
            "name": userinfo.get("name") or userinfo["email"].split("@")[0],
        }

    async def complete_google_oauth(self, code: str, state: str) -> Tuple[Doctor, str]:
        if not code or not state:
            raise AuthenticationError("invalid OAuth callback")
        try:
            provider = await self.cache.getdel(f"oauth:state:{state}")
        except STORE_ERRORS as exc:
            self.logger.error("pop_oauth_state_failed", error=sanitize_error_message(str(exc)))
            raise ServerError("Google sign-in is temporarily unavailable") from exc
        if provider != "google":
            raise AuthenticationError("invalid or expired OAuth state")

        identity = await self._exchange_google_code(code)
        if not identity:
            raise AuthenticationError("Google sign-in failed")

        doctor = self._store_call("find_by_email", self.store.find_by_email, identity["email"])
        if doctor:
            if doctor.google_id != identity["google_id"] or not doctor.is_federated:
                doctor = self._store_call(
                    "update_fields",
                    self.store.update_fields,
                    doctor.id,
                    {"google_id": identity["google_id"], "is_federated": True},
                )
        else:
            # profile is completed after first sign-in
            doctor = self._store_call(
                "create_account",
                self.store.create_account,
                {
                    "email": identity["email"],
                    "name": identity["name"],
                    "google_id": identity["google_id"],
                    "is_federated": True,
                    "is_active": False,
                    "profile_complete": False,
                },
            )
        self.logger.info("google_sign_in", doctor_id=doctor.id)
        return doctor, self.tokens.issue_federated_session(doctor)
