from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from docprescrip.api.cookies import (
    REFRESH_COOKIE,
    SESSION_COOKIE,
    apply_pin_cookie,
    apply_session_cookie,
    apply_token_cookies,
    clear_auth_cookies,
)
from docprescrip.api.schemas import (
    AccessKeyRequest,
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    GenerateKeyRequest,
    LinkAccountRequest,
    LoginRequest,
    PinRequest,
    PinResponse,
    RegisterRequest,
    SendOtpRequest,
    VerifyOtpRequest,
)
from docprescrip.logging import get_logger
from docprescrip.service.pin_gate import get_client_origin
from docprescrip.service.runtime import get_runtime
from docprescrip.service.session import HOME_PATH, Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _origin(request: Request) -> str:
    return get_client_origin(
        request.headers, request.client.host if request.client else None
    )


def _secure_cookies() -> bool:
    return get_runtime().settings.is_production


def _auth_response(doctor, settings) -> AuthResponse:
    return AuthResponse(
        doctor=doctor.public_view(),
        access_token_expires_in=settings.access_token_ttl_seconds,
    )


def _federated_claims(request: Request) -> dict:
    claims = get_runtime().tokens.validate_federated_session(
        request.cookies.get(SESSION_COOKIE)
    )
    if not claims or not claims.get("sub"):
        raise _http_error("unauthorized", "Not authenticated", status_code=401)
    return claims


def _current_identity(request: Request) -> Identity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise _http_error("unauthorized", "Not authenticated", status_code=401)
    return identity


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate a doctor with email and password.

    Sets the access and refresh cookies on success. Failed attempts are
    counted per (email, client origin); once the attempts are spent the pair is
    locked out and further attempts are rejected without checking the
    password.

    Raises:
        400: Malformed email or password
        401: Invalid credentials (details carry remaining_attempts)
        403: Account inactive
        429: Locked out
    """
    runtime = get_runtime()
    doctor, tokens = await runtime.auth.login(
        body.email or "", body.password or "", _origin(request)
    )
    apply_token_cookies(
        response,
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        access_ttl_seconds=runtime.settings.access_token_ttl_seconds,
        refresh_ttl_seconds=runtime.settings.refresh_token_ttl_seconds,
        secure=_secure_cookies(),
    )
    return Envelope(status="ok", data=_auth_response(doctor, runtime.settings))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    runtime = get_runtime()
    doctor = await runtime.auth.register(body.model_dump(), _origin(request))
    return Envelope(
        status="ok",
        data={"message": "Doctor registered successfully", "doctor": doctor.public_view()},
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    x_refresh_token: Optional[str] = Header(None, alias="x-refresh-token"),
):
    """Rotate the refresh token and mint a new access token.

    The refresh token is read from the ``doctor-refresh`` cookie, or from the
    ``x-refresh-token`` header for non-browser clients.
    """
    runtime = get_runtime()
    token = request.cookies.get(REFRESH_COOKIE) or x_refresh_token
    if not token:
        raise _http_error("unauthorized", "No refresh token provided", status_code=401)
    doctor, tokens = await runtime.auth.refresh(token)
    apply_token_cookies(
        response,
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        access_ttl_seconds=runtime.settings.access_token_ttl_seconds,
        refresh_ttl_seconds=runtime.settings.refresh_token_ttl_seconds,
        secure=_secure_cookies(),
    )
    return Envelope(status="ok", data=_auth_response(doctor, runtime.settings))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    await runtime.auth.logout(request.cookies.get(REFRESH_COOKIE))
    had_federated_session = SESSION_COOKIE in request.cookies
    clear_auth_cookies(response, secure=_secure_cookies())
    return Envelope(
        status="ok",
        data={
            "message": "Logged out successfully",
            "has_federated_session": had_federated_session,
        },
    )


@router.post("/verify-pin", response_model=Envelope, tags=["pin"])
async def verify_pin(body: PinRequest, request: Request, response: Response):
    """Check the site-wide PIN for the calling client origin.

    Raises:
        400: PIN is not 4-10 digits (counts as a failed attempt)
        401: Wrong PIN
        423: Origin locked out; details carry remaining_time
        429: Too many requests in the sliding window
        500: PIN not configured
    """
    runtime = get_runtime()
    await runtime.pin_gate.verify(body.pin, _origin(request))
    apply_pin_cookie(
        response,
        ttl_seconds=runtime.settings.pin_cookie_ttl_seconds,
        secure=_secure_cookies(),
    )
    return Envelope(status="ok", data=PinResponse())


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email or "", _origin(request))
    return Envelope(
        status="ok",
        data={"message": "A new password has been sent to your email address"},
    )


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest):
    runtime = get_runtime()
    await runtime.auth.send_otp(
        body.email or "",
        body.phone or "",
        first_name=body.first_name,
        last_name=body.last_name,
        resend=body.resend,
    )
    return Envelope(status="ok", data={"message": "Verification code sent successfully"})


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.verify_otp(body.email or "", body.otp or "", _origin(request))
    return Envelope(status="ok", data={"message": "Email verified successfully"})


@router.post("/auth/validate-key", response_model=Envelope, tags=["access-keys"])
async def validate_key(body: AccessKeyRequest):
    runtime = get_runtime()
    is_valid = runtime.auth.validate_access_key(body.access_key)
    return Envelope(
        status="ok",
        data={
            "is_valid": is_valid,
            "message": "Access key is valid"
            if is_valid
            else "Access key is invalid or already used",
        },
    )


@router.post("/auth/generate-key", response_model=Envelope, tags=["access-keys"])
async def generate_key(body: GenerateKeyRequest):
    runtime = get_runtime()
    key = runtime.auth.generate_access_key(body.password)
    return Envelope(
        status="ok", data={"key": key, "message": "Access key generated successfully"}
    )


@router.get("/auth/google/start", response_model=Envelope, tags=["oauth"])
async def google_start():
    runtime = get_runtime()
    start = await runtime.auth.start_google_oauth()
    return Envelope(status="ok", data=start)


@router.get("/auth/google/callback", tags=["oauth"])
async def google_callback(
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=256),
):
    """Finish Google sign-in and land the doctor on the home page."""
    if error:
        logger.warning("oauth_provider_error", provider="google", error=error)
        raise _http_error("unauthorized", "Google sign-in was cancelled", status_code=401)
    runtime = get_runtime()
    doctor, session_token = await runtime.auth.complete_google_oauth(code or "", state or "")
    response = RedirectResponse(url=HOME_PATH, status_code=302)
    apply_session_cookie(
        response,
        session_token,
        ttl_seconds=runtime.settings.federated_session_ttl_seconds,
        secure=_secure_cookies(),
    )
    return response


@router.post("/auth/link-account", response_model=Envelope, tags=["oauth"])
async def link_account(body: LinkAccountRequest, request: Request):
    """Account linking for doctors signed in with Google.

    ``set-password`` adds a password to a Google-created account;
    ``link-google`` attaches the session's Google identity to an account
    that already has a password.
    """
    claims = _federated_claims(request)
    runtime = get_runtime()
    if body.action == "set-password":
        doctor = runtime.auth.set_password(claims["sub"], body.password or "")
        message = "Password set successfully"
    else:
        doctor = runtime.auth.link_google(claims["sub"], claims.get("google_id"))
        message = "Google account linked successfully"
    return Envelope(status="ok", data={"message": message, "doctor": doctor.public_view()})


@router.post("/auth/unlink-google", response_model=Envelope, tags=["oauth"])
async def unlink_google(request: Request):
    identity = _current_identity(request)
    runtime = get_runtime()
    doctor = runtime.auth.unlink_google(identity.doctor_id)
    return Envelope(
        status="ok",
        data={
            "message": "Google account disconnected successfully",
            "doctor": doctor.public_view(),
        },
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(request: Request):
    identity = _current_identity(request)
    runtime = get_runtime()
    doctor = runtime.store.find_by_id(identity.doctor_id)
    if not doctor:
        raise _http_error("not_found", "Doctor not found", status_code=404)
    return Envelope(
        status="ok",
        data={
            "doctor": doctor.public_view(),
            "role": identity.role,
            "source": identity.source,
        },
    )
