from __future__ import annotations

from typing import Optional

from fastapi import Response

ACCESS_COOKIE = "doctor-auth"
REFRESH_COOKIE = "doctor-refresh"
PIN_COOKIE = "pin-auth"
SESSION_COOKIE = "session-token"
PIN_COOKIE_VALUE = "authorized"

ALL_AUTH_COOKIES = (ACCESS_COOKIE, REFRESH_COOKIE, PIN_COOKIE, SESSION_COOKIE)


def _set(response: Response, name: str, value: str, *, max_age: int, secure: bool) -> None:
    response.set_cookie(
        name,
        value,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def apply_token_cookies(
    response: Response,
    *,
    access_token: str,
    refresh_token: Optional[str],
    access_ttl_seconds: int,
    refresh_ttl_seconds: int,
    secure: bool,
) -> None:
    _set(response, ACCESS_COOKIE, access_token, max_age=access_ttl_seconds, secure=secure)
    if refresh_token:
        _set(
            response,
            REFRESH_COOKIE,
            refresh_token,
            max_age=refresh_ttl_seconds,
            secure=secure,
        )


def apply_pin_cookie(response: Response, *, ttl_seconds: int, secure: bool) -> None:
    _set(response, PIN_COOKIE, PIN_COOKIE_VALUE, max_age=ttl_seconds, secure=secure)


def apply_session_cookie(
    response: Response, session_token: str, *, ttl_seconds: int, secure: bool
) -> None:
    _set(response, SESSION_COOKIE, session_token, max_age=ttl_seconds, secure=secure)


def clear_auth_cookies(response: Response, *, secure: bool) -> None:
    for name in ALL_AUTH_COOKIES:
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")
