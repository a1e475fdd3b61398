from __future__ import annotations

from contextlib import asynccontextmanager
from html import escape
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse

from docprescrip.api.error_handling import register_exception_handlers
from docprescrip.api.routes import router
from docprescrip.config import Settings
from docprescrip.logging import get_logger, set_correlation_id
from docprescrip.service.session import (
    DOCTOR_ID_HEADER,
    RouteAction,
    is_public_path,
    route_request,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_DOCTOR_ID_HEADER_RAW = DOCTOR_ID_HEADER.encode("latin-1")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from docprescrip.service.runtime import get_runtime

    # fail fast on missing JWT_SECRET or unreachable Redis
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Doc Prescrip", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "x-refresh-token"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def resolve_session(request: Request, call_next):
    """Attach the caller's identity and gate page access.

    Any client-supplied ``x-doctor-id`` is dropped; the header is only ever
    set here, from a validated credential.
    """
    headers = [
        (name, value)
        for name, value in request.scope["headers"]
        if name.lower() != _DOCTOR_ID_HEADER_RAW
    ]
    request.scope["headers"] = headers
    path = request.url.path
    if is_public_path(path):
        return await call_next(request)

    from docprescrip.service.runtime import get_runtime

    identity = get_runtime().sessions.resolve(request.cookies)
    request.state.identity = identity
    decision = route_request(path, identity)
    if decision.action == RouteAction.REDIRECT:
        return RedirectResponse(url=decision.location, status_code=307)
    if decision.action == RouteAction.FORWARD:
        headers.append((_DOCTOR_ID_HEADER_RAW, decision.doctor_id.encode("latin-1")))
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with a correlation id.

    Taken from X-Request-ID when the client sends one, otherwise generated,
    and echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


def _page(title: str, body: str) -> HTMLResponse:
    return HTMLResponse(
        f"<!doctype html><html><head><title>{escape(title)} | Doc Prescrip</title></head>"
        f"<body>{body}</body></html>"
    )


@app.get("/healthz", tags=["meta"])
async def healthz():
    return {"status": "ok", "version": __version__}


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
async def home(request: Request):
    doctor_id = request.headers.get(DOCTOR_ID_HEADER, "")
    return _page("Home", f'<main data-doctor-id="{escape(doctor_id)}"><h1>Doc Prescrip</h1></main>')


@app.get("/login", response_class=HTMLResponse, include_in_schema=False)
async def login_page():
    return _page("Sign in", '<main><h1>Sign in</h1><div id="login"></div></main>')


@app.get("/terms", response_class=HTMLResponse, include_in_schema=False)
async def terms_page():
    return _page("Terms of Service", "<main><h1>Terms of Service</h1></main>")


@app.get("/privacy", response_class=HTMLResponse, include_in_schema=False)
async def privacy_page():
    return _page("Privacy Policy", "<main><h1>Privacy Policy</h1></main>")
