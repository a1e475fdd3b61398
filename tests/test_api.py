"""HTTP-level tests: middleware routing, cookies and endpoint status codes."""

import httpx
import pytest
from fastapi.testclient import TestClient

from docprescrip.app import app
from docprescrip.service.runtime import get_runtime

PASSWORD = "Sup3r-Secret!"
SITE_PIN = "482916"

# HS256 header, empty payload, Latin-1 signature byte
NON_ASCII_REFRESH_COOKIE = b"doctor-refresh=eyJhbGciOiJIUzI1NiJ9.e30.\xe9"

REGISTRATION = {
    "name": "James Wilson",
    "email": "wilson@ppth.org",
    "password": PASSWORD,
    "phone": "+15557654321",
    "hospitalName": "Princeton-Plainsboro",
    "hospitalAddress": "1 Hospital Way",
    "degree": "MD",
    "registrationNumber": "NJ-0042",
}


@pytest.fixture
def client():
    return TestClient(app)


def _register_and_login(client):
    assert client.post("/api/auth/register", json=REGISTRATION).status_code == 201
    response = client.post(
        "/api/auth/login", json={"email": REGISTRATION["email"], "password": PASSWORD}
    )
    assert response.status_code == 200
    return response


def _set_cookie_headers(response):
    return response.headers.get_list("set-cookie")


class TestMeta:
    def test_healthz_is_public(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/terms")
        assert response.status_code == 200
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestRouting:
    def test_anonymous_page_redirects_to_login(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"] == "/login"

    def test_anonymous_login_page_renders(self, client):
        assert client.get("/login").status_code == 200

    def test_legacy_pin_page_redirects(self, client):
        response = client.get("/pin-entry", follow_redirects=False)
        assert response.headers["location"] == "/login"

    def test_authenticated_login_page_redirects_home(self, client):
        _register_and_login(client)
        response = client.get("/login", follow_redirects=False)
        assert response.status_code == 307
        assert response.headers["location"] == "/"

    def test_doctor_id_is_forwarded_and_cannot_be_spoofed(self, client):
        login = _register_and_login(client)
        doctor_id = login.json()["data"]["doctor"]["id"]

        response = client.get("/", headers={"x-doctor-id": "dr_attacker"})

        assert response.status_code == 200
        assert f'data-doctor-id="{doctor_id}"' in response.text
        assert "dr_attacker" not in response.text

    def test_session_endpoint_reports_identity(self, client):
        _register_and_login(client)
        body = client.get("/api/auth/session").json()
        assert body["data"]["doctor"]["email"] == REGISTRATION["email"]
        assert body["data"]["source"] == "bearer"
        assert "password_hash" not in body["data"]["doctor"]

    def test_session_endpoint_requires_identity(self, client):
        response = client.get("/api/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestLoginEndpoint:
    def test_login_sets_both_cookies(self, client):
        response = _register_and_login(client)
        cookies = " ".join(_set_cookie_headers(response))
        assert "doctor-auth=" in cookies
        assert "doctor-refresh=" in cookies
        assert "HttpOnly" in cookies
        assert response.json()["data"]["access_token_expires_in"] == 900

    def test_wrong_password_is_401_with_remaining(self, client):
        client.post("/api/auth/register", json=REGISTRATION)
        response = client.post(
            "/api/auth/login", json={"email": REGISTRATION["email"], "password": "nope"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["details"]["remaining_attempts"] == 4

    def test_lockout_returns_429_with_retry_after(self, client):
        client.post("/api/auth/register", json=REGISTRATION)
        for _ in range(5):
            client.post(
                "/api/auth/login", json={"email": REGISTRATION["email"], "password": "nope"}
            )
        response = client.post(
            "/api/auth/login", json={"email": REGISTRATION["email"], "password": PASSWORD}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0

    def test_malformed_email_is_400(self, client):
        response = client.post("/api/auth/login", json={"email": "nope", "password": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestRegisterEndpoint:
    def test_duplicate_is_409(self, client):
        client.post("/api/auth/register", json=REGISTRATION)
        response = client.post(
            "/api/auth/register", json={**REGISTRATION, "phone": "+15550001111"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_missing_fields_is_400(self, client):
        response = client.post("/api/auth/register", json={"email": "x@y.co"})
        assert response.status_code == 400


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client):
        login = _register_and_login(client)
        old_refresh = login.cookies["doctor-refresh"]

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.cookies["doctor-refresh"] != old_refresh

    def test_refresh_without_token_is_401(self, client):
        response = client.post("/api/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "No refresh token provided"

    def test_refresh_after_logout_rejected(self, client):
        login = _register_and_login(client)
        refresh = login.cookies["doctor-refresh"]

        assert client.post("/api/logout").status_code == 200
        client.cookies.clear()

        response = client.post("/api/auth/refresh", headers={"x-refresh-token": refresh})
        assert response.status_code == 401

    def test_logout_with_garbage_cookie_succeeds(self, client):
        client.cookies.set("doctor-refresh", "garbage")
        response = client.post("/api/logout")
        assert response.status_code == 200
        cleared = " ".join(_set_cookie_headers(response))
        for name in ("doctor-auth", "doctor-refresh", "pin-auth", "session-token"):
            assert f"{name}=" in cleared

    def test_logout_with_non_ascii_signature_succeeds(self, client):
        response = client.post("/api/logout", headers={"cookie": NON_ASCII_REFRESH_COOKIE})
        assert response.status_code == 200

    def test_refresh_with_non_ascii_signature_is_401(self, client):
        response = client.post("/api/auth/refresh", headers={"cookie": NON_ASCII_REFRESH_COOKIE})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestVerifyPin:
    def test_correct_pin_sets_cookie(self, client):
        response = client.post("/api/verify-pin", json={"pin": SITE_PIN})
        assert response.status_code == 200
        assert response.cookies["pin-auth"] == "authorized"

    def test_bad_format_is_400(self, client):
        response = client.post("/api/verify-pin", json={"pin": "12"})
        assert response.status_code == 400
        assert response.json()["error"]["details"]["remaining_attempts"] == 4

    def test_locked_origin_gets_423(self, client):
        headers = {"x-forwarded-for": "203.0.113.50"}
        for _ in range(5):
            client.post("/api/verify-pin", json={"pin": "000000"}, headers=headers)
        response = client.post("/api/verify-pin", json={"pin": SITE_PIN}, headers=headers)

        assert response.status_code == 423
        body = response.json()
        assert body["error"]["code"] == "locked"
        assert body["error"]["details"]["locked_out"] is True
        assert body["error"]["details"]["state"] == "LOCKED"
        assert "Retry-After" in response.headers

        other = client.post(
            "/api/verify-pin", json={"pin": SITE_PIN}, headers={"x-forwarded-for": "203.0.113.51"}
        )
        assert other.status_code == 200


class TestAccessKeyEndpoints:
    def test_generate_and_validate(self, client):
        generated = client.post(
            "/api/auth/generate-key", json={"password": "Admin-Test-Password-1!"}
        )
        assert generated.status_code == 200
        key = generated.json()["data"]["key"]

        response = client.post("/api/auth/validate-key", json={"accessKey": key})
        assert response.json()["data"]["is_valid"] is True
        assert response.json()["data"]["message"] == "Access key is valid"

    def test_generate_with_wrong_password(self, client):
        response = client.post("/api/auth/generate-key", json={"password": "guess"})
        assert response.status_code == 401

    def test_validate_without_key(self, client):
        assert client.post("/api/auth/validate-key", json={}).status_code == 400


class TestAccountLinkingEndpoints:
    def test_link_account_requires_federated_session(self, client):
        _register_and_login(client)
        response = client.post(
            "/api/auth/link-account", json={"action": "set-password", "password": PASSWORD}
        )
        assert response.status_code == 401

    def test_unlink_without_password_is_400(self, client):
        _google_sign_in(client, {"id": "g-9", "email": "thirteen@ppth.org", "name": "Remy"})
        response = client.post("/api/auth/unlink-google")
        assert response.status_code == 400

    def test_set_password_via_federated_session(self, client):
        _google_sign_in(client, {"id": "g-9", "email": "thirteen@ppth.org", "name": "Remy"})
        response = client.post(
            "/api/auth/link-account", json={"action": "set-password", "password": PASSWORD}
        )
        assert response.status_code == 200
        assert response.json()["data"]["doctor"]["has_password"] is True
        assert client.post("/api/auth/unlink-google").status_code == 200


def _google_sign_in(client, userinfo):
    runtime = get_runtime()
    runtime.auth.settings = runtime.settings.model_copy(
        update={"oauth_google_client_id": "client-id", "oauth_google_client_secret": "s3cret"}
    )

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "ya29.test"})
        return httpx.Response(200, json=userinfo)

    runtime.auth._http_transport = httpx.MockTransport(handler)
    state = client.get("/api/auth/google/start").json()["data"]["state"]
    response = client.get(
        "/api/auth/google/callback",
        params={"code": "auth-code", "state": state},
        follow_redirects=False,
    )
    assert response.status_code == 302
    assert response.headers["location"] == "/"
    return response


class TestGoogleEndpoints:
    def test_callback_sets_session_cookie(self, client):
        response = _google_sign_in(client, {"id": "g-1", "email": "kutner@ppth.org"})
        assert "session-token=" in " ".join(_set_cookie_headers(response))

        session = client.get("/api/auth/session").json()
        assert session["data"]["source"] == "federated"
        assert session["data"]["doctor"]["google_id"] == "g-1"

    def test_callback_with_unknown_state_is_401(self, client):
        response = client.get(
            "/api/auth/google/callback", params={"code": "c", "state": "forged"}
        )
        assert response.status_code == 401

    def test_start_without_configuration_is_500(self, client):
        response = client.get("/api/auth/google/start")
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
