"""Integration tests for the auth HTTP surface.

Tests the complete flow through FastAPI:
- Registration (open and admin-only) and input validation
- Login, refresh and logout
- Bearer authentication on protected routes
- Per-IP admission limits and their headers
- Error envelopes for domain and store failures
"""

import pytest
from fastapi.testclient import TestClient

from berthcare import app as app_module
from berthcare.api.routes import RateLimitInfo
from berthcare.service.rate_limit import AdmissionDecision
from berthcare.service.runtime import get_runtime, reset_runtime_for_tests
from berthcare.storage.errors import StoreUnavailable
from berthcare.storage.models import Role

ZONE_ID = "3f6e2a8c-1d4b-4c9e-a7f0-5b2d8e1c6a93"
PASSWORD = "CarePassw0rd"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register_body(email="caregiver@example.com", **overrides):
    body = {
        "email": email,
        "password": PASSWORD,
        "firstName": "Ana",
        "lastName": "Silva",
        "role": "caregiver",
        "zoneId": ZONE_ID,
        "deviceId": "ios-1",
    }
    body.update(overrides)
    return body


def _register(client, **overrides):
    resp = client.post("/v1/auth/register", json=_register_body(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _login(client, email="caregiver@example.com", password=PASSWORD, device_id="ios-1"):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "deviceId": device_id},
    )


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_creates_user_and_session(self, client):
        data = _register(client)
        assert data["accessToken"] and data["refreshToken"]
        assert data["user"]["email"] == "caregiver@example.com"
        assert data["user"]["role"] == "caregiver"
        assert data["user"]["zoneId"] == ZONE_ID
        assert data["user"]["firstName"] == "Ana"
        assert "password" not in data["user"]

    def test_duplicate_email(self, client):
        _register(client)
        resp = client.post("/v1/auth/register", json=_register_body(email="Caregiver@Example.com"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "EmailExists"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"email": "not-an-email"},
            {"password": "short1A"},
            {"password": "alllowercase1"},
            {"password": "NoDigitsHere"},
            {"firstName": "   "},
            {"role": "superuser"},
            {"zoneId": "zone-7"},
            {"zoneId": None},
        ],
    )
    def test_invalid_input(self, client, overrides):
        resp = client.post("/v1/auth/register", json=_register_body(**overrides))
        assert resp.status_code == 400
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "InvalidInput"
        assert isinstance(body["error"]["details"], list)

    def test_rejected_password_never_echoed(self, client):
        resp = client.post("/v1/auth/register", json=_register_body(password="weakpassword"))
        assert resp.status_code == 400
        assert "weakpassword" not in resp.text

    def test_admin_and_family_need_no_zone(self, client):
        data = _register(client, email="family@example.com", role="family", zoneId=None)
        assert data["user"]["zoneId"] is None


class TestAdminOnlyRegistration:
    @pytest.fixture
    def closed_client(self, monkeypatch):
        monkeypatch.setenv("OPEN_REGISTRATION", "false")
        reset_runtime_for_tests()
        runtime = get_runtime()
        runtime.store.create_user(
            "admin@example.com", runtime.hasher.hash(PASSWORD), role=Role.ADMIN
        )
        return TestClient(app_module.app)

    def test_anonymous_rejected(self, closed_client):
        resp = closed_client.post("/v1/auth/register", json=_register_body())
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "MissingToken"

    def test_admin_can_register(self, closed_client):
        admin = _login(closed_client, email="admin@example.com").json()["data"]
        resp = closed_client.post(
            "/v1/auth/register", json=_register_body(), headers=_auth(admin["accessToken"])
        )
        assert resp.status_code == 201

    def test_non_admin_forbidden(self, closed_client):
        admin = _login(closed_client, email="admin@example.com").json()["data"]
        closed_client.post(
            "/v1/auth/register", json=_register_body(), headers=_auth(admin["accessToken"])
        )
        caregiver = _login(closed_client).json()["data"]
        resp = closed_client.post(
            "/v1/auth/register",
            json=_register_body(email="second@example.com"),
            headers=_auth(caregiver["accessToken"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "Forbidden"


class TestLogin:
    def test_success(self, client):
        _register(client)
        resp = _login(client, device_id="android-7")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["accessToken"] and data["refreshToken"]
        assert data["user"]["role"] == "caregiver"
        assert resp.headers["X-RateLimit-Limit"] == "10"
        assert resp.headers["X-RateLimit-Remaining"] == "9"
        assert 0 < int(resp.headers["X-RateLimit-Reset"]) <= 3600

    def test_wrong_password_is_generic(self, client):
        _register(client)
        wrong = _login(client, password="WrongPassw0rd")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["code"] == "InvalidCredentials"

    def test_device_id_required(self, client):
        resp = client.post(
            "/v1/auth/login", json={"email": "caregiver@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "InvalidInput"

    def test_eleventh_attempt_rate_limited(self, client):
        for _ in range(10):
            assert _login(client, password="WrongPassw0rd").status_code == 401
        resp = _login(client, password="WrongPassw0rd")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RateLimitExceeded"
        assert int(resp.headers["Retry-After"]) >= 1
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_applies_before_validation(self, client):
        for _ in range(10):
            _login(client, password="WrongPassw0rd")
        resp = client.post("/v1/auth/login", json={})
        assert resp.status_code == 429

    def test_correct_password_also_blocked_once_limited(self, client):
        _register(client)
        for _ in range(10):
            _login(client, password="WrongPassw0rd")
        assert _login(client).status_code == 429

    def test_forwarded_for_ignored_by_default(self, client):
        for i in range(10):
            client.post(
                "/v1/auth/login",
                json={"email": "x@example.com", "password": "WrongPassw0rd", "deviceId": "d"},
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            )
        resp = client.post(
            "/v1/auth/login",
            json={"email": "x@example.com", "password": "WrongPassw0rd", "deviceId": "d"},
            headers={"X-Forwarded-For": "203.0.113.99"},
        )
        assert resp.status_code == 429


class TestSessionLifecycle:
    def test_register_login_me_logout(self, client):
        _register(client)
        session = _login(client).json()["data"]

        me = client.get("/v1/auth/me", headers=_auth(session["accessToken"]))
        assert me.status_code == 200
        profile = me.json()["data"]
        assert profile["email"] == "caregiver@example.com"
        assert profile["zoneId"] == ZONE_ID
        assert profile["deviceId"] == "ios-1"
        assert "create:visit" in profile["permissions"]

        logout = client.post("/v1/auth/logout", headers=_auth(session["accessToken"]))
        assert logout.status_code == 200
        assert logout.json()["data"] == {"message": "logged out"}

        after = client.get("/v1/auth/me", headers=_auth(session["accessToken"]))
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "TokenRevoked"

        refresh = client.post(
            "/v1/auth/refresh", json={"refreshToken": session["refreshToken"]}
        )
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "TokenRevoked"

    def test_refresh(self, client):
        session = _register(client)
        resp = client.post("/v1/auth/refresh", json={"refreshToken": session["refreshToken"]})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["accessToken"] != session["accessToken"]
        assert "refreshToken" not in data
        me = client.get("/v1/auth/me", headers=_auth(data["accessToken"]))
        assert me.status_code == 200

    def test_refresh_rejects_access_token(self, client):
        session = _register(client)
        resp = client.post("/v1/auth/refresh", json={"refreshToken": session["accessToken"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "TokenMalformed"

    def test_logout_twice(self, client):
        session = _register(client)
        first = client.post("/v1/auth/logout", headers=_auth(session["accessToken"]))
        second = client.post("/v1/auth/logout", headers=_auth(session["accessToken"]))
        assert first.status_code == second.status_code == 200

    def test_sessions(self, client):
        session = _register(client)
        _login(client, device_id="android-7")
        resp = client.get("/v1/auth/sessions", headers=_auth(session["accessToken"]))
        assert resp.status_code == 200
        devices = sorted(item["deviceId"] for item in resp.json()["data"]["items"])
        assert devices == ["android-7", "ios-1"]


class TestBearerErrors:
    @pytest.mark.parametrize(
        "headers,code",
        [
            ({}, "MissingToken"),
            ({"Authorization": "Basic dXNlcjpwYXNz"}, "InvalidTokenFormat"),
            ({"Authorization": "Bearer"}, "InvalidTokenFormat"),
            ({"Authorization": "Bearer garbage"}, "TokenMalformed"),
        ],
    )
    def test_me_rejects(self, client, headers, code):
        resp = client.get("/v1/auth/me", headers=headers)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == code

    def test_logout_without_token(self, client):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "MissingToken"


class TestStoreFailures:
    def test_blacklist_outage_is_store_unavailable(self, client):
        session = _register(client)

        class UnavailableCache:
            async def is_blacklisted(self, fingerprint):
                raise StoreUnavailable("redis down", store="cache")

        get_runtime().auth.cache = UnavailableCache()
        resp = client.get("/v1/auth/me", headers=_auth(session["accessToken"]))
        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "StoreUnavailable"
        assert body["error"]["details"] == {"store": "cache"}


class TestEnvelopeAndHeaders:
    def test_request_id_echoed(self, client):
        resp = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["cache"]["type"] == "memory"

    def test_rate_limit_reset_reports_window_remainder(self):
        decision = AdmissionDecision(True, 10, 7, 0, reset_after=1200)
        info = RateLimitInfo.from_decision(decision, 3600)
        assert (info.limit, info.remaining, info.reset_seconds) == (10, 7, 1200)
