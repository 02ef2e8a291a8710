"""HTTP surface tests: envelopes, status codes and headers."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from backoffice_auth import app as app_module
from backoffice_auth.service.runtime import get_runtime
from conftest import CHROME_MAC, FIREFOX_WINDOWS, PASSWORD, open_session


@pytest.fixture
def client(runtime):
    app_module.app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app_module.app, headers={"User-Agent": CHROME_MAC})
    app_module.app.dependency_overrides.clear()


def bearer(session):
    return {"Authorization": f"Bearer {session.session_token}"}


class TestLogin:
    def test_success_envelope(self, client, user):
        response = client.post(
            "/auth/login", json={"email": user.email, "password": PASSWORD}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["two_factor_required"] is False
        assert body["data"]["session_token"]
        assert body["request_id"]

    def test_failure_is_generic(self, client, user):
        response = client.post(
            "/auth/login", json={"email": user.email, "password": "wrong-password"}
        )
        assert response.status_code == 401
        error = response.json()["error"]
        assert error == {
            "code": "unauthorized",
            "message": "Invalid email or password",
            "details": None,
        }

    def test_rate_limit_sets_retry_after(self, client, user):
        for _ in range(5):
            client.post("/auth/login", json={"email": user.email, "password": "nope-nope"})
        response = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_limiter_outage_is_503(self, client, runtime, user):
        broken = MagicMock()
        broken.sliding_window_consume = AsyncMock(side_effect=RedisConnectionError("down"))
        runtime.rate_limiter.cache = broken
        response = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"
        assert response.headers["Retry-After"] == "60"

    def test_two_factor_pending_response(self, client, runtime, user):
        runtime.store.update_two_factor(user.id, email_enabled=True)
        response = client.post(
            "/auth/login", json={"email": user.email, "password": PASSWORD}
        )
        data = response.json()["data"]
        assert data["two_factor_required"] is True
        assert data["session_token"] is None
        assert data["methods"] == ["email"]

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/auth/login", json={"email": "a@example.com"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"][-1] == "password"


class TestSessionEndpoints:
    def test_missing_token(self, client):
        response = client.get("/sessions")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

    def test_revoked_token(self, client, runtime, user):
        session = open_session(runtime, user.id)
        runtime.sessions.revoke(session.id)
        assert client.get("/sessions", headers=bearer(session)).status_code == 401

    def test_listing_marks_current_session(self, client, runtime, user):
        mine = open_session(runtime, user.id)
        open_session(runtime, user.id, FIREFOX_WINDOWS)
        body = client.get("/sessions", headers=bearer(mine)).json()
        assert body["data"]["total"] == 2
        current = [item for item in body["data"]["items"] if item["current"]]
        assert [item["id"] for item in current] == [mine.id]

    def test_revoke_all_requires_step_up_then_succeeds(self, client, runtime, user, clock):
        session = open_session(runtime, user.id)
        open_session(runtime, user.id, FIREFOX_WINDOWS)
        clock.advance(minutes=11)

        denied = client.post("/sessions/revoke-all", headers=bearer(session))
        assert denied.status_code == 403
        error = denied.json()["error"]
        assert error["code"] == "step_up_required"
        assert error["details"]["action"] == "session.revoke.all"

        grant = client.post(
            "/auth/step-up",
            json={"method": "password", "credential": PASSWORD},
            headers=bearer(session),
        )
        assert grant.status_code == 200
        applied = client.post(
            "/auth/step-up/apply",
            json={"step_up_token": grant.json()["data"]["step_up_token"]},
            headers=bearer(session),
        )
        assert applied.status_code == 200

        allowed = client.post("/sessions/revoke-all", headers=bearer(session))
        assert allowed.json()["data"] == {"revoked": 2}
        assert client.get("/sessions", headers=bearer(session)).status_code == 401

    def test_wrong_step_up_password(self, client, runtime, user):
        session = open_session(runtime, user.id)
        response = client.post(
            "/auth/step-up",
            json={"method": "password", "credential": "guess-guess"},
            headers=bearer(session),
        )
        assert response.status_code == 401

    def test_revoke_single_session(self, client, runtime, user):
        mine = open_session(runtime, user.id)
        other = open_session(runtime, user.id, FIREFOX_WINDOWS)
        response = client.delete(f"/sessions/{other.id}", headers=bearer(mine))
        assert response.json()["data"] == {"revoked": True}
        assert not runtime.sessions.is_valid(runtime.sessions.get(other.id))

    def test_login_history_lists_own_attempts(self, client, user):
        client.post("/auth/login", json={"email": user.email, "password": "wrong-password"})
        login = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        token = login.json()["data"]["session_token"]
        response = client.get(
            "/auth/login-history",
            params={"success": "false"},
            headers={"Authorization": f"Bearer {token}"},
        )
        data = response.json()["data"]
        assert data["total"] == 1
        assert data["items"][0]["failure_reason"] == "invalid_credentials"
        assert data["items"][0]["browser"] == "Chrome"

    def test_logout(self, client, runtime, user):
        session = open_session(runtime, user.id)
        assert client.post("/auth/logout", headers=bearer(session)).status_code == 200
        assert client.get("/sessions", headers=bearer(session)).status_code == 401


class TestPasswordReset:
    def test_request_answers_identically(self, client, user):
        known = client.post("/auth/password/reset", json={"email": user.email})
        unknown = client.post("/auth/password/reset", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_bad_token(self, client):
        response = client.post(
            "/auth/password/reset/complete",
            json={"token": "not-a-real-token", "new_password": "Brand-New-Passphrase-7"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == {
            "code": "invalid_token",
            "message": "Invalid or expired token",
            "details": None,
        }


class TestAdmin:
    def test_non_admin_cannot_invite(self, client, runtime, user):
        session = open_session(runtime, user.id)
        response = client.post(
            "/admin/invites", json={"email": "new.hire@example.com"}, headers=bearer(session)
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_invite_and_accept(self, client, runtime, user, notifier):
        runtime.store.update_user_role(user.id, "admin")
        session = open_session(runtime, user.id)
        response = client.post(
            "/admin/invites",
            json={"email": "new.hire@example.com", "role_id": "editor"},
            headers=bearer(session),
        )
        assert response.status_code == 201
        raw = notifier.send_invite.call_args.args[1]
        accepted = client.post(
            "/auth/invites/accept", json={"token": raw, "password": "Welcome-Aboard-2026"}
        )
        assert accepted.status_code == 200
        assert accepted.json()["data"]["session_token"]


class TestAppShell:
    def test_security_headers_and_request_id(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"].startswith("no-store")
        assert "Strict-Transport-Security" not in response.headers

    def test_health_without_redis(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "ok"
        assert body["checks"]["redis"] == {"status": "disabled"}

    def test_health_reports_redis_outage(self, client, runtime):
        runtime.cache = MagicMock()
        runtime.cache.verify_connection.side_effect = RedisConnectionError("down")
        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
