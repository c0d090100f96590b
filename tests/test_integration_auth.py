"""Integration tests for the HTTP authentication flows.

Tests the complete flow including:
- Registration and password login
- Session validation, sliding renewal and logout
- Google sign-in with PKCE against a fake provider
- Magic-link request and single-use callback
- Same-origin enforcement and response headers
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from gatehouse import app as app_module
from gatehouse.service.runtime import get_runtime, reset_runtime_for_tests
from gatehouse.storage.models import utcnow

THIRTY_DAYS = 30 * 24 * 60 * 60


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


@pytest.fixture
def registered(client, test_user_email, test_user_password):
    response = client.post(
        "/v1/auth/register",
        json={"email": test_user_email, "password": test_user_password, "name": "Test User"},
    )
    assert response.status_code == 201
    return response.json()["data"]


def _session_cookie_headers(response):
    return [h for h in response.headers.get_list("set-cookie") if h.startswith("auth_session=")]


def _state_cookie_cleared(response):
    return [
        h for h in response.headers.get_list("set-cookie")
        if h.startswith("google_oauth_state=") and "Max-Age=0" in h
    ]


class TestRegistration:
    def test_register_creates_user_and_sets_cookie(self, client, test_user_email):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": test_user_email,
                "password": "TestPassword123!",
                "name": "  Test User ",
                "nickname": "tester",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["user"] == {
            "email": test_user_email,
            "name": "Test User",
            "nickname": "tester",
        }
        assert "password" not in str(data["data"]["user"])
        (cookie,) = _session_cookie_headers(response)
        assert "HttpOnly" in cookie
        assert "samesite=lax" in cookie.lower()
        assert "Path=/" in cookie
        assert f"Max-Age={THIRTY_DAYS}" in cookie
        assert client.cookies.get("auth_session")

    def test_register_normalizes_email(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "  Mixed.Case@Example.COM ", "password": "pw", "name": "M"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["user"]["email"] == "mixed.case@example.com"

    def test_register_rejects_duplicate_email(self, client, registered, test_user_email):
        response = client.post(
            "/v1/auth/register",
            json={"email": test_user_email.upper(), "password": "Other123!", "name": "Dup"},
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "user_exists"
        assert error["message"] == "User with that email already exists."

    @pytest.mark.parametrize(
        "body",
        [
            {"email": "invalid-email", "password": "pw", "name": "N"},
            {"email": "a@example.com", "password": "", "name": "N"},
            {"email": "a@example.com", "password": "pw", "name": "   "},
            {"email": "a@example.com", "password": "pw"},
        ],
    )
    def test_register_validates_body(self, client, body):
        assert client.post("/v1/auth/register", json=body).status_code == 422


class TestLoginFlow:
    def test_login_sets_session_cookie(self, client, registered, test_user_email, test_user_password):
        client.cookies.clear()

        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": test_user_password}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user_id"] == registered["user_id"]
        assert data["user"]["email"] == test_user_email
        assert len(_session_cookie_headers(response)) == 1

    def test_wrong_password_is_invalid_credentials(self, client, registered, test_user_email):
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "WrongPassword"}
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_credentials"
        assert error["message"] == "Invalid email or password."

    def test_unknown_email_gets_identical_error(self, client, registered):
        unknown = client.post(
            "/v1/auth/login", json={"email": "nobody@example.com", "password": "TestPassword123!"}
        )
        wrong = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": "nope"}
        )

        assert unknown.status_code == wrong.status_code == 400
        assert unknown.json()["error"] == wrong.json()["error"]


class TestSessionLifecycle:
    def test_validate_reports_session(self, client, registered):
        assert client.get("/v1/auth/validate").json()["data"] == {"session": True}

        client.cookies.clear()
        assert client.get("/v1/auth/validate").json()["data"] == {"session": False}

    def test_me_requires_session(self, client):
        response = client.get("/v1/users/@me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_returns_public_user(self, client, registered, test_user_email):
        response = client.get("/v1/users/@me")

        assert response.status_code == 200
        assert response.json()["data"]["user"] == {
            "email": test_user_email,
            "name": "Test User",
            "nickname": None,
        }

    def test_unknown_cookie_is_cleared(self, client):
        client.cookies.set("auth_session", "forged-session-id")

        response = client.get("/v1/auth/validate")

        assert response.json()["data"] == {"session": False}
        (cookie,) = _session_cookie_headers(response)
        assert "Max-Age=0" in cookie

    def test_valid_session_sends_no_cookie(self, client, registered):
        response = client.get("/v1/auth/validate")
        assert _session_cookie_headers(response) == []

    def test_aging_session_is_renewed_with_new_cookie(self, client, registered):
        session_id = client.cookies.get("auth_session")
        store = get_runtime().store
        store.sessions[session_id].expires_at = utcnow() + timedelta(days=2)

        response = client.get("/v1/users/@me")

        assert response.status_code == 200
        (cookie,) = _session_cookie_headers(response)
        assert cookie.startswith(f"auth_session={session_id}")
        assert f"Max-Age={THIRTY_DAYS}" in cookie
        assert store.get_session(session_id).expires_at - utcnow() > timedelta(days=29)

    def test_expired_session_is_rejected_and_purged(self, client, registered):
        session_id = client.cookies.get("auth_session")
        store = get_runtime().store
        store.sessions[session_id].expires_at = utcnow() - timedelta(seconds=1)

        assert client.get("/v1/users/@me").status_code == 401
        assert store.get_session(session_id) is None

    def test_logout_invalidates_and_clears_cookie(self, client, registered):
        session_id = client.cookies.get("auth_session")

        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"message": "success"}
        (cookie,) = _session_cookie_headers(response)
        assert "Max-Age=0" in cookie
        assert get_runtime().store.get_session(session_id) is None
        assert client.get("/v1/auth/validate").json()["data"] == {"session": False}

    def test_logout_without_session_still_succeeds(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert len(_session_cookie_headers(response)) == 1


class TestGoogleSignIn:
    @pytest.fixture
    def fake_google(self, make_fake_google):
        fake = make_fake_google()
        reset_runtime_for_tests(oauth_transport=fake.transport)
        return fake

    def _start(self, client):
        response = client.get("/v1/auth/google", follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        query = {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}
        return response, location, query

    def test_start_redirects_to_google_with_state_cookie(self, client, fake_google):
        response, location, query = self._start(client)

        assert location.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert query["code_challenge_method"] == "S256"
        assert query["client_id"] == "test-client-id"
        state_cookie = [
            h for h in response.headers.get_list("set-cookie")
            if h.startswith("google_oauth_state=")
        ]
        assert len(state_cookie) == 1
        assert "HttpOnly" in state_cookie[0]
        assert "Max-Age=600" in state_cookie[0]

    def test_callback_signs_in_new_user(self, client, fake_google):
        _, _, query = self._start(client)

        response = client.get(
            "/v1/auth/callback/google",
            params={"code": "auth-code", "state": query["state"]},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert len(_session_cookie_headers(response)) == 1
        assert fake_google.token_form()["code"] == "auth-code"
        me = client.get("/v1/users/@me").json()["data"]["user"]
        assert me == {"email": "ann@example.com", "name": "Ann Example", "nickname": None}

    def test_callback_state_mismatch_rejected_without_provider_call(self, client, fake_google):
        self._start(client)

        response = client.get(
            "/v1/auth/callback/google",
            params={"code": "auth-code", "state": "attacker-state"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "oauth_state_mismatch"
        assert len(_state_cookie_cleared(response)) == 1
        assert fake_google.requests == []
        assert client.get("/v1/auth/validate").json()["data"] == {"session": False}

    def test_callback_without_state_cookie_rejected(self, client, fake_google):
        response = client.get(
            "/v1/auth/callback/google",
            params={"code": "auth-code", "state": "whatever"},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "oauth_state_mismatch"

    def test_provider_rejection_is_reported(self, client, make_fake_google):
        fake = make_fake_google(token_status=400, token_body={"error": "invalid_grant"})
        reset_runtime_for_tests(oauth_transport=fake.transport)
        _, _, query = self._start(client)

        response = client.get(
            "/v1/auth/callback/google",
            params={"code": "stale", "state": query["state"]},
            follow_redirects=False,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "oauth_provider_error"
        assert len(_state_cookie_cleared(response)) == 1


class TestMagicLink:
    @pytest.fixture
    def outbox(self, monkeypatch):
        sent = []

        def capture(to_email, url, expires_minutes):
            sent.append({"to": to_email, "url": url, "minutes": expires_minutes})
            return True

        monkeypatch.setattr(get_runtime().email, "send_magic_link", capture)
        return sent

    def _callback_path(self, url):
        parts = urlsplit(url)
        return f"{parts.path}?{parts.query}"

    def test_request_and_callback_sign_in(self, client, registered, test_user_email, outbox):
        client.cookies.clear()

        response = client.post("/v1/auth/magic", json={"email": test_user_email})

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "sent"
        assert outbox[0]["to"] == test_user_email
        assert outbox[0]["minutes"] == 15

        callback = client.get(self._callback_path(outbox[0]["url"]), follow_redirects=False)

        assert callback.status_code == 302
        assert callback.headers["location"] == "/"
        assert len(_session_cookie_headers(callback)) == 1
        assert client.get("/v1/auth/validate").json()["data"] == {"session": True}

    def test_link_works_only_once(self, client, registered, test_user_email, outbox):
        client.post("/v1/auth/magic", json={"email": test_user_email})
        path = self._callback_path(outbox[0]["url"])
        client.get(path, follow_redirects=False)
        client.cookies.clear()

        replay = client.get(path, follow_redirects=False)

        assert replay.status_code == 302
        assert replay.headers["location"] == "/magic-link?error=invalid_or_expired_token"
        assert _session_cookie_headers(replay) == []

    def test_expired_link_redirects_to_retry(self, client, registered, test_user_email, outbox):
        client.post("/v1/auth/magic", json={"email": test_user_email})
        identifier = parse_qs(urlsplit(outbox[0]["url"]).query)["identifier"][0]
        get_runtime().store.verification_tokens[identifier].expires = utcnow() - timedelta(seconds=1)

        response = client.get(self._callback_path(outbox[0]["url"]), follow_redirects=False)

        assert response.headers["location"] == "/magic-link?error=invalid_or_expired_token"

    def test_unknown_email_is_not_found(self, client, outbox):
        response = client.post("/v1/auth/magic", json={"email": "nobody@example.com"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "user_not_found"
        assert outbox == []

    def test_malformed_callback_email_redirects_to_retry(self, client):
        response = client.get(
            "/v1/auth/magic/callback",
            params={"identifier": "x", "email": "not-an-email"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"].startswith("/magic-link?error=")


class TestRequestGuards:
    def test_cross_origin_post_rejected(self, client, registered, test_user_email):
        response = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": "TestPassword123!"},
            headers={"Origin": "https://evil.example"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_allowed_origin_post_accepted(self, client, registered, test_user_email):
        response = client.post(
            "/v1/auth/login",
            json={"email": test_user_email, "password": "TestPassword123!"},
            headers={"Origin": "http://localhost:3000"},
        )

        assert response.status_code == 200

    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/validate", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/validate")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["checks"]["store"] == {"status": "ok"}
