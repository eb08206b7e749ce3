"""
tests/test_oauth.py -- Google login: claim extraction and the callback flow.

The authlib client is replaced by a stub whose authorize_access_token returns
a canned token, so no request leaves the process.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from authlib.integrations.starlette_client import OAuthError

from api.main import app
from auth.models import PROVIDER_GOOGLE
from auth.oauth import get_enabled_providers, google_user_info
from auth.sessions import SESSION_COOKIE
from conftest import make_settings, start_client


class _StubGoogle:
    def __init__(self, token=None, error=None):
        self.token = token
        self.error = error

    async def authorize_access_token(self, request):
        if self.error is not None:
            raise self.error
        return self.token


class _StubOAuth:
    def __init__(self, client):
        self.client = client

    def create_client(self, name):
        return self.client


def _token(email="Grace@Example.com", verified=True, name="Grace Hopper"):
    return {"userinfo": {"email": email, "email_verified": verified, "name": name}}


def _query(resp) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(resp.headers["location"]).query).items()}


@pytest.fixture
def google_client():
    settings = make_settings(google_client_id="cid", google_client_secret="csecret")
    with start_client(settings, follow_redirects=False) as client:
        yield client


def _callback(client, **token_kwargs):
    app.state.oauth = _StubOAuth(_StubGoogle(token=_token(**token_kwargs)))
    return client.get("/api/auth/google/callback")


class TestUserInfo:
    def test_email_is_normalised(self):
        assert google_user_info(_token()) == ("grace@example.com", "Grace Hopper")

    def test_missing_name_is_none(self):
        assert google_user_info(_token(name=""))[1] is None

    @pytest.mark.parametrize(
        "token",
        [
            {},
            {"userinfo": {"email": "a@b.c"}},
            {"userinfo": {"email": "a@b.c", "email_verified": False}},
            {"userinfo": {"email_verified": True}},
        ],
    )
    def test_unverified_or_missing_is_refused(self, token):
        with pytest.raises(ValueError):
            google_user_info(token)


class TestProviders:
    def test_none_when_unconfigured(self, client):
        assert client.get("/api/auth/providers").json() == []
        assert get_enabled_providers(make_settings()) == []

    def test_google_when_configured(self, google_client):
        assert google_client.get("/api/auth/providers").json() == [{"name": "google", "label": "Google"}]

    def test_login_route_404_when_unconfigured(self, client):
        resp = client.get("/api/auth/google")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestCallback:
    def test_first_visit_creates_pending_identity(self, google_client):
        resp = _callback(google_client)
        assert resp.status_code == 302
        assert _query(resp) == {"pending": "1"}
        assert SESSION_COOKIE not in google_client.cookies

        identity = app.state.identities.get_by_username("grace@example.com")
        assert identity.provider == PROVIDER_GOOGLE
        assert identity.approved == 0
        assert identity.password is None
        assert identity.display_name == "Grace Hopper"

        [entry] = app.state.audit.query(action="register")
        assert entry.info == "google"

    def test_approved_identity_gets_session(self, google_client):
        _callback(google_client)
        identity = app.state.identities.get_by_username("grace@example.com")
        app.state.identities.set_approval(identity.id, 1)

        resp = _callback(google_client)
        assert _query(resp) == {"google": "1"}
        assert google_client.get("/api/me").json()["user"]["username"] == "grace@example.com"
        assert app.state.audit.query(action="login", search="google")

    def test_rejected_identity(self, google_client):
        _callback(google_client)
        identity = app.state.identities.get_by_username("grace@example.com")
        app.state.identities.set_approval(identity.id, -1)
        assert _query(_callback(google_client)) == {"rejected": "1"}

    def test_local_account_is_not_taken_over(self, google_client):
        google_client.post("/api/register", json={"username": "grace@example.com", "password": "pw"})
        google_client.cookies.clear()
        resp = _callback(google_client)
        assert _query(resp) == {"error": "account_exists"}
        assert app.state.identities.get_by_username("grace@example.com").provider == "local"

    def test_unverified_email(self, google_client):
        assert _query(_callback(google_client, verified=False)) == {"error": "google"}
        assert app.state.identities.get_by_username("grace@example.com") is None

    def test_token_exchange_failure(self, google_client):
        app.state.oauth = _StubOAuth(_StubGoogle(error=OAuthError(error="mismatching_state")))
        resp = google_client.get("/api/auth/google/callback")
        assert _query(resp) == {"error": "google"}
