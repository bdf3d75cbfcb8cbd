"""End-to-end tests for the OAuth2 / OpenID Connect browser flow."""

import base64
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

from hidauth import app as app_module
from hidauth.service.runtime import get_runtime

EMAIL = "oauth-user@example.org"
PASSWORD = "TestPassword123!"
CLIENT_ID = "partner-app"
CLIENT_SECRET = "partner-secret"
REDIRECT_URI = "https://partner.example.org/callback"

AUTHORIZE_PARAMS = {
    "client_id": CLIENT_ID,
    "redirect_uri": REDIRECT_URI,
    "response_type": "code",
    "scope": "openid email",
    "state": "abc",
    "nonce": "n-0S6",
}


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def account():
    runtime = get_runtime()
    created = runtime.store.create_account(EMAIL, email_verified=True)
    runtime.credentials.set_password(created.id, PASSWORD)
    return created


@pytest.fixture
def oauth_client():
    return get_runtime().store.create_client(CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, name="Partner")


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _basic():
    return "Basic " + base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()


def _login(client, **extra):
    return client.post(
        "/login",
        data={"email": EMAIL, "password": PASSWORD, **extra},
        follow_redirects=False,
    )


def _authorize_with_consent(client):
    prompt = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
    assert prompt.status_code == 200, prompt.text
    transaction_id = prompt.json()["data"]["transaction_id"]
    decision = client.post(
        "/oauth/authorize",
        data={"transaction_id": transaction_id, "bsubmit": "Allow"},
        follow_redirects=False,
    )
    assert decision.status_code == 302
    return decision.headers["location"]


class TestAuthorizeEndpoint:
    def test_anonymous_redirected_to_login(self, client, oauth_client):
        response = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("/?")
        assert location.endswith("#login")
        assert _query(location.split("#")[0])["redirect"] == "/oauth/authorize"

    def test_prompt_none_anonymous(self, client, oauth_client):
        response = client.get(
            "/oauth/authorize",
            params={**AUTHORIZE_PARAMS, "prompt": "none"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert _query(response.headers["location"])["error"] == "login_required"

    def test_login_returns_to_authorize(self, client, account, oauth_client):
        response = _login(client, redirect="/oauth/authorize", **AUTHORIZE_PARAMS)
        assert response.status_code == 302
        location = response.headers["location"]
        assert urlsplit(location).path == "/oauth/authorize"
        assert _query(location)["client_id"] == CLIENT_ID

    def test_consent_prompt(self, client, account, oauth_client):
        _login(client)
        response = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        data = response.json()["data"]
        assert data["client"] == {"id": CLIENT_ID, "name": "Partner", "redirect_uri": REDIRECT_URI}
        assert data["scope"] == "openid email"

    def test_unknown_client(self, client, account):
        _login(client)
        response = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"
        assert response.json()["error"]["details"] == {"go_back": None}

    def test_redirect_mismatch(self, client, account, oauth_client):
        _login(client)
        response = client.get(
            "/oauth/authorize",
            params={**AUTHORIZE_PARAMS, "redirect_uri": "https://evil.example.net/cb"},
            follow_redirects=False,
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"go_back": "https://evil.example.net"}

    def test_deny(self, client, account, oauth_client):
        _login(client)
        prompt = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        response = client.post(
            "/oauth/authorize",
            data={"transaction_id": prompt.json()["data"]["transaction_id"], "bsubmit": "Deny"},
            follow_redirects=False,
        )
        assert response.headers["location"] == "/"
        assert client.get("/v1/account/clients").json()["data"] == []

    def test_decision_without_choice_is_denied(self, client, account, oauth_client):
        _login(client)
        prompt = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        response = client.post(
            "/oauth/authorize",
            data={"transaction_id": prompt.json()["data"]["transaction_id"]},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert client.get("/v1/account/clients").json()["data"] == []
        assert CLIENT_ID not in get_runtime().store.get_account(account.id).authorized_clients

    def test_prompt_none_without_redirect_uri(self, client, oauth_client):
        params = {k: v for k, v in AUTHORIZE_PARAMS.items() if k != "redirect_uri"}
        response = client.get(
            "/oauth/authorize", params={**params, "prompt": "none"}, follow_redirects=False
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"

    def test_unknown_transaction(self, client, account, oauth_client):
        _login(client)
        response = client.post(
            "/oauth/authorize", data={"transaction_id": "forged"}, follow_redirects=False
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_request"


class TestTokenEndpoint:
    def test_full_flow(self, client, account, oauth_client):
        _login(client)
        location = _authorize_with_consent(client)
        assert location.startswith(REDIRECT_URI)
        query = _query(location)
        assert query["state"] == "abc"

        response = client.post(
            "/oauth/access_token",
            data={
                "grant_type": "authorization_code",
                "code": query["code"],
                "redirect_uri": REDIRECT_URI,
            },
            headers={"Authorization": _basic()},
        )
        assert response.status_code == 200, response.text
        assert response.headers["cache-control"] == "no-store"
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert {"access_token", "refresh_token", "id_token", "expires_in"} <= set(body)

        me = client.get("/v1/account", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["data"]["id"] == account.id

        replay = client.post(
            "/oauth/access_token",
            data={"grant_type": "authorization_code", "code": query["code"], "redirect_uri": REDIRECT_URI},
            headers={"Authorization": _basic()},
        )
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_second_authorization_skips_consent(self, client, account, oauth_client):
        _login(client)
        _authorize_with_consent(client)
        response = client.get("/oauth/authorize", params=AUTHORIZE_PARAMS, follow_redirects=False)
        assert response.status_code == 302
        assert "code" in _query(response.headers["location"])

    def test_refresh_grant(self, client, account, oauth_client):
        _login(client)
        code = _query(_authorize_with_consent(client))["code"]
        tokens = client.post(
            "/oauth/access_token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
            },
        ).json()
        response = client.post(
            "/oauth/access_token",
            data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
            headers={"Authorization": _basic()},
        )
        assert response.status_code == 200
        assert "refresh_token" not in response.json()

    def test_bad_client_secret(self, client, oauth_client):
        response = client.post(
            "/oauth/access_token",
            data={"grant_type": "authorization_code", "code": "x"},
            headers={"Authorization": "Basic " + base64.b64encode(b"partner-app:wrong").decode()},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "WWW-Authenticate" in response.headers

    def test_unsupported_grant(self, client, oauth_client):
        response = client.post(
            "/oauth/access_token",
            data={"grant_type": "password"},
            headers={"Authorization": _basic()},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"


class TestConsentManagement:
    def test_list_and_revoke(self, client, account, oauth_client):
        _login(client)
        _authorize_with_consent(client)
        listing = client.get("/v1/account/clients").json()["data"]
        assert [c["id"] for c in listing] == [CLIENT_ID]

        assert client.delete(f"/v1/account/clients/{CLIENT_ID}").status_code == 200
        assert client.get("/v1/account/clients").json()["data"] == []
        assert client.delete(f"/v1/account/clients/{CLIENT_ID}").status_code == 404


class TestDiscovery:
    def test_openid_configuration(self, client):
        doc = client.get("/.well-known/openid-configuration").json()
        assert doc["issuer"] == "http://testserver"
        assert doc["authorization_endpoint"] == "http://testserver/oauth/authorize"

    def test_jwks_verifies_tokens(self, client):
        keys = client.get("/oauth/jwks").json()["keys"]
        assert keys[0]["kid"] == get_runtime().keys.kid
        assert keys[0]["alg"] == "RS256"
