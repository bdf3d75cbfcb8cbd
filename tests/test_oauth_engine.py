"""Tests for the authorization-code grant, consent and refresh tokens."""

import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest

from hidauth.service.errors import (
    InvalidClientAuth,
    InvalidGrant,
    InvalidOAuthRequest,
    UnsupportedGrantType,
)
from hidauth.service.oauth import (
    AuthorizationRequest,
    ConfigurationProblem,
    ConsentPrompt,
    OAuthEngine,
    RedirectTo,
    append_query,
    parse_basic_auth,
)
from hidauth.service.session import ANONYMOUS, AwaitingTOTP, SessionBridge
from hidauth.service.tokens import TokenService
from hidauth.storage.models import utcnow

CLIENT_ID = "test-client"
CLIENT_SECRET = "client-secret-value"
REDIRECT_URI = "https://app.example.org/callback"


@pytest.fixture
def tokens(store, signing_keys):
    return TokenService(store, signing_keys, issuer="http://testserver")


@pytest.fixture
def engine(store, tokens, settings):
    return OAuthEngine(store, tokens, settings)


@pytest.fixture
def client(store):
    return store.create_client(
        CLIENT_ID,
        CLIENT_SECRET,
        REDIRECT_URI,
        redirect_urls=["https://app.example.org/alt"],
        name="Test App",
    )


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def logged_in(store, settings, account):
    return SessionBridge(store, settings).begin(account, totp_verified=True)


def _request(**overrides):
    params = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email",
        "state": "xyz",
        "nonce": "n-1",
    }
    params.update(overrides)
    return AuthorizationRequest.from_params(params)


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _basic(client_id=CLIENT_ID, secret=CLIENT_SECRET):
    raw = base64.b64encode(f"{client_id}:{secret}".encode()).decode()
    return f"Basic {raw}"


async def _code(engine, store, account, logged_in):
    store.add_authorized_client(account.id, CLIENT_ID)
    outcome = await engine.authorize(_request(), logged_in)
    return _query(outcome.url)["code"]


class TestHelpers:
    def test_append_query_keeps_existing_params(self):
        url = append_query("https://a.example/cb?x=1", {"code": "abc", "state": None})
        assert url == "https://a.example/cb?x=1&code=abc"

    def test_parse_basic_auth(self):
        assert parse_basic_auth(_basic()) == (CLIENT_ID, CLIENT_SECRET)
        assert parse_basic_auth("Bearer abc") is None
        assert parse_basic_auth("Basic !!!") is None
        assert parse_basic_auth(None) is None

    def test_oauth_params_drop_prompt(self):
        request = _request(prompt="login")
        assert "prompt" not in request.oauth_params()
        assert request.oauth_params()["client_id"] == CLIENT_ID


class TestAuthorize:
    async def test_missing_response_type_redirects_with_error(self, engine, client, logged_in):
        outcome = await engine.authorize(_request(response_type=None), logged_in)
        assert isinstance(outcome, RedirectTo)
        assert outcome.url.startswith(REDIRECT_URI)
        assert _query(outcome.url)["error"] == "invalid_request"

    async def test_missing_response_type_and_redirect(self, engine, logged_in):
        outcome = await engine.authorize(
            _request(response_type=None, redirect_uri=None), logged_in
        )
        assert outcome == ConfigurationProblem()

    async def test_prompt_none_without_session(self, engine, store, client):
        outcome = await engine.authorize(_request(prompt="none"), ANONYMOUS)
        query = _query(outcome.url)
        assert query["error"] == "login_required"
        assert query["state"] == "xyz"
        assert "code" not in query
        assert store.oauth_tokens == {}
        assert store.flood_entries == []

    async def test_prompt_none_without_session_or_redirect(self, engine, store, client):
        outcome = await engine.authorize(_request(prompt="none", redirect_uri=None), ANONYMOUS)
        assert outcome == ConfigurationProblem()
        assert store.oauth_tokens == {}

    async def test_anonymous_redirects_to_login(self, engine, client):
        outcome = await engine.authorize(_request(), ANONYMOUS)
        parts = urlsplit(outcome.url)
        assert parts.path == "/"
        assert parts.fragment == "login"
        query = _query(outcome.url)
        assert query["redirect"] == "/oauth/authorize"
        assert query["client_id"] == CLIENT_ID
        assert query["redirect_uri"] == REDIRECT_URI

    async def test_awaiting_totp_redirects_to_login(self, engine, client, account):
        outcome = await engine.authorize(_request(), AwaitingTOTP(account.id, "sess"))
        assert urlsplit(outcome.url).fragment == "login"

    async def test_prompt_login_forces_login(self, engine, client, logged_in):
        outcome = await engine.authorize(_request(prompt="login"), logged_in)
        assert "prompt" not in _query(outcome.url)
        assert urlsplit(outcome.url).fragment == "login"

    async def test_unknown_client(self, engine, logged_in):
        outcome = await engine.authorize(_request(client_id="nope"), logged_in)
        assert outcome == ConfigurationProblem()

    async def test_redirect_mismatch_offers_go_back(self, engine, client, logged_in):
        outcome = await engine.authorize(
            _request(redirect_uri="https://evil.example.net/cb"), logged_in
        )
        assert outcome == ConfigurationProblem(go_back="https://evil.example.net")

    async def test_alternate_redirect_allowed(self, engine, client, store, account, logged_in):
        store.add_authorized_client(account.id, CLIENT_ID)
        outcome = await engine.authorize(
            _request(redirect_uri="https://app.example.org/alt"), logged_in
        )
        assert outcome.url.startswith("https://app.example.org/alt?")

    async def test_unsupported_response_type(self, engine, client, logged_in):
        outcome = await engine.authorize(_request(response_type="token"), logged_in)
        assert _query(outcome.url)["error"] == "unsupported_response_type"

    async def test_authorized_client_gets_code(self, engine, client, store, account, logged_in):
        store.add_authorized_client(account.id, CLIENT_ID)
        outcome = await engine.authorize(_request(), logged_in)
        query = _query(outcome.url)
        assert query["state"] == "xyz"
        record = store.oauth_tokens[query["code"]]
        assert record.type == "code"
        assert record.redirect_uri == REDIRECT_URI
        assert record.nonce == "n-1"

    async def test_prompt_none_without_consent(self, engine, client, logged_in):
        outcome = await engine.authorize(_request(prompt="none"), logged_in)
        assert _query(outcome.url)["error"] == "interaction_required"

    async def test_new_client_asks_for_consent(self, engine, client, account, logged_in):
        outcome = await engine.authorize(_request(), logged_in)
        assert isinstance(outcome, ConsentPrompt)
        assert outcome.client.id == CLIENT_ID
        assert outcome.account_id == account.id
        assert outcome.scope == "openid email"


class TestDecide:
    async def test_allow_records_consent_and_issues_code(
        self, engine, client, store, account, logged_in
    ):
        prompt = await engine.authorize(_request(), logged_in)
        outcome = await engine.decide(prompt.transaction_id, logged_in, allow=True)
        query = _query(outcome.url)
        assert outcome.url.startswith(REDIRECT_URI)
        assert query["state"] == "xyz"
        assert query["code"] in store.oauth_tokens
        assert store.get_account(account.id).has_authorized_client(CLIENT_ID)

    async def test_deny_redirects_home(self, engine, client, store, account, logged_in):
        prompt = await engine.authorize(_request(), logged_in)
        outcome = await engine.decide(prompt.transaction_id, logged_in, allow=False)
        assert outcome == RedirectTo("/")
        assert not store.get_account(account.id).has_authorized_client(CLIENT_ID)
        assert store.oauth_tokens == {}

    async def test_transaction_is_single_use(self, engine, client, logged_in):
        prompt = await engine.authorize(_request(), logged_in)
        await engine.decide(prompt.transaction_id, logged_in, allow=True)
        with pytest.raises(InvalidOAuthRequest):
            await engine.decide(prompt.transaction_id, logged_in, allow=True)

    async def test_transaction_bound_to_session(
        self, engine, client, store, settings, account, logged_in
    ):
        prompt = await engine.authorize(_request(), logged_in)
        other = SessionBridge(store, settings).begin(account, totp_verified=True)
        with pytest.raises(InvalidOAuthRequest):
            await engine.decide(prompt.transaction_id, other, allow=True)

    async def test_anonymous_decision_redirects_to_login(self, engine):
        outcome = await engine.decide("whatever", ANONYMOUS, allow=True)
        assert urlsplit(outcome.url).fragment == "login"


class TestExchange:
    async def test_code_exchange(self, engine, tokens, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        response = engine.exchange(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
            _basic(),
        )
        payload = response.to_dict()
        assert payload["token_type"] == "Bearer"
        assert payload["expires_in"] == 3600
        claims = tokens.verify(payload["access_token"])
        assert claims["sub"] == account.id
        assert claims["client_id"] == CLIENT_ID
        assert claims["scope"] == "openid email"
        assert store.oauth_tokens[payload["refresh_token"]].type == "refresh"

        id_claims = tokens.verify(payload["id_token"])
        assert id_claims["aud"] == CLIENT_ID
        assert id_claims["nonce"] == "n-1"
        assert id_claims["email"] == account.email

    async def test_no_id_token_without_openid(self, engine, store, account, client, logged_in):
        store.add_authorized_client(account.id, CLIENT_ID)
        outcome = await engine.authorize(_request(scope="email"), logged_in)
        response = engine.exchange(
            {
                "grant_type": "authorization_code",
                "code": _query(outcome.url)["code"],
                "redirect_uri": REDIRECT_URI,
            },
            _basic(),
        )
        assert response.id_token is None
        assert "id_token" not in response.to_dict()

    async def test_code_single_use(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI}
        engine.exchange(form, _basic())
        with pytest.raises(InvalidGrant):
            engine.exchange(form, _basic())

    async def test_client_secret_post(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        response = engine.exchange(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
            }
        )
        assert response.access_token

    async def test_wrong_secret(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        with pytest.raises(InvalidClientAuth) as excinfo:
            engine.exchange(
                {"grant_type": "authorization_code", "code": code},
                _basic(secret="wrong"),
            )
        assert excinfo.value.status_code == 401
        assert code in store.oauth_tokens

    async def test_missing_client_auth(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        with pytest.raises(InvalidClientAuth):
            engine.exchange({"grant_type": "authorization_code", "code": code})

    async def test_code_of_other_client(self, engine, store, account, client, logged_in):
        store.create_client("other", "other-secret", "https://other.example/cb")
        code = await _code(engine, store, account, logged_in)
        with pytest.raises(InvalidGrant):
            engine.exchange(
                {"grant_type": "authorization_code", "code": code},
                _basic("other", "other-secret"),
            )

    async def test_redirect_uri_must_match(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        with pytest.raises(InvalidGrant):
            engine.exchange(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": "https://app.example.org/alt",
                },
                _basic(),
            )

    async def test_expired_code(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        store.oauth_tokens[code].expires_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(InvalidGrant):
            engine.exchange(
                {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
                _basic(),
            )

    @pytest.mark.parametrize(
        "form,error",
        [
            ({}, InvalidOAuthRequest),
            ({"grant_type": "password"}, UnsupportedGrantType),
            ({"grant_type": "authorization_code"}, InvalidOAuthRequest),
            ({"grant_type": "refresh_token"}, InvalidOAuthRequest),
        ],
    )
    def test_malformed_requests(self, engine, client, form, error):
        with pytest.raises(error):
            engine.exchange(form, _basic())

    async def test_refresh_grant(self, engine, tokens, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        first = engine.exchange(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
            _basic(),
        )
        refreshed = engine.exchange(
            {"grant_type": "refresh_token", "refresh_token": first.refresh_token}, _basic()
        )
        assert refreshed.refresh_token is None
        assert tokens.verify(refreshed.access_token)["sub"] == account.id
        again = engine.exchange(
            {"grant_type": "refresh_token", "refresh_token": first.refresh_token}, _basic()
        )
        assert again.access_token

    async def test_refresh_after_revocation(self, engine, store, account, client, logged_in):
        code = await _code(engine, store, account, logged_in)
        first = engine.exchange(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
            _basic(),
        )
        assert engine.revoke_client(account.id, CLIENT_ID) is True
        with pytest.raises(InvalidGrant):
            engine.exchange(
                {"grant_type": "refresh_token", "refresh_token": first.refresh_token},
                _basic(),
            )

    def test_refresh_token_cannot_be_used_as_code(self, engine, client):
        with pytest.raises(InvalidGrant):
            engine.exchange({"grant_type": "authorization_code", "code": "bogus"}, _basic())


class TestConsentManagement:
    def test_authorized_clients(self, engine, store, account, client):
        store.add_authorized_client(account.id, CLIENT_ID)
        store.add_authorized_client(account.id, "deleted-client")
        listing = engine.authorized_clients(store.get_account(account.id))
        assert listing[0] == {"id": CLIENT_ID, "name": "Test App", "redirect_uri": REDIRECT_URI}
        assert listing[1] == {"id": "deleted-client"}

    def test_revoke_unknown_client(self, engine, account):
        assert engine.revoke_client(account.id, "never-authorized") is False

    def test_openid_configuration(self, engine):
        doc = engine.openid_configuration()
        assert doc["issuer"] == "http://testserver"
        assert doc["token_endpoint"] == "http://testserver/oauth/access_token"
        assert doc["jwks_uri"] == "http://testserver/oauth/jwks"
        assert "openid" in doc["scopes_supported"]
        assert doc["id_token_signing_alg_values_supported"] == ["RS256"]
