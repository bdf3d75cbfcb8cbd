"""Tests for RS256 bearer tokens, API keys and the blacklist."""

from datetime import timedelta

import pytest
from jose import jwt

from hidauth.service.errors import ExpiredToken, ForbiddenError, InvalidToken, ValidationError
from hidauth.service.tokens import TokenService, load_signing_keys
from hidauth.storage.models import utcnow


@pytest.fixture
def tokens(store, signing_keys):
    return TokenService(store, signing_keys, issuer="http://testserver")


def _exp(seconds):
    return int((utcnow() + timedelta(seconds=seconds)).timestamp())


class TestIssueAndVerify:
    def test_round_trip_claims(self, tokens):
        claims = tokens.verify(tokens.issue({"id": "123", "exp": _exp(60)}))
        assert claims["id"] == "123"
        assert claims["iss"] == "http://testserver"
        assert claims["jti"]

    def test_header_carries_kid(self, tokens):
        header = jwt.get_unverified_header(tokens.issue({"id": "123", "exp": _exp(60)}))
        assert header == {"alg": "RS256", "typ": "JWT", "kid": "test-kid"}

    def test_id_required(self, tokens):
        with pytest.raises(ValidationError):
            tokens.issue({"exp": _exp(60)})

    def test_expired_token(self, tokens):
        token = tokens.issue({"id": "123", "exp": _exp(-10)})
        with pytest.raises(ExpiredToken) as excinfo:
            tokens.verify(token)
        assert excinfo.value.status_code == 401

    def test_tampered_token(self, tokens):
        token = tokens.issue({"id": "123", "exp": _exp(60)})
        header, payload, signature = token.split(".")
        forged = ".".join([header, payload, signature[::-1]])
        with pytest.raises(InvalidToken):
            tokens.verify(forged)

    def test_wrong_issuer_rejected(self, store, signing_keys, tokens):
        other = TokenService(store, signing_keys, issuer="https://elsewhere.example")
        with pytest.raises(InvalidToken):
            tokens.verify(other.issue({"id": "123", "exp": _exp(60)}))

    def test_missing_token(self, tokens):
        with pytest.raises(InvalidToken):
            tokens.verify(None)


class TestApiKeys:
    def test_token_without_exp_is_recorded(self, tokens, store):
        token = tokens.issue({"id": "123"})
        record = store.get_bearer_token(token)
        assert record is not None
        assert record.account_id == "123"
        assert record.blacklisted is False

    def test_token_with_exp_is_not_recorded(self, tokens, store):
        token = tokens.issue({"id": "123", "exp": _exp(60)})
        assert store.get_bearer_token(token) is None

    def test_list_tokens_per_account(self, tokens):
        tokens.issue({"id": "123"})
        tokens.issue({"id": "123"})
        tokens.issue({"id": "456"})
        assert len(tokens.list_tokens("123")) == 2


class TestBlacklist:
    def test_owner_can_blacklist(self, tokens):
        token = tokens.issue({"id": "123"})
        record = tokens.blacklist(token, "123")
        assert record.blacklisted is True
        assert tokens.is_valid(token) is False
        with pytest.raises(InvalidToken):
            tokens.authenticate(token)

    def test_blacklist_records_short_lived_token(self, tokens, store):
        token = tokens.issue({"id": "123", "exp": _exp(60)})
        tokens.blacklist(token, "123")
        assert store.get_bearer_token(token).blacklisted is True

    def test_non_owner_forbidden(self, tokens, store):
        token = tokens.issue({"id": "123"})
        with pytest.raises(ForbiddenError) as excinfo:
            tokens.blacklist(token, "456")
        assert excinfo.value.status_code == 403
        assert store.get_bearer_token(token).blacklisted is False
        assert tokens.is_valid(token) is True

    def test_missing_token(self, tokens):
        with pytest.raises(ValidationError) as excinfo:
            tokens.blacklist("", "123")
        assert excinfo.value.message == "Missing token"

    def test_expired_token_is_not_valid(self, tokens):
        assert tokens.is_valid(tokens.issue({"id": "123", "exp": _exp(-10)})) is False


class TestKeys:
    def test_jwks_exposes_public_key(self, tokens):
        (key,) = tokens.jwks()["keys"]
        assert key["kty"] == "RSA"
        assert key["kid"] == "test-kid"
        assert key["use"] == "sig"
        assert "d" not in key

    def test_generated_keys_persist(self, settings):
        isolated = settings.model_copy(
            update={"jwt_private_key": None, "jwt_public_key": None}
        )
        first = load_signing_keys(isolated)
        second = load_signing_keys(isolated)
        assert first.private_pem == second.private_pem
        assert first.kid == second.kid
