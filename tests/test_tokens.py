import base64
import json
from datetime import timedelta

import pytest

from warden.service.errors import TokenExpiredError, TokenInvalidError
from warden.service.tokens import TokenIssuer, hash_token
from warden.storage.models import User

SECRET = "token-test-secret-0123456789-abcdefghijklmnop"


def _user() -> User:
    return User(id="user-1", email="t@example.com", first_name="T", last_name="U", password_hash="x")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def issuer(clock):
    return TokenIssuer(SECRET, issuer="warden", audience="warden-clients", clock=clock)


def test_access_token_round_trip(issuer, clock):
    token = issuer.issue_access_token(_user(), timedelta(hours=1))
    claims = issuer.validate_access_token(token)
    assert claims.user_id == "user-1"
    assert claims.email == "t@example.com"
    assert claims.token_type == "access"
    assert claims.expires_at == clock().replace(microsecond=0) + timedelta(hours=1)
    assert claims.jti


def test_tokens_are_unique_per_issue(issuer):
    user = _user()
    first = issuer.issue_access_token(user, timedelta(hours=1))
    second = issuer.issue_access_token(user, timedelta(hours=1))
    assert first != second


def test_expired_token(issuer, clock):
    token = issuer.issue_access_token(_user(), timedelta(minutes=5))
    clock.advance(minutes=5, seconds=1)
    with pytest.raises(TokenExpiredError):
        issuer.validate_access_token(token)


def test_tampered_signature_rejected(issuer):
    token = issuer.issue_access_token(_user(), timedelta(hours=1))
    header, payload, _sig = token.split(".")
    forged_payload = _b64({"sub": "someone-else", "token_type": "access"})
    with pytest.raises(TokenInvalidError):
        issuer.validate_access_token(f"{header}.{forged_payload}.{_sig}")


def test_other_secret_rejected(issuer, clock):
    other = TokenIssuer("a-completely-different-secret-value-xyz", issuer="warden", audience="warden-clients", clock=clock)
    token = other.issue_access_token(_user(), timedelta(hours=1))
    with pytest.raises(TokenInvalidError):
        issuer.validate_access_token(token)


def test_wrong_audience_and_issuer(clock):
    user = _user()
    ours = TokenIssuer(SECRET, issuer="warden", audience="warden-clients", clock=clock)
    other_aud = TokenIssuer(SECRET, issuer="warden", audience="someone-else", clock=clock)
    other_iss = TokenIssuer(SECRET, issuer="elsewhere", audience="warden-clients", clock=clock)
    with pytest.raises(TokenInvalidError, match="audience"):
        ours.validate_access_token(other_aud.issue_access_token(user, timedelta(hours=1)))
    with pytest.raises(TokenInvalidError, match="issuer"):
        ours.validate_access_token(other_iss.issue_access_token(user, timedelta(hours=1)))


def test_none_algorithm_rejected(issuer):
    header = _b64({"alg": "none", "typ": "JWT"})
    payload = _b64({"sub": "user-1", "token_type": "access", "exp": 9999999999})
    with pytest.raises(TokenInvalidError, match="algorithm"):
        issuer.validate_access_token(f"{header}.{payload}.")


@pytest.mark.parametrize("token", [None, "", "not-a-jwt", "a.b", "a.b.c.d"])
def test_malformed_tokens(issuer, token):
    with pytest.raises(TokenInvalidError):
        issuer.validate_access_token(token)


def test_refresh_token_is_random_and_hashed(issuer):
    first = issuer.issue_refresh_token()
    second = issuer.issue_refresh_token()
    assert first.raw != second.raw
    assert len(first.raw) == 128
    assert first.hash == hash_token(first.raw)
    assert first.hash != first.raw


def test_empty_secret_refused(clock):
    with pytest.raises(ValueError):
        TokenIssuer("", issuer="warden", audience="warden-clients", clock=clock)


@pytest.mark.parametrize("signature", ["éé", "sigÿ", "١٢"])
def test_non_ascii_signature_rejected(issuer, signature):
    header, payload, _ = issuer.issue_access_token(_user(), timedelta(hours=1)).split(".")
    with pytest.raises(TokenInvalidError):
        issuer.validate_access_token(f"{header}.{payload}.{signature}")


def test_non_ascii_anywhere_rejected(issuer):
    token = issuer.issue_access_token(_user(), timedelta(hours=1))
    with pytest.raises(TokenInvalidError):
        issuer.validate_access_token("é" + token)
