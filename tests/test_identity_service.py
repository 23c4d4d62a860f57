from __future__ import annotations

import time

import pytest

from tenant_drive.errors import ErrorKind
from tenant_drive.models import Role
from tenant_drive.tokens import TokenError, decode_token, encode_token


def test_token_round_trip_and_expiry():
    token = encode_token({"sub": "u1"}, "secret", ttl_seconds=60)
    claims = decode_token(token, "secret")
    assert claims["sub"] == "u1" and "jti" in claims
    with pytest.raises(TokenError):
        decode_token(token, "secret", now=time.time() + 120)
    with pytest.raises(TokenError):
        decode_token(token, "other-secret")
    with pytest.raises(TokenError):
        decode_token("not.a-token", "secret")


def test_first_sight_creates_teammate(runtime):
    token = runtime.identity_service.issue_token("u-new", "New@Example.com", "t1")
    principal = runtime.identity_service.authenticate(f"Bearer {token}").unwrap()
    assert principal.role == Role.TEAMMATE
    assert principal.tenant_id == "t1"
    assert principal.email == "new@example.com"
    assert runtime.telemetry.count_events("user_created") == 1


def test_role_claim_never_overrides_stored_role(runtime, config):
    runtime.provision_user("u1", "u1@example.com", "t1", Role.TEAMMATE)
    token = encode_token(
        {"sub": "u1", "email": "u1@example.com", "tenant_id": "t1", "role": "PLATFORM_ADMIN"},
        config.auth.token_secret,
        ttl_seconds=60,
    )
    principal = runtime.identity_service.authenticate(f"Bearer {token}").unwrap()
    assert principal.role == Role.TEAMMATE


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer garbage"])
def test_bad_headers_are_authentication_failures(runtime, header):
    result = runtime.identity_service.authenticate(header)
    assert result.kind == ErrorKind.AUTHENTICATION


def test_token_without_email_rejected(runtime, config):
    token = encode_token({"sub": "u1"}, config.auth.token_secret, ttl_seconds=60)
    assert runtime.identity_service.authenticate(f"Bearer {token}").kind == ErrorKind.AUTHENTICATION


@pytest.mark.parametrize("exp", ["tomorrow", [1], {"at": 1}])
def test_signed_token_with_unreadable_exp_is_rejected(runtime, config, exp):
    token = encode_token({"sub": "u1", "email": "u1@example.com", "exp": exp}, config.auth.token_secret)
    with pytest.raises(TokenError):
        decode_token(token, config.auth.token_secret)
    assert runtime.identity_service.authenticate(f"Bearer {token}").kind == ErrorKind.AUTHENTICATION
