from __future__ import annotations

import logging

import jwt
import pytest
from msgspec import structs

from samlgate.config import ImpersonationConfig, TokenConfig
from samlgate.credentials import CredentialCache
from samlgate.exceptions import TokenError
from samlgate.keys import load_private_key
from samlgate.tokens import JwtSigner, SessionClaims, SessionTokens
from tests.support import build_request, cookie_value, key_material, make_config

ISSUED_AT = 1_700_000_000.0
CLAIMS = SessionClaims(
    subject="jdoe@example.edu",
    attributes={"givenName": ["Jane"], "eduPersonAffiliation": ["member", "staff"]},
)


async def _tokens(token: TokenConfig | None = None, **kwargs) -> SessionTokens:
    config = make_config()
    if token is not None:
        config = structs.replace(config, token=token)
    cache = CredentialCache.from_config(config)
    await cache.ensure_fresh()
    return SessionTokens(config.token, cache, **kwargs)


def _with_cookie(set_cookie: str, *extra: str):
    return build_request("/private", headers=[("Cookie", "; ".join([*extra, cookie_value(set_cookie)]))])


@pytest.mark.asyncio
async def test_issued_cookie_verifies_and_carries_claims() -> None:
    tokens = await _tokens()

    set_cookie = tokens.issue(CLAIMS, now=ISSUED_AT)
    payload = tokens.verify(_with_cookie(set_cookie, "theme=dark"), now=ISSUED_AT + 60)

    assert payload is not None
    assert payload["iat"] == int(ISSUED_AT)
    assert payload["exp"] == int(ISSUED_AT) + 604_800
    assert payload["auth-token"]["sub"] == "jdoe@example.edu"
    assert tokens.claims_from_payload(payload) == CLAIMS


@pytest.mark.asyncio
async def test_cookie_strings() -> None:
    tokens = await _tokens()

    set_cookie = tokens.issue(CLAIMS, now=ISSUED_AT)

    assert set_cookie.startswith("auth-token-cookie=")
    assert set_cookie.endswith("; Max-Age=604800; HttpOnly; Secure")
    assert tokens.invalidate() == (
        "auth-token-cookie=invalidated; Max-Age=0; Expires=Thu, 01 Jan 1970 00:00:00 GMT; Secure; HttpOnly"
    )


@pytest.mark.asyncio
async def test_token_name_changes_cookie_and_claim() -> None:
    token = key_material("token")
    tokens = await _tokens(
        TokenConfig(
            name="campus",
            expiry_seconds=60,
            private_key=token.private_key_pem,
            public_key=token.public_key_pem,
        )
    )

    set_cookie = tokens.issue(CLAIMS, now=ISSUED_AT)
    payload = tokens.verify(_with_cookie(set_cookie), now=ISSUED_AT + 1)

    assert set_cookie.startswith("campus-cookie=")
    assert payload is not None and payload["campus"]["sub"] == CLAIMS.subject


@pytest.mark.asyncio
async def test_token_expires_at_exp() -> None:
    tokens = await _tokens()
    request = _with_cookie(tokens.issue(CLAIMS, now=ISSUED_AT))

    assert tokens.verify(request, now=ISSUED_AT + 604_799) is not None
    assert tokens.verify(request, now=ISSUED_AT + 604_800) is None


@pytest.mark.asyncio
async def test_clock_drives_default_moment() -> None:
    moments = iter([ISSUED_AT, ISSUED_AT + 700_000])
    tokens = await _tokens(clock=lambda: next(moments))

    request = _with_cookie(tokens.issue(CLAIMS))

    assert tokens.verify(request) is None


@pytest.mark.asyncio
async def test_missing_or_garbage_cookie_is_unauthenticated() -> None:
    tokens = await _tokens()

    assert tokens.verify(build_request("/private")) is None
    assert tokens.verify(build_request("/private", headers=[("Cookie", "auth-token-cookie=not.a.jwt")])) is None
    assert tokens.verify(build_request("/private", headers=[("Cookie", "auth-token-cookie=invalidated")])) is None


@pytest.mark.asyncio
async def test_token_signed_with_another_key_is_rejected() -> None:
    tokens = await _tokens()
    forged = JwtSigner().sign(tokens.payload(CLAIMS, now=ISSUED_AT), key_material("attacker").private_key_pem)

    request = build_request("/private", headers=[("Cookie", f"auth-token-cookie={forged}")])

    assert tokens.verify(request, now=ISSUED_AT + 1) is None


@pytest.mark.asyncio
async def test_token_without_named_claim_is_rejected() -> None:
    tokens = await _tokens()
    other = JwtSigner().sign(
        {"someone-else": {"sub": "x"}, "iat": int(ISSUED_AT), "exp": int(ISSUED_AT) + 60},
        key_material("token").private_key_pem,
    )

    request = build_request("/private", headers=[("Cookie", f"auth-token-cookie={other}")])

    assert tokens.verify(request, now=ISSUED_AT + 1) is None


def test_signer_requires_expiry() -> None:
    material = key_material("token")
    token = jwt.encode({"iat": int(ISSUED_AT)}, load_private_key(material.private_key_pem), algorithm="RS256")

    with pytest.raises(TokenError):
        JwtSigner().verify(token, material.public_key_pem, now=ISSUED_AT)


def test_signer_accepts_certificate_as_public_key() -> None:
    material = key_material("token")
    token = JwtSigner().sign({"iat": int(ISSUED_AT), "exp": int(ISSUED_AT) + 10}, material.private_key)

    payload = JwtSigner().verify(token, material.certificate_pem, now=ISSUED_AT)

    assert payload["exp"] == int(ISSUED_AT) + 10


def test_signer_reports_unusable_keys() -> None:
    with pytest.raises(TokenError, match="invalid_private_key"):
        JwtSigner().sign({"exp": 1}, "not a key")
    with pytest.raises(TokenError, match="invalid_public_key"):
        JwtSigner().verify("a.b.c", "not a key", now=0)


@pytest.mark.asyncio
async def test_impersonation_replaces_cookie_when_allowed() -> None:
    token = key_material("token")
    config = TokenConfig(
        private_key=token.private_key_pem,
        public_key=token.public_key_pem,
        impersonate=ImpersonationConfig(subject="tester", attributes={"role": ["admin"]}),
    )
    tokens = await _tokens(config, allow_impersonation=True)

    claims = tokens.claims(build_request("/private"), now=ISSUED_AT)

    assert claims == SessionClaims(subject="tester", attributes={"role": ["admin"]})


@pytest.mark.asyncio
async def test_impersonation_is_ignored_when_not_allowed(caplog: pytest.LogCaptureFixture) -> None:
    token = key_material("token")
    config = TokenConfig(
        private_key=token.private_key_pem,
        public_key=token.public_key_pem,
        impersonate=ImpersonationConfig(subject="tester"),
    )

    with caplog.at_level(logging.WARNING, logger="samlgate.tokens"):
        tokens = await _tokens(config)

    assert tokens.claims(build_request("/private"), now=ISSUED_AT) is None
    assert "impersonation is configured but ignored" in caplog.text
