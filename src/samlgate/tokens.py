"""Session tokens carried in the gateway cookie."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import jwt
from msgspec import Struct

from .config import TokenConfig
from .credentials import CredentialCache
from .exceptions import TokenError
from .keys import load_private_key, load_public_key
from .requests import Request

logger = logging.getLogger(__name__)

EPOCH_EXPIRES = "Thu, 01 Jan 1970 00:00:00 GMT"


class SessionClaims(Struct, frozen=True):
    """Identity asserted by the IdP and carried by a session token."""

    subject: str
    attributes: dict[str, list[str]] = {}


class TokenSigner(Protocol):
    def sign(self, payload: Mapping[str, Any], private_key: str) -> str: ...

    def verify(self, token: str, public_key: str, *, now: float) -> dict[str, Any]: ...


class JwtSigner:
    """RS256 JSON Web Tokens via PyJWT."""

    algorithm = "RS256"

    def sign(self, payload: Mapping[str, Any], private_key: str) -> str:
        """Sign ``payload`` with RS256; raise :class:`TokenError` for an unusable key."""

        try:
            key = load_private_key(private_key)
        except ValueError as exc:
            raise TokenError("invalid_private_key") from exc
        try:
            return jwt.encode(dict(payload), key, algorithm=self.algorithm)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            raise TokenError("signing_failed") from exc

    def verify(self, token: str, public_key: str, *, now: float) -> dict[str, Any]:
        """Decode ``token`` checking signature and ``exp`` against ``now``."""

        try:
            key = load_public_key(public_key)
        except ValueError as exc:
            raise TokenError("invalid_public_key") from exc
        try:
            payload = jwt.decode(
                token,
                key,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError as exc:
            raise TokenError("invalid_token") from exc
        expires = payload.get("exp")
        if not isinstance(expires, (int, float)) or now >= expires:
            raise TokenError("token_expired")
        return payload


class SessionTokens:
    """Issue, read and verify the session cookie."""

    def __init__(
        self,
        config: TokenConfig,
        credentials: CredentialCache,
        *,
        signer: TokenSigner | None = None,
        allow_impersonation: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.signer = signer or JwtSigner()
        self._clock = clock
        self.impersonating = allow_impersonation and config.impersonate is not None
        if config.impersonate is not None and not allow_impersonation:
            logger.warning("impersonation is configured but ignored outside development environments")

    @property
    def name(self) -> str:
        """Claim name the session claims live under."""

        return self.config.name

    @property
    def cookie_name(self) -> str:
        """Name of the session cookie, ``<name>-cookie``."""

        return self.config.cookie_name

    def payload(self, claims: SessionClaims, *, now: float | None = None) -> dict[str, Any]:
        """Token payload for ``claims`` with ``iat`` and ``exp`` set from ``now``."""

        issued = int(self._clock() if now is None else now)
        return {
            self.name: {"sub": claims.subject, "attributes": {k: list(v) for k, v in claims.attributes.items()}},
            "iat": issued,
            "exp": issued + self.config.expiry_seconds,
        }

    def issue(self, claims: SessionClaims, *, now: float | None = None) -> str:
        """Return a ``Set-Cookie`` value holding a freshly signed token for ``claims``."""

        token = self.signer.sign(self.payload(claims, now=now), self.credentials.keys.jwt_private_key)
        return f"{self.cookie_name}={token}; Max-Age={self.config.expiry_seconds}; HttpOnly; Secure"

    def invalidate(self) -> str:
        """Return a ``Set-Cookie`` value that expires the session cookie."""

        return f"{self.cookie_name}=invalidated; Max-Age=0; Expires={EPOCH_EXPIRES}; Secure; HttpOnly"

    def read_cookie(self, request: Request) -> str | None:
        """Session cookie value from ``request``, if any."""

        for header in request.headers.get_all("cookie"):
            for chunk in header.split(";"):
                name, sep, value = chunk.strip().partition("=")
                if sep and name == self.cookie_name and value:
                    return value.strip().strip('"')
        return None

    def verify(self, request: Request, *, now: float | None = None) -> dict[str, Any] | None:
        """Return the decoded token payload or ``None``; never raises."""

        if self.impersonating and self.config.impersonate is not None:
            claims = SessionClaims(
                subject=self.config.impersonate.subject,
                attributes=dict(self.config.impersonate.attributes),
            )
            logger.debug("impersonating %s", claims.subject)
            return self.payload(claims, now=now)
        token = self.read_cookie(request)
        if token is None:
            return None
        moment = self._clock() if now is None else now
        try:
            payload = self.signer.verify(token, self.credentials.keys.jwt_public_key, now=moment)
        except TokenError as exc:
            logger.info("session token rejected: %s", exc)
            return None
        if self.claims_from_payload(payload) is None:
            logger.info("session token payload has no %s claim", self.name)
            return None
        return payload

    def claims_from_payload(self, payload: Mapping[str, Any]) -> SessionClaims | None:
        """Rebuild :class:`SessionClaims` from a verified payload; ``None`` when the claim is missing."""

        body = payload.get(self.name)
        if not isinstance(body, Mapping) or not isinstance(body.get("sub"), str):
            return None
        attributes: dict[str, list[str]] = {}
        raw = body.get("attributes") or {}
        if isinstance(raw, Mapping):
            for key, value in raw.items():
                attributes[str(key)] = [str(item) for item in value] if isinstance(value, list) else [str(value)]
        return SessionClaims(subject=body["sub"], attributes=attributes)

    def claims(self, request: Request, *, now: float | None = None) -> SessionClaims | None:
        """Claims for ``request``, honouring impersonation when it is allowed."""

        payload = self.verify(request, now=now)
        if payload is None:
            return None
        return self.claims_from_payload(payload)
