"""Request routing for the identity-aware gateway.

:meth:`AuthenticationGateway.handle` takes a neutral :class:`Request` and
either returns it decorated with identity headers (forward it to the
protected application) or returns a :class:`Response` (send it back to the
client). The special paths drive the SAML login round trip; every other path
requires a valid session cookie unless the application decides for itself.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from enum import Enum
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

from .config import GatewayConfig
from .credentials import CredentialCache, SecretStore
from .exceptions import AssertionFailure, AssertionRejectedError
from .host import Host
from .http import Status
from .requests import Request
from .responses import (
    EmptyResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
    XmlResponse,
    error_response,
)
from .saml import SamlToolkit, SamlTools, SignedXmlToolkit
from .serialization import b64encode_text, json_encode
from .tokens import SessionClaims, SessionTokens, TokenSigner

logger = logging.getLogger(__name__)

APP_AUTHORIZATION_HEADER = "app_authorization"
AFTER_AUTH_PARAM = "after_auth"
STATE_ERROR_MESSAGE = "Authentication should have resulted in a valid JWT - no valid token found"

_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_URI_COMPONENT_SAFE = "!~*'()"
_URI_PATH_SAFE = "/%:@!$&'()*+,;=~"


class AuthPath(str, Enum):
    LOGIN = "/login"
    LOGOUT = "/logout"
    ASSERT = "/assert"
    METADATA = "/metadata"
    FAVICON = "/favicon.ico"


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def append_after_auth(url: str) -> str:
    """Return ``url`` with ``after_auth=true`` added, keeping its other query parameters.

    Path and fragment are percent-encoded so the result is always ASCII.
    """

    parts = urlsplit(url)
    params = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != AFTER_AUTH_PARAM]
    params.append((AFTER_AUTH_PARAM, "true"))
    path = quote(parts.path or "/", safe=_URI_PATH_SAFE)
    fragment = quote(parts.fragment, safe=_URI_PATH_SAFE + "?")
    return urlunsplit((parts.scheme, parts.netloc, path, urlencode(params), fragment))


class AuthenticationGateway:
    """Enforce SAML Web-SSO in front of a protected application."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        toolkit: SamlToolkit | None = None,
        secret_store: SecretStore | None = None,
        signer: TokenSigner | None = None,
        credentials: CredentialCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.host = Host(config)
        self.credentials = credentials or CredentialCache.from_config(config, store=secret_store, clock=clock)
        self.saml = SamlTools(
            config.saml,
            toolkit or SignedXmlToolkit(clock_skew_seconds=config.saml.clock_skew_seconds),
            self.credentials,
            assert_url=self.host.assert_url(),
            logout_url=self.host.logout_url(),
        )
        self.tokens = SessionTokens(
            config.token,
            self.credentials,
            signer=signer,
            allow_impersonation=config.development,
            clock=clock,
        )
        self._owned_headers = frozenset(
            name.lower()
            for name in (
                "authenticated",
                "user-details",
                "login",
                config.app_login_header,
                config.app_logout_header,
                *(name for name, _ in config.custom_headers),
                *config.protected_headers,
            )
        )

    async def warm_up(self) -> None:
        await self.credentials.ensure_fresh()

    async def handle(self, request: Request) -> Request | Response:
        """Route ``request``; unexpected failures become a plain-text 500."""

        try:
            await self.credentials.ensure_fresh()
            logger.info("%s %s", request.method, request.uri)
            return await self._route(request)
        except Exception as exc:
            logger.exception("unhandled error while handling %s %s", request.method, request.uri)
            return error_response(exc, debug=self.config.debug)

    async def _route(self, request: Request) -> Request | Response:
        uri = request.uri
        if uri == AuthPath.LOGIN.value:
            return self._login(request)
        if uri == AuthPath.LOGOUT.value:
            return self._logout(request)
        if uri == AuthPath.ASSERT.value:
            return await self._assert(request)
        if uri == AuthPath.METADATA.value:
            return XmlResponse(self.saml.get_metadata())
        if uri == AuthPath.FAVICON.value:
            return EmptyResponse()
        return self._protected(request)

    def _login(self, request: Request) -> Response:
        relay_state = self.resolve_relay_state(request.query_param("relay_state"), request)
        logger.info("starting SAML authentication; relay state %s", relay_state)
        return RedirectResponse(self.saml.create_login_request_url(relay_state))

    def _logout(self, request: Request) -> Response:
        if request.query_param("target") == "idp":
            logger.info("redirecting to the IdP logout endpoint")
            return RedirectResponse(self.saml.create_logout_request_url())
        logger.info("clearing the session cookie before IdP logout")
        return RedirectResponse(
            f"{self.host.logout_url(request)}?target=idp",
            headers=(("Set-Cookie", self.tokens.invalidate()),),
        )

    async def _assert(self, request: Request) -> Response:
        try:
            result = await self.saml.send_assert(request)
        except AssertionFailure as exc:
            reason = exc.reason if isinstance(exc, AssertionRejectedError) else str(exc)
            logger.warning("SAML assertion rejected: %s", reason)
            return PlainTextResponse(
                f"SAML assertion rejected: {reason}",
                status=int(Status.INTERNAL_SERVER_ERROR),
                description="Assertion Rejected",
            )
        assertion = result.assertion
        destination = append_after_auth(self.resolve_relay_state(result.relay_state, request))
        claims = SessionClaims(subject=assertion.name_id, attributes=assertion.attributes)
        logger.info("authentication succeeded for %s; redirecting to %s", claims.subject, destination)
        return RedirectResponse(destination, headers=(("Set-Cookie", self.tokens.issue(claims)),))

    def _protected(self, request: Request) -> Request | Response:
        payload = self.tokens.verify(request)
        if payload is not None:
            claims = self.tokens.claims_from_payload(payload)
            if claims is not None:
                logger.info("valid session token for %s; forwarding", claims.subject)
                return self._forward_authenticated(request, payload, claims)
        if (request.query_param(AFTER_AUTH_PARAM) or "").lower() == "true":
            logger.error("no valid session token after authentication for %s", request.uri)
            return PlainTextResponse(
                STATE_ERROR_MESSAGE,
                status=int(Status.INTERNAL_SERVER_ERROR),
                description="State Error",
            )
        if self._app_decides(request):
            logger.info("no session token; application decides whether to authenticate")
            return self._forward_unauthenticated(request)
        login = self.host.login_url(request)
        logger.info("no session token; redirecting to %s", login)
        return RedirectResponse(login)

    def _app_decides(self, request: Request) -> bool:
        if self.config.app_authorization:
            return True
        return self.config.allow_app_authorization_header and request.headers.is_truthy(APP_AUTHORIZATION_HEADER)

    def resolve_relay_state(self, raw: str | None, request: Request) -> str:
        """Turn a relay state into an absolute URL on the gateway's own origin.

        Relative paths resolve against the public origin. Absolute URLs for any
        other host are replaced with the gateway root.
        """

        origin = self.host.public_origin(request)
        root = f"{origin}/"
        value = (raw or "").strip()
        if value.lower().startswith(("http%3a", "https%3a", "%2f")):
            value = unquote(value)
        if not value:
            return root
        if value.startswith("/") and not value.startswith("//"):
            return origin + value
        parts = urlsplit(value)
        if parts.scheme in {"http", "https"} and parts.netloc.lower() == self.host.public_netloc(request).lower():
            return value
        logger.warning("ignoring relay state %r outside %s", value, origin)
        return root

    def _strip_owned_headers(self, request: Request) -> None:
        for name in self._owned_headers:
            if name in request.headers:
                logger.warning("removing client supplied %s header", name)
                request.remove_header(name)

    def _add_navigation_headers(self, request: Request) -> None:
        request.add_header(self.config.app_login_header, encode_uri_component(self.host.login_url(request)))
        request.add_header(self.config.app_logout_header, encode_uri_component(self.host.logout_url(request)))
        for name, value in self.config.custom_headers:
            request.add_header(name, encode_uri_component(value))

    def _forward_authenticated(self, request: Request, payload: dict, claims: SessionClaims) -> Request:
        self._strip_owned_headers(request)
        for name in claims.attributes:
            if name.lower() in request.headers and name.lower() not in self._owned_headers:
                request.remove_header(name)
        request.add_header("authenticated", "true")
        request.add_header("user-details", b64encode_text(json_encode(payload)))
        for name, values in claims.attributes.items():
            if name.lower() in self._owned_headers:
                continue
            if not _HEADER_NAME.match(name):
                logger.warning("attribute %r is not a valid header name; available in user-details only", name)
                continue
            value = ";".join(" ".join(item.splitlines()) for item in values)
            request.add_header(name, value)
        self._add_navigation_headers(request)
        request.status = Status.OK.wire
        return request

    def _forward_unauthenticated(self, request: Request) -> Request:
        self._strip_owned_headers(request)
        request.add_header("authenticated", "false")
        request.add_header("login", AuthPath.LOGIN.value)
        self._add_navigation_headers(request)
        request.status = Status.OK.wire
        return request
