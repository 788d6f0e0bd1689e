"""Public and upstream URL resolution."""

from __future__ import annotations

from urllib.parse import quote, urlsplit

from .config import GatewayConfig
from .requests import Request

_DEFAULT_PORTS = frozenset({80, 443})


def _with_port(hostname: str, port: int | None) -> str:
    """Append ``:port`` to ``hostname`` unless the port is absent or a default one."""

    if port is None or port in _DEFAULT_PORTS:
        return hostname
    return f"{hostname}:{port}"


def _path_and_query(request: Request) -> str:
    """Path plus query string of ``request``, as sent by the client."""

    path = request.uri or "/"
    if request.querystring:
        return f"{path}?{request.querystring}"
    return path


class Host:
    """Derive the gateway's public URLs and the protected application's URL."""

    def __init__(self, config: GatewayConfig) -> None:
        self.config = config

    def public_origin(self, request: Request | None = None) -> str:
        """Return ``https://<domain>[:port]``, always https.

        The configured domain wins; the request ``Host`` header is only used
        when no domain is configured.
        """

        hostname = self.config.domain
        if not hostname and request is not None:
            hostname = (request.header("host") or "").split(":", 1)[0]
        return f"https://{_with_port(hostname or 'localhost', self.config.public_port)}"

    def public_url(self, request: Request) -> str:
        """Absolute public URL of ``request``."""

        return self.public_origin(request) + _path_and_query(request)

    def public_netloc(self, request: Request | None = None) -> str:
        """Host and optional port of the public origin."""

        return urlsplit(self.public_origin(request)).netloc

    def login_url(self, request: Request | None = None) -> str:
        """Gateway login URL that returns the caller to ``request`` afterwards."""

        origin = self.public_origin(request)
        if request is None:
            return f"{origin}/login"
        return f"{origin}/login?relay_state={quote(self.public_url(request), safe='')}"

    def logout_url(self, request: Request | None = None) -> str:
        """Gateway logout URL."""

        return f"{self.public_origin(request)}/logout"

    def assert_url(self, request: Request | None = None) -> str:
        """Assertion consumer URL registered with the IdP."""

        return f"{self.public_origin(request)}/assert"

    @property
    def upstream_configured(self) -> bool:
        return self.config.upstream.configured

    def upstream_origin(self) -> str | None:
        """Origin of the protected application, or ``None`` when unset."""

        upstream = self.config.upstream
        if not upstream.hostname:
            return None
        scheme = "https" if upstream.port == 443 else "http"
        return f"{scheme}://{_with_port(upstream.hostname, upstream.port)}"

    def upstream_url(self, request: Request | None = None) -> str | None:
        """Upstream URL for ``request`` on the protected application."""

        origin = self.upstream_origin()
        if origin is None:
            return None
        if request is None:
            return origin
        return origin + _path_and_query(request)

    def forwarded_headers(self, request: Request) -> list[tuple[str, str]]:
        """Headers a proxy should send upstream so the app sees the public origin."""

        headers = [
            ("x-forwarded-host", self.public_netloc(request)),
            ("x-forwarded-proto", "https"),
        ]
        if request.client_ip:
            headers.append(("x-forwarded-for", request.client_ip))
        origin = self.upstream_origin()
        if origin is not None:
            headers.append(("host", urlsplit(origin).netloc))
        return headers
