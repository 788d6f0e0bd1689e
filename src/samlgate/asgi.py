"""ASGI hosting adapter for :class:`~samlgate.gateway.AuthenticationGateway`."""

from __future__ import annotations

import html
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from .gateway import AuthenticationGateway
from .headers import Headers
from .host import Host
from .http import Status
from .requests import Request
from .responses import PlainTextResponse, Response
from .serialization import b64encode_text

logger = logging.getLogger(__name__)

Receive = Callable[[], Awaitable[Mapping[str, Any]]]
Send = Callable[[Mapping[str, Any]], Awaitable[None]]
Upstream = Callable[[Request, Host], Awaitable[Response]]
UpstreamErrorHandler = Callable[[Request, Exception], "Awaitable[Response] | Response"]

HeaderPart = bytes | bytearray | memoryview | str


def _decode(part: HeaderPart) -> str:
    if isinstance(part, str):
        return part
    return bytes(part).decode("latin-1")


def request_from_scope(scope: Mapping[str, Any], body: bytes) -> Request:
    """Translate an ASGI HTTP scope and its body into a neutral request."""

    raw_headers: Iterable[tuple[HeaderPart, HeaderPart]] = scope.get("headers", [])
    headers = Headers.from_pairs((_decode(name), _decode(value)) for name, value in raw_headers)
    client = scope.get("client")
    return Request(
        uri=scope.get("path") or "/",
        method=scope.get("method", "GET"),
        querystring=_decode(scope.get("query_string") or b""),
        headers=headers,
        body=b64encode_text(body) if body else "",
        client_ip=client[0] if client else None,
    )


async def echo_upstream(request: Request, host: Host) -> Response:
    """Stand-in application that renders the identity headers it received."""

    listing = html.escape(request.headers.join("\n", except_=("cookie",)))
    page = (
        "<!DOCTYPE html><html><head><title>samlgate</title></head>"
        f"<body><h3>{html.escape(request.method)} {html.escape(request.uri)}</h3><pre>{listing}</pre></body></html>"
    )
    return Response(body=page, headers=Headers.from_pairs([("Content-Type", "text/html; charset=utf-8")]))


async def bad_gateway(request: Request, error: Exception) -> Response:
    return PlainTextResponse(
        f"Upstream request failed: {error}",
        status=int(Status.BAD_GATEWAY),
        description="Bad Gateway",
    )


class GatewayApp:
    """Serve the gateway over ASGI.

    Terminal responses from the gateway are sent back directly. Forwarded
    requests are passed to ``upstream`` with proxy headers applied; failures
    there are turned into a response by ``on_upstream_error``.
    """

    def __init__(
        self,
        gateway: AuthenticationGateway,
        *,
        upstream: Upstream | None = None,
        on_upstream_error: UpstreamErrorHandler | None = None,
        max_body_bytes: int = 1_048_576,
    ) -> None:
        self.gateway = gateway
        self.upstream = upstream or echo_upstream
        self.on_upstream_error = on_upstream_error or bad_gateway
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        scope_type = scope.get("type")
        if scope_type == "lifespan":
            await self._lifespan(receive, send)
            return
        if scope_type == "http":
            await self._handle_http(scope, receive, send)
            return
        raise RuntimeError("GatewayApp only supports HTTP and lifespan scopes")

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            if message.get("type") == "lifespan.startup":
                await self.gateway.warm_up()
                await send({"type": "lifespan.startup.complete"})
            elif message.get("type") == "lifespan.shutdown":
                await send({"type": "lifespan.shutdown.complete"})
                return

    async def _read_body(self, receive: Receive) -> bytes | None:
        buffer = bytearray()
        while True:
            message = await receive()
            message_type = message.get("type")
            if message_type == "http.disconnect":
                break
            if message_type != "http.request":
                continue
            chunk = message.get("body", b"")
            if chunk:
                buffer.extend(bytes(chunk))
                if len(buffer) > self.max_body_bytes:
                    return None
            if not message.get("more_body", False):
                break
        return bytes(buffer)

    async def _handle_http(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        body = await self._read_body(receive)
        if body is None:
            await _send_response(
                PlainTextResponse("Request body too large", status=int(Status.PAYLOAD_TOO_LARGE)), send
            )
            return
        request = request_from_scope(scope, body)
        outcome = await self.gateway.handle(request)
        if isinstance(outcome, Response):
            await _send_response(outcome, send)
            return
        for name, value in self.gateway.host.forwarded_headers(outcome):
            outcome.headers.set(name, value)
        try:
            response = await self.upstream(outcome, self.gateway.host)
        except Exception as exc:
            logger.exception("upstream request for %s failed", outcome.uri)
            result = self.on_upstream_error(outcome, exc)
            response = await result if inspect.isawaitable(result) else result
        await _send_response(response, send)


async def _send_response(response: Response, send: Send) -> None:
    await send(
        {
            "type": "http.response.start",
            "status": response.status,
            "headers": [(name.encode("latin-1"), value.encode("latin-1")) for name, value in response.headers.pairs()],
        }
    )
    await send({"type": "http.response.body", "body": (response.body or "").encode("utf-8")})
