"""Response primitives returned when the gateway terminates a request."""

from __future__ import annotations

import traceback
from typing import Any, Iterable

import msgspec

from .headers import Headers
from .http import Status, reason_phrase
from .serialization import json_encode


class Response(msgspec.Struct, frozen=True):
    """Terminal response payload."""

    status: int = int(Status.OK)
    status_description: str = "OK"
    body: str | None = None
    headers: Headers = msgspec.field(default_factory=Headers)

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name, default)

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": str(self.status), "statusDescription": self.status_description}
        if self.body is not None:
            payload["body"] = self.body
        if not self.headers.empty:
            payload["headers"] = self.headers.to_wire()
        return payload


def _build(
    status: int,
    description: str | None,
    body: str | None,
    defaults: Iterable[tuple[str, str]],
    headers: Iterable[tuple[str, str]] | None,
) -> Response:
    bag = Headers.from_pairs(defaults)
    for name, value in headers or ():
        bag.append(name, value)
    return Response(
        status=status,
        status_description=description or reason_phrase(status),
        body=body,
        headers=bag,
    )


def RedirectResponse(location: str, *, headers: Iterable[tuple[str, str]] | None = None) -> Response:
    """Create a ``302 Found`` response pointing at ``location``."""

    return _build(int(Status.FOUND), "Found", None, (("Location", location),), headers)


def PlainTextResponse(
    text: str,
    *,
    status: int = int(Status.OK),
    description: str | None = None,
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    return _build(status, description, text, (("Content-Type", "text/plain"),), headers)


def XmlResponse(
    document: str,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    return _build(status, None, document, (("Content-Type", "application/xml"),), headers)


def EmptyResponse(*, status: int = int(Status.OK)) -> Response:
    return _build(status, None, None, (), None)


def error_response(
    exc: BaseException,
    *,
    debug: bool = False,
    status: int = int(Status.INTERNAL_SERVER_ERROR),
    description: str = "Server Error",
) -> Response:
    """Convert ``exc`` into a plain-text 500 carrying a JSON diagnostic body.

    The traceback is only included when ``debug`` is enabled.
    """

    payload: dict[str, Any] = {"message": str(exc) or exc.__class__.__name__}
    if debug:
        payload["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return PlainTextResponse(json_encode(payload).decode("utf-8"), status=status, description=description)
