"""Transport-neutral request model."""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping
from urllib.parse import parse_qsl

import msgspec

from .headers import HeaderActivity, Headers, HeaderValue
from .serialization import b64decode_text, json_decode

logger = logging.getLogger(__name__)


class WireBody(msgspec.Struct):
    data: str = ""


class WireRequest(msgspec.Struct):
    """Edge event shape accepted by :meth:`Request.from_wire`."""

    uri: str
    method: str = "GET"
    querystring: str = ""
    client_ip: str | None = msgspec.field(default=None, name="clientIp")
    body: WireBody = msgspec.field(default_factory=WireBody)
    headers: dict[str, list[HeaderValue]] = msgspec.field(default_factory=dict)
    status: str | None = None


class Request:
    """Incoming request as seen by the gateway.

    Only the header bag and ``status`` change while a request is being
    decorated for forwarding; every header write goes through
    :meth:`add_header` or :meth:`remove_header` so ``header_activity`` reflects
    what the gateway did.
    """

    __slots__ = (
        "_query_params",
        "body",
        "client_ip",
        "header_activity",
        "headers",
        "method",
        "querystring",
        "status",
        "uri",
    )

    def __init__(
        self,
        *,
        uri: str,
        method: str = "GET",
        querystring: str = "",
        headers: Headers | Mapping[str, str] | None = None,
        body: str = "",
        client_ip: str | None = None,
        status: str | None = None,
    ) -> None:
        self.uri = uri or "/"
        self.method = method.upper()
        self.querystring = querystring.lstrip("?")
        if isinstance(headers, Headers):
            self.headers = headers
        else:
            self.headers = Headers.from_pairs((headers or {}).items())
        self.body = body
        self.client_ip = client_ip
        self.status = status
        self.header_activity = HeaderActivity()
        self._query_params: MutableMapping[str, list[str]] | None = None

    @staticmethod
    def _parse_query(raw: str) -> MutableMapping[str, list[str]]:
        parsed: MutableMapping[str, list[str]] = {}
        for key, value in parse_qsl(raw, keep_blank_values=True):
            parsed.setdefault(key, []).append(value)
        return parsed

    @property
    def query_params(self) -> MutableMapping[str, list[str]]:
        if self._query_params is None:
            self._query_params = self._parse_query(self.querystring)
        return self._query_params

    def query_param(self, name: str, default: str | None = None) -> str | None:
        values = self.query_params.get(name)
        if not values:
            return default
        return values[0]

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name, default)

    def body_bytes(self) -> bytes:
        if not self.body:
            return b""
        return b64decode_text(self.body)

    def add_header(self, name: str, value: str | None) -> bool:
        """Set ``name`` to ``value`` replacing earlier values; blank values are refused."""

        if value is None or not str(value).strip():
            logger.error("refusing to set header %s to a blank value", name)
            return False
        value = str(value)
        if name in self.headers:
            self.header_activity.modified.set(name, value)
        else:
            self.header_activity.added.set(name, value)
        self.headers.set(name, value)
        return True

    def remove_header(self, name: str) -> bool:
        removed = self.headers.remove(name)
        for item in removed:
            self.header_activity.removed.append(item.key, item.value)
        return bool(removed)

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any] | bytes | str) -> "Request":
        if isinstance(payload, (bytes, str)):
            payload = json_decode(payload)
        wire = msgspec.convert(payload, WireRequest)
        return cls(
            uri=wire.uri,
            method=wire.method,
            querystring=wire.querystring,
            headers=Headers.from_wire(wire.headers),
            body=wire.body.data,
            client_ip=wire.client_ip,
            status=wire.status,
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "uri": self.uri,
            "method": self.method,
            "querystring": self.querystring,
            "body": {"data": self.body},
            "headers": self.headers.to_wire(),
            "headerActivity": self.header_activity.to_wire(),
        }
        if self.client_ip is not None:
            payload["clientIp"] = self.client_ip
        if self.status is not None:
            payload["status"] = self.status
        return payload

    def __repr__(self) -> str:
        return f"Request(method={self.method!r}, uri={self.uri!r}, querystring={self.querystring!r})"
