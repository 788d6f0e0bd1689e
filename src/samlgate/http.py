"""HTTP status codes the gateway produces and their edge-event spelling."""

from __future__ import annotations

from enum import IntEnum
from http import HTTPStatus


class Status(IntEnum):
    OK = 200
    FOUND = 302
    PAYLOAD_TOO_LARGE = 413
    INTERNAL_SERVER_ERROR = 500
    BAD_GATEWAY = 502

    @property
    def wire(self) -> str:
        """Status as the decimal string edge events carry."""

        return str(self.value)


def ensure_status(status: int | str | Status) -> int:
    """Coerce ``status`` to an ``int``; raise :class:`ValueError` outside 100-599."""

    code = int(status)
    if not 100 <= code <= 599:
        raise ValueError(f"Invalid HTTP status code: {status}")
    return code


def reason_phrase(status: int | str | Status) -> str:
    try:
        return HTTPStatus(ensure_status(status)).phrase
    except ValueError:
        return "Unknown Status"
