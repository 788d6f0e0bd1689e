"""Case-insensitive header bags used by the neutral request and response models."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import msgspec


class HeaderValue(msgspec.Struct, frozen=True):
    """A single header occurrence keeping the name's original casing."""

    key: str
    value: str


class Headers:
    """Ordered mapping of lowercase header names to their values.

    Reads are case-insensitive and the first value wins, so ``get("Cookie")``
    and ``get("cookie")`` always agree regardless of how the header arrived.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, Iterable[HeaderValue]] | None = None) -> None:
        self._entries: dict[str, list[HeaderValue]] = {}
        for name, values in (entries or {}).items():
            items = list(values)
            if items:
                self._entries[name.lower()] = items

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "Headers":
        headers = cls()
        for name, value in pairs:
            headers.append(name, value)
        return headers

    @classmethod
    def from_wire(cls, payload: Mapping[str, Iterable[Any]] | None) -> "Headers":
        """Build headers from the ``{name: [{key, value}]}`` wire shape."""

        headers = cls()
        for name, values in (payload or {}).items():
            for item in values:
                if isinstance(item, HeaderValue):
                    headers._entries.setdefault(name.lower(), []).append(item)
                else:
                    key = item.get("key") or name
                    headers._entries.setdefault(name.lower(), []).append(HeaderValue(key, str(item["value"])))
        return headers

    @property
    def empty(self) -> bool:
        return not self._entries

    def get(self, name: str | None, default: str | None = None) -> str | None:
        if not name:
            return default
        values = self._entries.get(name.lower())
        if not values:
            return default
        return values[0].value

    def get_all(self, name: str) -> list[str]:
        return [item.value for item in self._entries.get(name.lower(), ())]

    def is_truthy(self, name: str) -> bool:
        value = self.get(name)
        return value is not None and value.strip().lower() == "true"

    def join(self, joiner: str, except_: Iterable[str] = ()) -> str:
        """Render ``name: value`` pairs (first value only) separated by ``joiner``."""

        skipped = {name.lower() for name in except_}
        return joiner.join(
            f"{name}: {values[0].value}" for name, values in self._entries.items() if name not in skipped
        )

    def set(self, name: str, value: str) -> None:
        self._entries[name.lower()] = [HeaderValue(name, value)]

    def append(self, name: str, value: str) -> None:
        self._entries.setdefault(name.lower(), []).append(HeaderValue(name, value))

    def remove(self, name: str) -> list[HeaderValue]:
        return self._entries.pop(name.lower(), [])

    def copy(self) -> "Headers":
        return Headers({name: list(values) for name, values in self._entries.items()})

    def items(self) -> Iterator[tuple[str, list[HeaderValue]]]:
        for name, values in self._entries.items():
            yield name, list(values)

    def pairs(self) -> list[tuple[str, str]]:
        """Flatten to ``(original-case name, value)`` tuples."""

        return [(item.key, item.value) for values in self._entries.values() for item in values]

    def to_wire(self) -> dict[str, list[dict[str, str]]]:
        return {
            name: [{"key": item.key, "value": item.value} for item in values]
            for name, values in self._entries.items()
        }

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"Headers({self.pairs()!r})"


@dataclass(slots=True)
class HeaderActivity:
    """Record of the header mutations applied to a forwarded request."""

    added: Headers = field(default_factory=Headers)
    modified: Headers = field(default_factory=Headers)
    removed: Headers = field(default_factory=Headers)

    def to_wire(self) -> dict[str, dict[str, list[dict[str, str]]]]:
        return {
            "added": self.added.to_wire(),
            "modified": self.modified.to_wire(),
            "removed": self.removed.to_wire(),
        }
