from __future__ import annotations

from samlgate.headers import Headers, HeaderValue


def test_get_is_case_insensitive_and_first_value_wins() -> None:
    headers = Headers.from_pairs([("Cookie", "a=1"), ("cookie", "b=2")])

    assert headers.get("COOKIE") == "a=1"
    assert headers.get_all("cookie") == ["a=1", "b=2"]
    assert headers.get("missing") is None
    assert headers.get(None) is None


def test_is_truthy_only_accepts_true() -> None:
    headers = Headers.from_pairs([("app_authorization", "TRUE"), ("other", "yes")])

    assert headers.is_truthy("App_Authorization")
    assert not headers.is_truthy("other")
    assert not headers.is_truthy("missing")


def test_join_skips_excluded_names() -> None:
    headers = Headers.from_pairs([("Host", "example.edu"), ("Cookie", "secret"), ("Accept", "text/html")])

    assert headers.join("\n", except_=("COOKIE",)) == "host: example.edu\naccept: text/html"


def test_set_replaces_and_remove_returns_values() -> None:
    headers = Headers.from_pairs([("X-Test", "one"), ("x-test", "two")])
    headers.set("X-Test", "three")

    assert headers.get_all("x-test") == ["three"]
    assert headers.remove("X-TEST") == [HeaderValue("X-Test", "three")]
    assert "x-test" not in headers
    assert headers.empty


def test_wire_shape_preserves_original_case() -> None:
    wire = {"content-type": [{"key": "Content-Type", "value": "text/plain"}]}
    headers = Headers.from_wire(wire)

    assert headers.pairs() == [("Content-Type", "text/plain")]
    assert headers.to_wire() == wire
    assert Headers.from_wire(headers.to_wire()) == headers
