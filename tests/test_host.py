from __future__ import annotations

from samlgate.config import UpstreamConfig
from samlgate.host import Host
from tests.support import DOMAIN, build_request, make_config


def test_public_origin_prefers_configured_domain() -> None:
    host = Host(make_config())
    request = build_request("/x", headers=[("Host", "evil.example.com")])

    assert host.public_origin(request) == f"https://{DOMAIN}"


def test_public_origin_falls_back_to_request_host() -> None:
    host = Host(make_config(domain=""))

    assert host.public_origin(build_request("/x")) == f"https://{DOMAIN}"
    assert host.public_origin() == "https://localhost"


def test_non_default_public_port_is_kept() -> None:
    host = Host(make_config(public_port=8443))

    assert host.public_origin() == f"https://{DOMAIN}:8443"
    assert host.public_netloc() == f"{DOMAIN}:8443"


def test_login_url_encodes_current_location_as_relay_state() -> None:
    host = Host(make_config())
    request = build_request("/reports/2024", querystring="page=2&sort=asc")

    assert host.public_url(request) == f"https://{DOMAIN}/reports/2024?page=2&sort=asc"
    assert host.login_url(request) == (
        f"https://{DOMAIN}/login?relay_state=https%3A%2F%2F{DOMAIN}%2Freports%2F2024%3Fpage%3D2%26sort%3Dasc"
    )
    assert host.login_url() == f"https://{DOMAIN}/login"
    assert host.logout_url() == f"https://{DOMAIN}/logout"
    assert host.assert_url() == f"https://{DOMAIN}/assert"


def test_upstream_urls() -> None:
    host = Host(make_config(upstream=UpstreamConfig(hostname="app.internal", port=8080)))
    request = build_request("/api", querystring="q=1")

    assert host.upstream_configured
    assert host.upstream_origin() == "http://app.internal:8080"
    assert host.upstream_url(request) == "http://app.internal:8080/api?q=1"


def test_no_upstream_configured() -> None:
    host = Host(make_config())

    assert not host.upstream_configured
    assert host.upstream_origin() is None
    assert host.upstream_url(build_request("/")) is None


def test_forwarded_headers_describe_public_origin() -> None:
    host = Host(make_config(upstream=UpstreamConfig(hostname="app.internal")))

    headers = dict(host.forwarded_headers(build_request("/")))

    assert headers == {
        "x-forwarded-host": DOMAIN,
        "x-forwarded-proto": "https",
        "x-forwarded-for": "203.0.113.9",
        "host": "app.internal",
    }
