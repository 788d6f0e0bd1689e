"""Gateway configuration objects and environment loading."""

from __future__ import annotations

import os
from typing import Mapping

import msgspec
from msgspec import Struct

from .exceptions import ConfigurationError
from .serialization import json_decode

_FALSE_VALUES = frozenset({"false", "0", "no", "off"})

DEV_PROFILES: frozenset[str] = frozenset({"development", "dev", "local", "test"})


class SamlConfig(Struct, frozen=True):
    """Service provider identity and the identity provider it trusts."""

    entity_id: str
    entry_point: str
    logout_url: str
    idp_cert: str
    idp_entity_id: str | None = None
    sp_cert: str | None = None
    sp_private_key: str | None = None
    force_authn: bool = True
    sign_requests: bool = True
    clock_skew_seconds: int = 60
    name_id_format: str = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"


class ImpersonationConfig(Struct, frozen=True):
    subject: str
    attributes: dict[str, list[str]] = {}


class TokenConfig(Struct, frozen=True):
    """Session token naming, lifetime and optional locally supplied keys."""

    name: str = "auth-token"
    expiry_seconds: int = 604_800
    private_key: str | None = None
    public_key: str | None = None
    impersonate: ImpersonationConfig | None = None

    @property
    def cookie_name(self) -> str:
        return f"{self.name}-cookie"


class SecretStoreConfig(Struct, frozen=True):
    """Remote secret holding the SAML and token key material."""

    secret_id: str | None = None
    region_name: str | None = None
    refresh_interval_seconds: float = 3600.0
    saml_cert_field: str = "samlCert"
    saml_private_key_field: str = "samlPrivateKey"
    jwt_public_key_field: str = "jwtPublicKey"
    jwt_private_key_field: str = "jwtPrivateKey"

    @property
    def enabled(self) -> bool:
        return bool(self.secret_id)


class UpstreamConfig(Struct, frozen=True):
    """Location of the protected application behind the gateway."""

    hostname: str | None = None
    port: int = 443

    @property
    def configured(self) -> bool:
        return bool(self.hostname)


class GatewayConfig(Struct, frozen=True):
    """Typed configuration for an :class:`~samlgate.gateway.AuthenticationGateway`."""

    saml: SamlConfig
    domain: str = "localhost"
    public_port: int = 443
    app_login_header: str = "app-login-url"
    app_logout_header: str = "app-logout-url"
    app_authorization: bool = False
    allow_app_authorization_header: bool = False
    custom_headers: tuple[tuple[str, str], ...] = ()
    protected_headers: tuple[str, ...] = ()
    token: TokenConfig = TokenConfig()
    secrets: SecretStoreConfig = SecretStoreConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    environment: str = "production"
    debug: bool = False

    @property
    def development(self) -> bool:
        return self.environment.lower() in DEV_PROFILES


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in _FALSE_VALUES


def _integer(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value


def parse_custom_headers(raw: str | None) -> tuple[tuple[str, str], ...]:
    """Parse ``CUSTOM_HEADERS`` given either as a JSON object or ``name=value`` pairs."""

    if raw is None or not raw.strip():
        return ()
    text = raw.strip()
    if text.startswith("{"):
        try:
            document = json_decode(text)
        except msgspec.DecodeError as exc:
            raise ConfigurationError("CUSTOM_HEADERS is not valid JSON") from exc
        if not isinstance(document, dict):
            raise ConfigurationError("CUSTOM_HEADERS must be a JSON object")
        return tuple((str(name), str(value)) for name, value in document.items())
    headers: list[tuple[str, str]] = []
    for chunk in text.split(","):
        if not chunk.strip():
            continue
        name, sep, value = chunk.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(f"CUSTOM_HEADERS entry {chunk!r} is not of the form name=value")
        headers.append((name.strip(), value.strip()))
    return tuple(headers)


def _impersonation(environ: Mapping[str, str]) -> ImpersonationConfig | None:
    subject = _optional(environ, "IMPERSONATE_SUBJECT")
    if subject is None:
        return None
    attributes: dict[str, list[str]] = {}
    raw = _optional(environ, "IMPERSONATE_ATTRIBUTES")
    if raw is not None:
        try:
            document = json_decode(raw)
        except msgspec.DecodeError as exc:
            raise ConfigurationError("IMPERSONATE_ATTRIBUTES is not valid JSON") from exc
        if not isinstance(document, dict):
            raise ConfigurationError("IMPERSONATE_ATTRIBUTES must be a JSON object")
        for name, value in document.items():
            attributes[str(name)] = [str(item) for item in value] if isinstance(value, list) else [str(value)]
    return ImpersonationConfig(subject=subject, attributes=attributes)


def load_config(environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """Build a :class:`GatewayConfig` from environment variables.

    Raises :class:`ConfigurationError` when any identity provider setting
    needed to run the SAML flow is missing.
    """

    env = os.environ if environ is None else environ
    required = {
        "ENTITY_ID": _optional(env, "ENTITY_ID"),
        "ENTRY_POINT": _optional(env, "ENTRY_POINT"),
        "LOGOUT_URL": _optional(env, "LOGOUT_URL"),
        "IDP_CERT": _optional(env, "IDP_CERT"),
    }
    missing = sorted(name for name, value in required.items() if value is None)
    if missing:
        raise ConfigurationError(f"missing SAML configuration: {', '.join(missing)}")

    saml = SamlConfig(
        entity_id=required["ENTITY_ID"] or "",
        entry_point=required["ENTRY_POINT"] or "",
        logout_url=required["LOGOUT_URL"] or "",
        idp_cert=required["IDP_CERT"] or "",
        idp_entity_id=_optional(env, "IDP_ENTITY_ID"),
        sp_cert=_optional(env, "SAML_CERT"),
        sp_private_key=_optional(env, "SAML_PK"),
        force_authn=_flag(env.get("FORCE_AUTHN"), True),
        clock_skew_seconds=_integer(env, "CLOCK_SKEW_SECONDS", 60),
    )
    token = TokenConfig(
        name=_optional(env, "TOKEN_NAME") or "auth-token",
        expiry_seconds=_integer(env, "TOKEN_EXPIRY_SECONDS", 604_800),
        private_key=_optional(env, "JWT_PRIVATE_KEY_PEM"),
        public_key=_optional(env, "JWT_PUBLIC_KEY_PEM"),
        impersonate=_impersonation(env),
    )
    secrets = SecretStoreConfig(
        secret_id=_optional(env, "SECRET_ID"),
        region_name=_optional(env, "SECRET_REGION"),
        refresh_interval_seconds=_number(env, "SECRET_REFRESH_INTERVAL", 3600.0),
        saml_cert_field=_optional(env, "SECRET_SAML_CERT_FIELD") or "samlCert",
        saml_private_key_field=_optional(env, "SECRET_SAML_PRIVATE_KEY_FIELD") or "samlPrivateKey",
        jwt_public_key_field=_optional(env, "SECRET_JWT_PUBLIC_KEY_FIELD") or "jwtPublicKey",
        jwt_private_key_field=_optional(env, "SECRET_JWT_PRIVATE_KEY_FIELD") or "jwtPrivateKey",
    )
    upstream = UpstreamConfig(
        hostname=_optional(env, "APP_HOST"),
        port=_integer(env, "APP_PORT", 443),
    )
    protected = tuple(
        name.strip().lower() for name in (env.get("PROTECTED_HEADERS") or "").split(",") if name.strip()
    )
    return GatewayConfig(
        saml=saml,
        domain=_optional(env, "DOMAIN") or "localhost",
        public_port=_integer(env, "SP_PORT", 443),
        app_login_header=_optional(env, "APP_LOGIN_HEADER") or "app-login-url",
        app_logout_header=_optional(env, "APP_LOGOUT_HEADER") or "app-logout-url",
        app_authorization=_flag(env.get("APP_AUTHORIZATION"), False),
        allow_app_authorization_header=_flag(env.get("ALLOW_APP_AUTHORIZATION_HEADER"), False),
        custom_headers=parse_custom_headers(env.get("CUSTOM_HEADERS")),
        protected_headers=protected,
        token=token,
        secrets=secrets,
        upstream=upstream,
        environment=_optional(env, "ENVIRONMENT") or "production",
        debug=_flag(env.get("DEBUG"), False),
    )
