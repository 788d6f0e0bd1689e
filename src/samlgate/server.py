"""Run a :class:`~samlgate.asgi.GatewayApp` under Granian.

Granian imports its target by dotted path in every worker, so the gateway
app is registered here first and :func:`load_app` hands it back.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import msgspec
from granian import Granian

from .asgi import GatewayApp
from .config import DEV_PROFILES

logger = logging.getLogger(__name__)

_registered: GatewayApp | None = None


def _as_path(value: str | Path | None) -> Path | None:
    """Coerce ``value`` to a :class:`~pathlib.Path` when one is given."""

    if value is None or isinstance(value, Path):
        return value
    return Path(value)


class TlsFiles(msgspec.Struct, frozen=True):
    """Server certificate and key locations."""

    certificate: Path | None = None
    private_key: Path | None = None

    def missing(self) -> list[str]:
        """Labels for TLS files that are unset or absent on disk."""

        problems: list[str] = []
        for label, path in (("certificate", self.certificate), ("private key", self.private_key)):
            if path is None:
                problems.append(label)
            elif not path.exists():
                problems.append(f"{label} ({path})")
        return problems


class ServerConfig(msgspec.Struct, frozen=True):
    host: str = "0.0.0.0"
    port: int = 8443
    workers: int = 1
    certificate_path: str | Path | None = Path("config/tls/server.crt")
    private_key_path: str | Path | None = Path("config/tls/server.key")
    profile: str = "production"

    @property
    def development(self) -> bool:
        """Whether the profile may serve plain HTTP."""

        return self.profile.lower() in DEV_PROFILES

    @property
    def tls(self) -> TlsFiles:
        """Configured TLS file locations as :class:`TlsFiles`."""

        return TlsFiles(_as_path(self.certificate_path), _as_path(self.private_key_path))


def granian_options(cfg: ServerConfig) -> dict[str, Any]:
    """Translate ``cfg`` into Granian keyword arguments.

    Outside development profiles both TLS files must exist; a development
    profile falls back to plain HTTP when they are absent.
    """

    tls = cfg.tls
    missing = tls.missing()
    if missing and not cfg.development:
        raise RuntimeError(f"TLS assets required for {cfg.profile!r} profile: missing {', '.join(missing)}")
    options: dict[str, Any] = {
        "address": cfg.host,
        "port": cfg.port,
        "interface": "asgi",
        "workers": cfg.workers,
    }
    if missing:
        logger.warning("serving plain HTTP in the %s profile", cfg.profile)
    else:
        options["ssl_cert"] = tls.certificate
        options["ssl_key"] = tls.private_key
    return options


def register_app(app: GatewayApp) -> None:
    """Store ``app`` for retrieval by Granian worker processes."""

    global _registered
    _registered = app


def clear_app() -> None:
    """Forget any registered gateway application."""

    global _registered
    _registered = None


def load_app() -> GatewayApp:
    """Return the gateway app registered in this process."""

    if _registered is None:
        raise RuntimeError("no gateway application registered for Granian")
    return _registered


def create_server(app: GatewayApp, config: ServerConfig | None = None) -> Granian:
    """Register ``app`` and build a Granian server for it; the registration is undone on failure."""

    cfg = config or ServerConfig()
    register_app(app)
    try:
        return Granian("samlgate.server:load_app", **granian_options(cfg))
    except Exception:
        clear_app()
        raise


def run(app: GatewayApp, config: ServerConfig | None = None) -> None:
    """Serve ``app`` until Granian exits."""

    cfg = config or ServerConfig()
    server = create_server(app, cfg)
    logger.info("gateway listening on %s:%s with %d worker(s)", cfg.host, cfg.port, cfg.workers)
    try:
        server.serve(target_loader=load_app, wrap_loader=False)
    finally:
        clear_app()
