"""Command line utilities for samlgate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Sequence

from .asgi import GatewayApp
from .config import GatewayConfig, SecretStoreConfig, load_config
from .exceptions import ConfigurationError
from .gateway import AuthenticationGateway
from .keys import generate_key_material
from .serialization import json_encode
from .server import ServerConfig, run

PROJECT_NAME = "samlgate"


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    debug = os.environ.get("DEBUG", "").strip().lower() == "true"
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="SAML2 identity-aware gateway")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the gateway behind Granian")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8443)
    serve.add_argument("--workers", type=int, default=1)
    serve.add_argument("--certificate", default="config/tls/server.crt", help="TLS certificate path")
    serve.add_argument("--private-key", default="config/tls/server.key", help="TLS private key path")
    serve.set_defaults(func=_cmd_serve)

    defaults = SecretStoreConfig()
    keys = sub.add_parser("keys", help="Generate a secret-store record with fresh key material")
    keys.add_argument("--common-name", default="localhost", help="Subject of the SAML certificate")
    keys.add_argument("--pem", action="store_true", help="Emit full PEM documents instead of bare bodies")
    keys.add_argument("--saml-cert-field", default=defaults.saml_cert_field)
    keys.add_argument("--saml-private-key-field", default=defaults.saml_private_key_field)
    keys.add_argument("--jwt-public-key-field", default=defaults.jwt_public_key_field)
    keys.add_argument("--jwt-private-key-field", default=defaults.jwt_private_key_field)
    keys.set_defaults(func=_cmd_keys)

    metadata = sub.add_parser("metadata", help="Print service provider metadata for IdP registration")
    metadata.set_defaults(func=_cmd_metadata)

    return parser


def _load_config() -> GatewayConfig | None:
    try:
        return load_config()
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return None


def _cmd_serve(args: argparse.Namespace) -> int:
    config = _load_config()
    if config is None:
        return 2
    app = GatewayApp(AuthenticationGateway(config))
    run(
        app,
        ServerConfig(
            host=args.host,
            port=args.port,
            workers=args.workers,
            certificate_path=args.certificate,
            private_key_path=args.private_key,
            profile=config.environment,
        ),
    )
    return 0


def _cmd_keys(args: argparse.Namespace) -> int:
    saml = generate_key_material(common_name=args.common_name)
    token = generate_key_material(common_name=args.common_name)
    if args.pem:
        values = (saml.certificate_pem, saml.private_key_pem, token.public_key_pem, token.private_key_pem)
    else:
        values = (saml.certificate, saml.private_key, token.public_key, token.private_key)
    fields = (
        args.saml_cert_field,
        args.saml_private_key_field,
        args.jwt_public_key_field,
        args.jwt_private_key_field,
    )
    print(json_encode(dict(zip(fields, values))).decode("utf-8"))
    return 0


def _cmd_metadata(args: argparse.Namespace) -> int:
    config = _load_config()
    if config is None:
        return 2
    gateway = AuthenticationGateway(config)
    asyncio.run(gateway.warm_up())
    print(gateway.saml.get_metadata())
    return 0
