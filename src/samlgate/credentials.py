"""Process-wide cache of SAML and session-token key material."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

from msgspec import Struct

from .config import GatewayConfig, SecretStoreConfig
from .exceptions import SecretStoreError
from .keys import generate_key_material
from .serialization import json_decode

logger = logging.getLogger(__name__)


class CachedKeys(Struct, frozen=True):
    """One consistent snapshot of the four cached key values."""

    timestamp: float = 0.0
    saml_cert: str = ""
    saml_private_key: str = ""
    jwt_private_key: str = ""
    jwt_public_key: str = ""

    @property
    def complete(self) -> bool:
        return all((self.saml_cert, self.saml_private_key, self.jwt_private_key, self.jwt_public_key))


class SecretFields(Struct, frozen=True):
    """Names of the secret-store record fields holding each key value."""

    saml_cert: str = "samlCert"
    saml_private_key: str = "samlPrivateKey"
    jwt_public_key: str = "jwtPublicKey"
    jwt_private_key: str = "jwtPrivateKey"

    @classmethod
    def from_config(cls, config: SecretStoreConfig) -> "SecretFields":
        return cls(
            saml_cert=config.saml_cert_field,
            saml_private_key=config.saml_private_key_field,
            jwt_public_key=config.jwt_public_key_field,
            jwt_private_key=config.jwt_private_key_field,
        )

    def extract(self, record: Mapping[str, Any], *, timestamp: float) -> CachedKeys:
        values = {
            "saml_cert": record.get(self.saml_cert),
            "saml_private_key": record.get(self.saml_private_key),
            "jwt_private_key": record.get(self.jwt_private_key),
            "jwt_public_key": record.get(self.jwt_public_key),
        }
        missing = sorted(name for name, value in values.items() if not isinstance(value, str) or not value)
        if missing:
            raise SecretStoreError(f"secret record is missing {', '.join(missing)}")
        return CachedKeys(timestamp=timestamp, **values)


class SecretStore(Protocol):
    async def fetch(self) -> Mapping[str, Any]: ...


class AwsSecretsManagerStore:
    """Read a JSON secret from AWS Secrets Manager."""

    def __init__(self, secret_id: str, *, client: Any | None = None, region_name: str | None = None) -> None:
        self.secret_id = secret_id
        self._client = client
        self._region_name = region_name

    def _get_client(self) -> Any:
        if self._client is None:
            import boto3

            self._client = boto3.client("secretsmanager", region_name=self._region_name)
        return self._client

    def _fetch_sync(self) -> Mapping[str, Any]:
        response = self._get_client().get_secret_value(SecretId=self.secret_id)
        secret = response.get("SecretString")
        if not secret:
            raise SecretStoreError(f"secret {self.secret_id!r} has an empty or missing SecretString")
        document = json_decode(secret)
        if not isinstance(document, dict):
            raise SecretStoreError(f"secret {self.secret_id!r} is not a JSON object")
        return document

    async def fetch(self) -> Mapping[str, Any]:
        return await asyncio.to_thread(self._fetch_sync)


def refreshable(keys: CachedKeys, interval: float, now: float) -> bool:
    """Return ``True`` when ``keys`` has an empty field or is older than ``interval`` seconds."""

    if not keys.complete:
        return True
    return now - keys.timestamp > interval


class CredentialCache:
    """Hold the current :class:`CachedKeys` snapshot and refresh it on demand.

    Refreshes replace the whole snapshot in one assignment so readers never
    observe a mix of old and new values. Concurrent refreshes are not
    serialized; the last successful fetch wins.
    """

    def __init__(
        self,
        store: SecretStore | None = None,
        *,
        refresh_interval: float = 3600.0,
        fields: SecretFields | None = None,
        override: CachedKeys | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.refresh_interval = refresh_interval
        self.fields = fields or SecretFields()
        self.override = override if override is not None and override.complete else None
        self._clock = clock
        self._keys = CachedKeys()

    @property
    def keys(self) -> CachedKeys:
        return self._keys

    async def ensure_fresh(self, now: float | None = None) -> bool:
        """Refresh the snapshot when due; returns whether new values were installed.

        Store failures are logged and the previous snapshot is kept.
        """

        moment = self._clock() if now is None else now
        if not refreshable(self._keys, self.refresh_interval, moment):
            return False
        if self.override is not None:
            # Timestamp left as is; the override is reinstalled whenever a refresh is due.
            self._keys = CachedKeys(
                timestamp=self._keys.timestamp,
                saml_cert=self.override.saml_cert,
                saml_private_key=self.override.saml_private_key,
                jwt_private_key=self.override.jwt_private_key,
                jwt_public_key=self.override.jwt_public_key,
            )
            logger.debug("credential cache populated from local override")
            return True
        if self.store is None:
            logger.warning("credential cache is empty and no secret store is configured")
            return False
        started = time.perf_counter()
        try:
            record = await self.store.fetch()
            keys = self.fields.extract(record, timestamp=moment)
        except Exception:
            logger.exception("cannot refresh credentials from the secret store; keeping cached values")
            return False
        self._keys = keys
        logger.info("retrieved credentials from the secret store in %.1f ms", (time.perf_counter() - started) * 1000)
        return True

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        store: SecretStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "CredentialCache":
        """Build the cache for ``config``.

        Without a secret store, any key material not supplied through the
        configuration is generated once for the life of the process.
        """

        if store is None and config.secrets.enabled and config.secrets.secret_id:
            store = AwsSecretsManagerStore(config.secrets.secret_id, region_name=config.secrets.region_name)
        saml_cert = config.saml.sp_cert or ""
        saml_key = config.saml.sp_private_key or ""
        jwt_private = config.token.private_key or ""
        jwt_public = config.token.public_key or ""
        if store is None:
            if not (saml_cert and saml_key):
                logger.warning("no SAML signing key configured; generating an ephemeral key pair")
                material = generate_key_material(common_name=config.domain)
                saml_cert, saml_key = material.certificate_pem, material.private_key_pem
            if not (jwt_private and jwt_public):
                logger.warning("no session token keys configured; generating an ephemeral key pair")
                material = generate_key_material(common_name=config.domain)
                jwt_private, jwt_public = material.private_key_pem, material.public_key_pem
        override = CachedKeys(
            saml_cert=saml_cert,
            saml_private_key=saml_key,
            jwt_private_key=jwt_private,
            jwt_public_key=jwt_public,
        )
        return cls(
            store,
            refresh_interval=config.secrets.refresh_interval_seconds,
            fields=SecretFields.from_config(config.secrets),
            override=override,
            clock=clock,
        )
