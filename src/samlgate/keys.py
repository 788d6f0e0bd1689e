"""RSA key and X.509 certificate helpers.

Key material travels through environment variables and secret-store records
either as full PEM documents or as the bare base64 body of a PEM document.
Every loader here accepts both forms.
"""

from __future__ import annotations

import base64
import binascii
import datetime as dt

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes, PublicKeyTypes
from cryptography.x509.oid import NameOID
from msgspec import Struct


class KeyMaterial(Struct, frozen=True):
    """A freshly generated RSA key pair and self-signed certificate."""

    private_key_pem: str
    public_key_pem: str
    certificate_pem: str

    @property
    def private_key(self) -> str:
        return pem_body(self.private_key_pem)

    @property
    def public_key(self) -> str:
        return pem_body(self.public_key_pem)

    @property
    def certificate(self) -> str:
        return pem_body(self.certificate_pem)


def generate_key_material(
    *,
    common_name: str = "localhost",
    organization: str = "samlgate",
    valid_days: int = 5 * 365,
    key_size: int = 2048,
) -> KeyMaterial:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        ]
    )
    now = dt.datetime.now(dt.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(minutes=1))
        .not_valid_after(now + dt.timedelta(days=valid_days))
        .sign(private_key, hashes.SHA256())
    )
    return KeyMaterial(
        private_key_pem=private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ).decode("ascii"),
        public_key_pem=private_key.public_key()
        .public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
        .decode("ascii"),
        certificate_pem=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
    )


def pem_body(material: str) -> str:
    """Return the base64 body of a PEM document with armour lines and whitespace removed."""

    lines = [line.strip() for line in material.strip().splitlines()]
    return "".join(line for line in lines if line and not line.startswith("-----"))


def _der(material: str) -> bytes:
    return base64.b64decode("".join(pem_body(material).split()), validate=True)


def load_private_key(material: str) -> PrivateKeyTypes:
    text = material.strip()
    if not text:
        raise ValueError("empty private key")
    errors: list[Exception] = []
    if "-----BEGIN" in text:
        try:
            return serialization.load_pem_private_key(text.encode(), password=None)
        except (ValueError, TypeError) as exc:
            errors.append(exc)
    try:
        return serialization.load_der_private_key(_der(text), password=None)
    except (ValueError, TypeError, binascii.Error) as exc:
        errors.append(exc)
    raise ValueError("unsupported_private_key_format") from errors[-1]


def load_certificate(material: str) -> x509.Certificate:
    text = material.strip()
    if not text:
        raise ValueError("empty certificate")
    errors: list[Exception] = []
    if "-----BEGIN" in text:
        try:
            return x509.load_pem_x509_certificate(text.encode())
        except ValueError as exc:
            errors.append(exc)
    try:
        return x509.load_der_x509_certificate(_der(text))
    except (ValueError, binascii.Error) as exc:
        errors.append(exc)
    raise ValueError("unsupported_certificate_format") from errors[-1]


def load_public_key(material: str) -> PublicKeyTypes:
    """Load a public key from a key document or from a certificate carrying one."""

    text = material.strip()
    if not text:
        raise ValueError("empty public key")
    errors: list[Exception] = []
    if "-----BEGIN" in text:
        try:
            return serialization.load_pem_public_key(text.encode())
        except ValueError as exc:
            errors.append(exc)
    else:
        try:
            return serialization.load_der_public_key(_der(text))
        except (ValueError, binascii.Error) as exc:
            errors.append(exc)
    try:
        return load_certificate(text).public_key()
    except ValueError as exc:
        errors.append(exc)
    raise ValueError("unsupported_public_key_format") from errors[-1]


def certificate_pem(material: str) -> str:
    """Normalize a certificate given in either form to a PEM document."""

    return load_certificate(material).public_bytes(serialization.Encoding.PEM).decode("ascii")
