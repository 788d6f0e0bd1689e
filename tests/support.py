"""Test support utilities for samlgate gateway tests."""

from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import quote

import lxml.etree as LET
from cryptography.hazmat.primitives import hashes, padding as symmetric_padding
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from signxml import XMLSigner

from samlgate.config import GatewayConfig, SamlConfig, TokenConfig
from samlgate.headers import Headers
from samlgate.keys import KeyMaterial, generate_key_material, load_certificate
from samlgate.requests import Request
from samlgate.saml import SAML_NS, SAMLP_NS, STATUS_SUCCESS, AssertionResult, IdentityProvider, ServiceProvider
from samlgate.serialization import b64encode_text
from samlgate.xmlenc import AES128_GCM, BLOCK_CIPHERS, DS_NS, RSA_OAEP_MGF1P, XENC_NS

ENTITY_ID = "https://gateway.example.edu/shibboleth"
ENTRY_POINT = "https://idp.example.edu/idp/profile/SAML2/Redirect/SSO"
IDP_LOGOUT_URL = "https://idp.example.edu/idp/logout.jsp"
IDP_ENTITY_ID = "https://idp.example.edu/idp/shibboleth"
DOMAIN = "gateway.example.edu"
ASSERT_URL = f"https://{DOMAIN}/assert"


@lru_cache(maxsize=None)
def key_material(label: str) -> KeyMaterial:
    """Generate (once per label) an RSA key pair with a self-signed certificate."""

    return generate_key_material(common_name=f"{label}.example.edu")


def make_config(**overrides: Any) -> GatewayConfig:
    sp = key_material("sp")
    token = key_material("token")
    saml = SamlConfig(
        entity_id=ENTITY_ID,
        entry_point=ENTRY_POINT,
        logout_url=IDP_LOGOUT_URL,
        idp_cert=key_material("idp").certificate_pem,
        sp_cert=sp.certificate_pem,
        sp_private_key=sp.private_key_pem,
    )
    values: dict[str, Any] = {
        "saml": saml,
        "domain": DOMAIN,
        "token": TokenConfig(private_key=token.private_key_pem, public_key=token.public_key_pem),
    }
    values.update(overrides)
    return GatewayConfig(**values)


def build_request(
    uri: str = "/",
    *,
    method: str = "GET",
    querystring: str = "",
    headers: Iterable[tuple[str, str]] = (),
    body: bytes = b"",
) -> Request:
    return Request(
        uri=uri,
        method=method,
        querystring=querystring,
        headers=Headers.from_pairs([("Host", DOMAIN), *headers]),
        body=b64encode_text(body) if body else "",
        client_ip="203.0.113.9",
    )


def form_post(uri: str, fields: Mapping[str, str]) -> Request:
    body = "&".join(f"{name}={quote(value, safe='')}" for name, value in fields.items())
    return build_request(
        uri,
        method="POST",
        headers=[("Content-Type", "application/x-www-form-urlencoded")],
        body=body.encode("utf-8"),
    )


def cookie_value(set_cookie: str) -> str:
    """Return the ``name=value`` pair from a ``Set-Cookie`` header."""

    return set_cookie.split(";", 1)[0]


@dataclass
class FakeSamlToolkit:
    result: AssertionResult = field(
        default_factory=lambda: AssertionResult(
            name_id="jdoe@example.edu",
            session_index="_session-1",
            attributes={"urn:oid:2.5.4.42": ["Jane"], "eduPersonAffiliation": ["member", "staff"]},
        )
    )
    error: Exception | None = None
    login_calls: list[tuple[ServiceProvider, str | None]] = field(default_factory=list)
    logout_calls: list[ServiceProvider] = field(default_factory=list)
    verify_calls: list[tuple[str, str]] = field(default_factory=list)

    def login_request_url(self, sp: ServiceProvider, idp: IdentityProvider, *, relay_state: str | None) -> str:
        self.login_calls.append((sp, relay_state))
        return f"{idp.sso_login_url}?SAMLRequest=fake&RelayState={quote(relay_state or '', safe='')}"

    def logout_request_url(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        *,
        name_id: str | None = None,
        session_index: str | None = None,
    ) -> str:
        self.logout_calls.append(sp)
        return f"{idp.sso_logout_url}?SAMLRequest=fake-logout"

    def metadata(self, sp: ServiceProvider) -> str:
        return f'<md:EntityDescriptor xmlns:md="urn:oasis:names:tc:SAML:2.0:metadata" entityID="{sp.entity_id}"/>'

    def verify_assertion(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        saml_response: str,
        *,
        binding: str,
    ) -> AssertionResult:
        self.verify_calls.append((saml_response, binding))
        if self.error is not None:
            raise self.error
        return self.result


class StaticSecretStore:
    def __init__(self, record: Mapping[str, Any]) -> None:
        self.record = dict(record)
        self.calls = 0

    async def fetch(self) -> Mapping[str, Any]:
        self.calls += 1
        return dict(self.record)


class FailingSecretStore:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("secrets manager unavailable")
        self.calls = 0

    async def fetch(self) -> Mapping[str, Any]:
        self.calls += 1
        raise self.error


def q(namespace: str, tag: str) -> str:
    return f"{{{namespace}}}{tag}"


def _instant(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def saml_response_xml(
    *,
    name_id: str = "jdoe@example.edu",
    attributes: Sequence[tuple[str, str | None, Sequence[str]]] = (
        ("urn:oid:2.5.4.42", "givenName", ("Jane",)),
        ("urn:oid:1.3.6.1.4.1.5923.1.1.1.1", "eduPersonAffiliation", ("member", "staff")),
    ),
    audience: str = ENTITY_ID,
    recipient: str = ASSERT_URL,
    issuer: str = IDP_ENTITY_ID,
    status: str = STATUS_SUCCESS,
    now: dt.datetime | None = None,
    lifetime: dt.timedelta = dt.timedelta(minutes=5),
) -> LET._Element:
    moment = now or dt.datetime.now(dt.timezone.utc)
    response = LET.Element(
        q(SAMLP_NS, "Response"),
        nsmap={"saml2p": SAMLP_NS, "saml2": SAML_NS},
        ID="_response-1",
        Version="2.0",
        IssueInstant=_instant(moment),
        Destination=recipient,
    )
    LET.SubElement(response, q(SAML_NS, "Issuer")).text = issuer
    status_node = LET.SubElement(response, q(SAMLP_NS, "Status"))
    LET.SubElement(status_node, q(SAMLP_NS, "StatusCode"), Value=status)
    assertion = LET.SubElement(
        response,
        q(SAML_NS, "Assertion"),
        ID="_assertion-1",
        Version="2.0",
        IssueInstant=_instant(moment),
    )
    LET.SubElement(assertion, q(SAML_NS, "Issuer")).text = issuer
    subject = LET.SubElement(assertion, q(SAML_NS, "Subject"))
    LET.SubElement(subject, q(SAML_NS, "NameID")).text = name_id
    confirmation = LET.SubElement(
        subject, q(SAML_NS, "SubjectConfirmation"), Method="urn:oasis:names:tc:SAML:2.0:cm:bearer"
    )
    LET.SubElement(
        confirmation,
        q(SAML_NS, "SubjectConfirmationData"),
        NotOnOrAfter=_instant(moment + lifetime),
        Recipient=recipient,
    )
    conditions = LET.SubElement(
        assertion,
        q(SAML_NS, "Conditions"),
        NotBefore=_instant(moment - dt.timedelta(seconds=5)),
        NotOnOrAfter=_instant(moment + lifetime),
    )
    restriction = LET.SubElement(conditions, q(SAML_NS, "AudienceRestriction"))
    LET.SubElement(restriction, q(SAML_NS, "Audience")).text = audience
    LET.SubElement(
        assertion,
        q(SAML_NS, "AuthnStatement"),
        AuthnInstant=_instant(moment),
        SessionIndex="_session-1",
    )
    statement = LET.SubElement(assertion, q(SAML_NS, "AttributeStatement"))
    for name, friendly, values in attributes:
        attribute = LET.SubElement(statement, q(SAML_NS, "Attribute"), Name=name)
        if friendly:
            attribute.set("FriendlyName", friendly)
        for value in values:
            LET.SubElement(attribute, q(SAML_NS, "AttributeValue")).text = value
    return response


def sign_saml_response(document: LET._Element, material: KeyMaterial | None = None) -> bytes:
    idp = material or key_material("idp")
    signed = XMLSigner().sign(document, key=idp.private_key_pem, cert=idp.certificate_pem)
    return LET.tostring(signed)


def encoded_saml_response(**kwargs: Any) -> str:
    return b64encode_text(sign_saml_response(saml_response_xml(**kwargs)))


EXCLUSIVE_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"


def sign_assertion(document: LET._Element, material: KeyMaterial | None = None) -> LET._Element:
    """Sign only the Assertion inside ``document``, leaving the Response unsigned, as Shibboleth does."""

    idp = material or key_material("idp")
    assertion = document.find(q(SAML_NS, "Assertion"))
    signed = XMLSigner(c14n_algorithm=EXCLUSIVE_C14N).sign(
        assertion, key=idp.private_key_pem, cert=idp.certificate_pem
    )
    document.replace(assertion, signed)
    return document


def add_unsigned_attribute(document: LET._Element, name: str, friendly_name: str) -> LET._Element:
    """Put an ``Attribute`` in ``samlp:Extensions``, outside any signed element and ahead of the Assertion."""

    extensions = document.makeelement(q(SAMLP_NS, "Extensions"))
    LET.SubElement(extensions, q(SAML_NS, "Attribute"), Name=name, FriendlyName=friendly_name)
    document.insert(1, extensions)
    return document


def _cipher_data(parent: LET._Element, value: bytes) -> None:
    cipher_data = LET.SubElement(parent, q(XENC_NS, "CipherData"))
    LET.SubElement(cipher_data, q(XENC_NS, "CipherValue")).text = b64encode_text(value)


def encrypt_assertion(
    document: LET._Element,
    recipient: KeyMaterial | None = None,
    *,
    algorithm: str = AES128_GCM,
) -> LET._Element:
    """Swap the Assertion in ``document`` for an ``EncryptedAssertion`` addressed to ``recipient``."""

    sp = recipient or key_material("sp")
    assertion = document.find(q(SAML_NS, "Assertion"))
    plaintext = LET.tostring(assertion)
    mode, key_length = BLOCK_CIPHERS[algorithm]
    key = os.urandom(key_length)
    if mode == "gcm":
        nonce = os.urandom(12)
        payload = nonce + AESGCM(key).encrypt(nonce, plaintext, None)
    else:
        iv = os.urandom(16)
        padder = symmetric_padding.PKCS7(128).padder()
        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        payload = iv + encryptor.update(padder.update(plaintext) + padder.finalize()) + encryptor.finalize()
    wrapped = load_certificate(sp.certificate_pem).public_key().encrypt(
        key,
        padding.OAEP(mgf=padding.MGF1(hashes.SHA1()), algorithm=hashes.SHA1(), label=None),
    )

    encrypted = document.makeelement(q(SAML_NS, "EncryptedAssertion"))
    data = LET.SubElement(
        encrypted,
        q(XENC_NS, "EncryptedData"),
        nsmap={"xenc": XENC_NS, "ds": DS_NS},
        Type=f"{XENC_NS}Element",
    )
    LET.SubElement(data, q(XENC_NS, "EncryptionMethod"), Algorithm=algorithm)
    key_info = LET.SubElement(data, q(DS_NS, "KeyInfo"))
    encrypted_key = LET.SubElement(key_info, q(XENC_NS, "EncryptedKey"))
    method = LET.SubElement(encrypted_key, q(XENC_NS, "EncryptionMethod"), Algorithm=RSA_OAEP_MGF1P)
    LET.SubElement(method, q(DS_NS, "DigestMethod"), Algorithm=f"{DS_NS}sha1")
    _cipher_data(encrypted_key, wrapped)
    _cipher_data(data, payload)
    document.replace(assertion, encrypted)
    return document
