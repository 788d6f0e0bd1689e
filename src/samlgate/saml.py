"""SAML2 Web-SSO protocol support for the gateway.

:class:`SamlTools` is what the gateway talks to. It reads the current service
provider key material from the credential cache on every call and delegates
the XML and signature work to a :class:`SamlToolkit`. The production toolkit,
:class:`SignedXmlToolkit`, builds redirect-bound requests with lxml, signs them
with cryptography and verifies IdP responses with signxml.
"""

from __future__ import annotations

import asyncio
import binascii
import datetime as dt
import logging
import secrets
import zlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import parse_qsl, quote

import lxml.etree as LET
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from msgspec import Struct
from signxml import XMLVerifier
from signxml.exceptions import InvalidInput, InvalidSignature

from .config import SamlConfig
from .credentials import CredentialCache
from .exceptions import AssertionRejectedError, DecryptionError, MissingAssertionError
from .keys import certificate_pem, load_private_key, pem_body
from .requests import Request
from .serialization import b64decode_text, b64encode_text
from .xmlenc import decrypt_element

logger = logging.getLogger(__name__)

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

BINDING_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"

_NSMAP = {"samlp": SAMLP_NS, "saml": SAML_NS}
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _q(namespace: str, tag: str) -> str:
    return f"{{{namespace}}}{tag}"


def _saml_instant(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _ensure_utc(moment: dt.datetime | None) -> dt.datetime:
    if moment is None:
        return dt.datetime.now(dt.timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=dt.timezone.utc)
    return moment.astimezone(dt.timezone.utc)


def _parser() -> LET.XMLParser:
    return LET.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def parse_xml(data: bytes | str) -> LET._Element:
    """Parse untrusted XML without resolving entities or touching the network."""

    if isinstance(data, str):
        data = data.encode("utf-8")
    return LET.fromstring(data, parser=_parser())


def deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
    return compressor.compress(data) + compressor.flush()


def inflate(data: bytes) -> bytes:
    return zlib.decompress(data, -15)


@dataclass(slots=True, frozen=True)
class ServiceProvider:
    entity_id: str
    assert_url: str
    certificate: str
    private_key: str
    logout_url: str | None = None
    force_authn: bool = True
    sign_requests: bool = True
    name_id_format: str = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"


@dataclass(slots=True, frozen=True)
class IdentityProvider:
    sso_login_url: str
    sso_logout_url: str
    certificates: tuple[str, ...]
    entity_id: str | None = None


class AssertionResult(Struct, frozen=True):
    """Verified identity carried by a SAML response.

    ``friendly_names`` maps attribute ``Name`` to ``FriendlyName`` as read from
    the verified assertion. ``None`` means the toolkit did not report them.
    """

    name_id: str
    session_index: str | None = None
    attributes: dict[str, list[str]] = {}
    friendly_names: dict[str, str] | None = None


class SendAssertResult(Struct, frozen=True):
    assertion: AssertionResult
    relay_state: str | None = None


class SamlResponseParameter(Struct, frozen=True):
    """The ``SAMLResponse`` value found in a request plus its decoded XML."""

    param: str | None = None
    raw_xml: str | None = None
    relay_state: str | None = None


class SamlToolkit(Protocol):
    def login_request_url(self, sp: ServiceProvider, idp: IdentityProvider, *, relay_state: str | None) -> str: ...

    def logout_request_url(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        *,
        name_id: str | None = None,
        session_index: str | None = None,
    ) -> str: ...

    def metadata(self, sp: ServiceProvider) -> str: ...

    def verify_assertion(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        saml_response: str,
        *,
        binding: str,
    ) -> AssertionResult: ...


class SignedXmlToolkit:
    """SAML toolkit built on lxml, cryptography and signxml."""

    def __init__(
        self,
        *,
        clock: Callable[[], dt.datetime] | None = None,
        clock_skew_seconds: int = 60,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self.clock_skew = dt.timedelta(seconds=max(clock_skew_seconds, 0))
        self._id_factory = id_factory or (lambda: "_" + secrets.token_hex(20))

    def login_request_url(self, sp: ServiceProvider, idp: IdentityProvider, *, relay_state: str | None) -> str:
        request = LET.Element(
            _q(SAMLP_NS, "AuthnRequest"),
            nsmap=_NSMAP,
            ID=self._id_factory(),
            Version="2.0",
            IssueInstant=_saml_instant(_ensure_utc(self._clock())),
            Destination=idp.sso_login_url,
            AssertionConsumerServiceURL=sp.assert_url,
            ProtocolBinding=BINDING_POST,
        )
        if sp.force_authn:
            request.set("ForceAuthn", "true")
        LET.SubElement(request, _q(SAML_NS, "Issuer")).text = sp.entity_id
        LET.SubElement(request, _q(SAMLP_NS, "NameIDPolicy"), Format=sp.name_id_format, AllowCreate="true")
        return self._redirect_url(idp.sso_login_url, request, sp, relay_state=relay_state)

    def logout_request_url(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        *,
        name_id: str | None = None,
        session_index: str | None = None,
    ) -> str:
        request = LET.Element(
            _q(SAMLP_NS, "LogoutRequest"),
            nsmap=_NSMAP,
            ID=self._id_factory(),
            Version="2.0",
            IssueInstant=_saml_instant(_ensure_utc(self._clock())),
            Destination=idp.sso_logout_url,
        )
        LET.SubElement(request, _q(SAML_NS, "Issuer")).text = sp.entity_id
        if name_id:
            LET.SubElement(request, _q(SAML_NS, "NameID"), Format=sp.name_id_format).text = name_id
        if session_index:
            LET.SubElement(request, _q(SAMLP_NS, "SessionIndex")).text = session_index
        return self._redirect_url(idp.sso_logout_url, request, sp, relay_state=None)

    def metadata(self, sp: ServiceProvider) -> str:
        descriptor = LET.Element(_q(MD_NS, "EntityDescriptor"), nsmap={"md": MD_NS, "ds": DS_NS}, entityID=sp.entity_id)
        sp_descriptor = LET.SubElement(
            descriptor,
            _q(MD_NS, "SPSSODescriptor"),
            protocolSupportEnumeration=SAMLP_NS,
            AuthnRequestsSigned="true" if sp.sign_requests else "false",
            WantAssertionsSigned="true",
        )
        if sp.certificate:
            body = pem_body(sp.certificate)
            for use in ("signing", "encryption"):
                key_descriptor = LET.SubElement(sp_descriptor, _q(MD_NS, "KeyDescriptor"), use=use)
                key_info = LET.SubElement(key_descriptor, _q(DS_NS, "KeyInfo"))
                x509_data = LET.SubElement(key_info, _q(DS_NS, "X509Data"))
                LET.SubElement(x509_data, _q(DS_NS, "X509Certificate")).text = body
        if sp.logout_url:
            LET.SubElement(
                sp_descriptor,
                _q(MD_NS, "SingleLogoutService"),
                Binding=BINDING_REDIRECT,
                Location=sp.logout_url,
            )
        LET.SubElement(sp_descriptor, _q(MD_NS, "NameIDFormat")).text = sp.name_id_format
        LET.SubElement(
            sp_descriptor,
            _q(MD_NS, "AssertionConsumerService"),
            Binding=BINDING_POST,
            Location=sp.assert_url,
            index="0",
        )
        return LET.tostring(descriptor, xml_declaration=True, encoding="UTF-8").decode("utf-8")

    def _redirect_url(
        self,
        destination: str,
        document: LET._Element,
        sp: ServiceProvider,
        *,
        relay_state: str | None,
    ) -> str:
        encoded = b64encode_text(deflate(LET.tostring(document)))
        params: list[tuple[str, str]] = [("SAMLRequest", encoded)]
        if relay_state:
            params.append(("RelayState", relay_state))
        if sp.sign_requests:
            if not sp.private_key:
                raise ValueError("service provider private key is not available for signing")
            key = load_private_key(sp.private_key)
            if not isinstance(key, rsa.RSAPrivateKey):
                raise ValueError("service provider signing key must be an RSA key")
            params.append(("SigAlg", RSA_SHA256))
            signed = _encode_query(params).encode("utf-8")
            signature = key.sign(signed, padding.PKCS1v15(), hashes.SHA256())
            params.append(("Signature", b64encode_text(signature)))
        separator = "&" if "?" in destination else "?"
        return f"{destination}{separator}{_encode_query(params)}"

    def verify_assertion(
        self,
        sp: ServiceProvider,
        idp: IdentityProvider,
        saml_response: str,
        *,
        binding: str,
    ) -> AssertionResult:
        try:
            payload = b64decode_text(saml_response)
            if binding == BINDING_REDIRECT:
                payload = inflate(payload)
        except (ValueError, binascii.Error, zlib.error) as exc:
            raise AssertionRejectedError("invalid_encoding") from exc
        try:
            document = parse_xml(payload)
        except LET.XMLSyntaxError as exc:
            raise AssertionRejectedError("invalid_xml") from exc

        status = document.find(f"{_q(SAMLP_NS, 'Status')}/{_q(SAMLP_NS, 'StatusCode')}")
        if document.tag == _q(SAMLP_NS, "Response") and (status is None or status.get("Value") != STATUS_SUCCESS):
            code = status.get("Value") if status is not None else "missing"
            raise AssertionRejectedError(f"status_not_success:{code}")

        assertion = self._verified_assertion(document, sp, idp)

        if idp.entity_id:
            issuer = assertion.findtext(_q(SAML_NS, "Issuer"))
            if (issuer or "").strip() != idp.entity_id:
                raise AssertionRejectedError("invalid_issuer")
        self._check_conditions(assertion, sp)

        name_id_node = assertion.find(f"{_q(SAML_NS, 'Subject')}/{_q(SAML_NS, 'NameID')}")
        if name_id_node is None:
            raise AssertionRejectedError("missing_subject")
        name_id = "".join(name_id_node.itertext()).strip()
        if not name_id:
            raise AssertionRejectedError("missing_subject")
        statement = assertion.find(_q(SAML_NS, "AuthnStatement"))
        session_index = statement.get("SessionIndex") if statement is not None else None
        return AssertionResult(
            name_id=name_id,
            session_index=session_index,
            attributes=_attributes(assertion),
            friendly_names=friendly_names(assertion),
        )

    def _verified_assertion(self, document: LET._Element, sp: ServiceProvider, idp: IdentityProvider) -> LET._Element:
        """Return the assertion element whose content a signature covers.

        A signed ``Response`` vouches for everything inside it, including an
        encrypted assertion. Otherwise the assertion, once decrypted, must
        carry its own signature. Everything later read comes from the element
        signxml hands back, never from the unverified document.
        """

        if document.tag == _q(SAML_NS, "Assertion"):
            return self._verify_signature(document, idp)
        if document.find(_q(DS_NS, "Signature")) is not None:
            signed = self._verify_signature(document, idp)
            if signed.tag == _q(SAML_NS, "Assertion"):
                return signed
            return self._find_assertion(signed, sp)
        return self._verify_signature(self._find_assertion(document, sp), idp)

    def _find_assertion(self, response: LET._Element, sp: ServiceProvider) -> LET._Element:
        assertion = response.find(_q(SAML_NS, "Assertion"))
        if assertion is not None:
            return assertion
        encrypted = response.find(_q(SAML_NS, "EncryptedAssertion"))
        if encrypted is None:
            raise AssertionRejectedError("missing_assertion")
        return self._decrypt_assertion(encrypted, sp)

    def _decrypt_assertion(self, encrypted: LET._Element, sp: ServiceProvider) -> LET._Element:
        if not sp.private_key:
            raise AssertionRejectedError("invalid_encryption")
        key = load_private_key(sp.private_key)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise AssertionRejectedError("invalid_encryption")
        try:
            plaintext = decrypt_element(encrypted, key)
        except DecryptionError as exc:
            logger.warning("encrypted assertion rejected: %s", exc)
            raise AssertionRejectedError("invalid_encryption") from exc
        try:
            assertion = parse_xml(plaintext)
        except LET.XMLSyntaxError as exc:
            raise AssertionRejectedError("invalid_xml") from exc
        if assertion.tag != _q(SAML_NS, "Assertion"):
            raise AssertionRejectedError("missing_assertion")
        logger.debug("encrypted assertion decrypted")
        return assertion

    def _verify_signature(self, element: LET._Element, idp: IdentityProvider) -> LET._Element:
        if element.find(_q(DS_NS, "Signature")) is None:
            raise AssertionRejectedError("missing_signature")
        last_error: Exception | None = None
        for certificate in idp.certificates:
            try:
                result = XMLVerifier().verify(element, x509_cert=certificate_pem(certificate))
            except (InvalidSignature, InvalidInput, ValueError) as exc:
                last_error = exc
                continue
            return result.signed_xml
        raise AssertionRejectedError("invalid_signature") from last_error

    def _check_conditions(self, assertion: LET._Element, sp: ServiceProvider) -> None:
        now = _ensure_utc(self._clock())
        skew = self.clock_skew

        def parse_instant(value: str) -> dt.datetime:
            try:
                instant = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError as exc:
                raise AssertionRejectedError("invalid_timestamp") from exc
            return _ensure_utc(instant)

        def check_window(node: LET._Element, label: str) -> None:
            not_before = node.get("NotBefore")
            if not_before and now + skew < parse_instant(not_before):
                raise AssertionRejectedError(f"{label}_not_yet_valid")
            not_on_or_after = node.get("NotOnOrAfter")
            if not_on_or_after and now - skew >= parse_instant(not_on_or_after):
                raise AssertionRejectedError(f"{label}_expired")

        conditions = assertion.find(_q(SAML_NS, "Conditions"))
        if conditions is not None:
            check_window(conditions, "assertion")
            restrictions = conditions.findall(_q(SAML_NS, "AudienceRestriction"))
            for restriction in restrictions:
                audiences = {
                    (node.text or "").strip() for node in restriction.findall(_q(SAML_NS, "Audience"))
                }
                if sp.entity_id not in audiences:
                    raise AssertionRejectedError("invalid_audience")

        confirmations = assertion.findall(
            f"{_q(SAML_NS, 'Subject')}/{_q(SAML_NS, 'SubjectConfirmation')}/{_q(SAML_NS, 'SubjectConfirmationData')}"
        )
        for data in confirmations:
            check_window(data, "subject_confirmation")
            recipient = data.get("Recipient")
            if recipient and recipient != sp.assert_url:
                raise AssertionRejectedError("invalid_recipient")


def _encode_query(params: list[tuple[str, str]]) -> str:
    return "&".join(f"{name}={quote(value, safe='')}" for name, value in params)


def _attributes(assertion: LET._Element) -> dict[str, list[str]]:
    attributes: dict[str, list[str]] = {}
    for statement in assertion.findall(_q(SAML_NS, "AttributeStatement")):
        for attribute in statement.findall(_q(SAML_NS, "Attribute")):
            name = attribute.get("Name")
            if not name:
                continue
            values = ["".join(node.itertext()).strip() for node in attribute.findall(_q(SAML_NS, "AttributeValue"))]
            attributes.setdefault(name, []).extend(values)
    return attributes


def friendly_names(assertion: LET._Element) -> dict[str, str]:
    """Map each attribute ``Name`` in ``assertion`` to its ``FriendlyName``; the first element wins."""

    names: dict[str, str] = {}
    for statement in assertion.findall(_q(SAML_NS, "AttributeStatement")):
        for attribute in statement.findall(_q(SAML_NS, "Attribute")):
            name = attribute.get("Name")
            friendly = attribute.get("FriendlyName")
            if name and friendly:
                names.setdefault(name, friendly)
    return names


def relabel_attributes(attributes: Mapping[str, list[str]], names: Mapping[str, str]) -> dict[str, list[str]]:
    """Re-key ``attributes`` through ``names``, keeping keys it has no entry for.

    When two keys land on the same label the first one is kept and the clash
    is logged.
    """

    result: dict[str, list[str]] = {}
    sources: dict[str, str] = {}
    for key, values in attributes.items():
        target = names.get(key) or key
        if target in result:
            logger.warning(
                "attributes %r and %r both map to %r; keeping %r",
                sources[target],
                key,
                target,
                sources[target],
            )
            continue
        result[target] = list(values)
        sources[target] = key
    return result


def repair_friendly_names(raw_xml: str | None, attributes: Mapping[str, list[str]]) -> dict[str, list[str]]:
    """Re-key ``attributes`` by the ``FriendlyName`` each attribute carries in ``raw_xml``.

    Only attributes inside an ``Assertion`` element are consulted. Keys without
    a matching ``Attribute`` element, or whose element has no ``FriendlyName``,
    are kept as they are. Values are never changed.
    """

    if not raw_xml:
        return relabel_attributes(attributes, {})
    try:
        document = parse_xml(raw_xml)
    except (LET.XMLSyntaxError, ValueError):
        logger.warning("cannot parse assertion XML; attribute names left unchanged")
        return relabel_attributes(attributes, {})
    names: dict[str, str] = {}
    for assertion in document.iter(_q(SAML_NS, "Assertion")):
        for name, friendly in friendly_names(assertion).items():
            names.setdefault(name, friendly)
    return relabel_attributes(attributes, names)


class SamlTools:
    """SAML operations the gateway needs, bound to one SP and one IdP."""

    def __init__(
        self,
        config: SamlConfig,
        toolkit: SamlToolkit,
        credentials: CredentialCache,
        *,
        assert_url: str,
        logout_url: str | None = None,
    ) -> None:
        self.config = config
        self.toolkit = toolkit
        self.credentials = credentials
        self.assert_url = assert_url
        self.logout_url = logout_url
        self.identity_provider = IdentityProvider(
            sso_login_url=config.entry_point,
            sso_logout_url=config.logout_url,
            certificates=(config.idp_cert,),
            entity_id=config.idp_entity_id,
        )

    def service_provider(self) -> ServiceProvider:
        keys = self.credentials.keys
        return ServiceProvider(
            entity_id=self.config.entity_id,
            assert_url=self.assert_url,
            certificate=keys.saml_cert,
            private_key=keys.saml_private_key,
            logout_url=self.logout_url,
            force_authn=self.config.force_authn,
            sign_requests=self.config.sign_requests,
            name_id_format=self.config.name_id_format,
        )

    def create_login_request_url(self, relay_state: str | None) -> str:
        return self.toolkit.login_request_url(self.service_provider(), self.identity_provider, relay_state=relay_state)

    def create_logout_request_url(self, *, name_id: str | None = None, session_index: str | None = None) -> str:
        return self.toolkit.logout_request_url(
            self.service_provider(),
            self.identity_provider,
            name_id=name_id,
            session_index=session_index,
        )

    def get_metadata(self) -> str:
        return self.toolkit.metadata(self.service_provider())

    def extract_assertion_parameter(self, request: Request) -> SamlResponseParameter:
        """Find ``SAMLResponse`` and ``RelayState`` for either binding.

        Raises :class:`MissingAssertionError` when a form POST carries no
        ``SAMLResponse`` field.
        """

        if request.method == "GET":
            param = request.query_param("SAMLResponse")
            return SamlResponseParameter(
                param=param or None,
                raw_xml=_decode_redirect_payload(param) if param else None,
                relay_state=request.query_param("RelayState") or None,
            )
        if request.method == "POST":
            content_type = (request.header("content-type") or "").split(";", 1)[0].strip().lower()
            if content_type != _FORM_CONTENT_TYPE:
                logger.warning("assertion POST with unexpected content type %r", content_type)
                return SamlResponseParameter()
            try:
                body = request.body_bytes().decode("utf-8")
            except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
                raise AssertionRejectedError("invalid_encoding") from exc
            form: dict[str, str] = {}
            for key, value in parse_qsl(body, keep_blank_values=True):
                form.setdefault(key, value)
            param = form.get("SAMLResponse")
            if not param:
                raise MissingAssertionError("SAMLResponse parameter not found in request")
            logger.info("SAMLResponse parameter found in request")
            try:
                raw_xml = b64decode_text(param).decode("utf-8")
            except (ValueError, binascii.Error, UnicodeDecodeError) as exc:
                raise AssertionRejectedError("invalid_encoding") from exc
            return SamlResponseParameter(param=param, raw_xml=raw_xml, relay_state=form.get("RelayState") or None)
        return SamlResponseParameter()

    async def send_assert(self, request: Request) -> SendAssertResult:
        extracted = self.extract_assertion_parameter(request)
        if not extracted.param:
            raise MissingAssertionError("SAMLResponse parameter not found in request")
        binding = BINDING_REDIRECT if request.method == "GET" else BINDING_POST
        result = await asyncio.to_thread(
            self.toolkit.verify_assertion,
            self.service_provider(),
            self.identity_provider,
            extracted.param,
            binding=binding,
        )
        logger.debug("assertion verified for %s", result.name_id)
        if result.friendly_names is not None:
            attributes = relabel_attributes(result.attributes, result.friendly_names)
        else:
            attributes = repair_friendly_names(extracted.raw_xml, result.attributes)
        repaired = AssertionResult(
            name_id=result.name_id,
            session_index=result.session_index,
            attributes=attributes,
            friendly_names=result.friendly_names,
        )
        return SendAssertResult(assertion=repaired, relay_state=extracted.relay_state)


def _decode_redirect_payload(param: str) -> str | None:
    try:
        payload = b64decode_text(param)
    except (ValueError, binascii.Error):
        return None
    try:
        payload = inflate(payload)
    except zlib.error:
        logger.debug("SAMLResponse query parameter is not deflated")
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return None
