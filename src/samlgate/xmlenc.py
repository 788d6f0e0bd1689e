"""XML Encryption (``xenc``) decryption for encrypted SAML assertions.

Identity providers encrypt the assertion with a fresh AES content key and
wrap that key for the service provider certificate with RSA-OAEP. Only the
decrypting side is implemented here; the gateway never encrypts.
"""

from __future__ import annotations

import binascii

import lxml.etree as LET
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import DecryptionError
from .serialization import b64decode_text

XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
XENC11_NS = "http://www.w3.org/2009/xmlenc11#"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

RSA_OAEP_MGF1P = f"{XENC_NS}rsa-oaep-mgf1p"
RSA_OAEP = f"{XENC11_NS}rsa-oaep"
AES128_CBC = f"{XENC_NS}aes128-cbc"
AES256_CBC = f"{XENC_NS}aes256-cbc"
AES128_GCM = f"{XENC11_NS}aes128-gcm"
AES256_GCM = f"{XENC11_NS}aes256-gcm"

# algorithm -> (mode, key length in bytes)
BLOCK_CIPHERS: dict[str, tuple[str, int]] = {
    AES128_CBC: ("cbc", 16),
    f"{XENC_NS}aes192-cbc": ("cbc", 24),
    AES256_CBC: ("cbc", 32),
    AES128_GCM: ("gcm", 16),
    f"{XENC11_NS}aes192-gcm": ("gcm", 24),
    AES256_GCM: ("gcm", 32),
}

DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    f"{DS_NS}sha1": hashes.SHA1,
    f"{XENC_NS}sha256": hashes.SHA256,
    "http://www.w3.org/2001/04/xmldsig-more#sha384": hashes.SHA384,
    f"{XENC_NS}sha512": hashes.SHA512,
}

MGF_DIGESTS: dict[str, type[hashes.HashAlgorithm]] = {
    f"{XENC11_NS}mgf1sha1": hashes.SHA1,
    f"{XENC11_NS}mgf1sha256": hashes.SHA256,
    f"{XENC11_NS}mgf1sha384": hashes.SHA384,
    f"{XENC11_NS}mgf1sha512": hashes.SHA512,
}

_GCM_NONCE_BYTES = 12
_CBC_IV_BYTES = 16


def _q(namespace: str, tag: str) -> str:
    return f"{{{namespace}}}{tag}"


def _algorithm(node: LET._Element) -> str:
    method = node.find(_q(XENC_NS, "EncryptionMethod"))
    algorithm = method.get("Algorithm") if method is not None else None
    if not algorithm:
        raise DecryptionError("missing EncryptionMethod")
    return algorithm


def _cipher_value(node: LET._Element) -> bytes:
    text = node.findtext(f"{_q(XENC_NS, 'CipherData')}/{_q(XENC_NS, 'CipherValue')}")
    if not text or not text.strip():
        raise DecryptionError("missing CipherValue")
    try:
        return b64decode_text(text)
    except (ValueError, binascii.Error) as exc:
        raise DecryptionError("CipherValue is not base64") from exc


def _find_encrypted_key(container: LET._Element, data: LET._Element) -> LET._Element:
    key = data.find(f"{_q(DS_NS, 'KeyInfo')}/{_q(XENC_NS, 'EncryptedKey')}")
    if key is None:
        # Some IdPs place the key beside EncryptedData and point at it with a RetrievalMethod.
        key = container.find(_q(XENC_NS, "EncryptedKey"))
    if key is None:
        raise DecryptionError("missing EncryptedKey")
    return key


def unwrap_key(encrypted_key: LET._Element, private_key: rsa.RSAPrivateKey) -> bytes:
    """Recover the content key from an ``EncryptedKey`` element.

    RSA-OAEP is the only key transport accepted. The digest defaults to SHA-1
    and, for the xmlenc 1.1 identifier, the mask generation digest is read
    from the ``MGF`` child.
    """

    algorithm = _algorithm(encrypted_key)
    if algorithm not in (RSA_OAEP_MGF1P, RSA_OAEP):
        raise DecryptionError(f"unsupported key transport {algorithm}")
    method = encrypted_key.find(_q(XENC_NS, "EncryptionMethod"))
    digest_node = method.find(_q(DS_NS, "DigestMethod"))
    digest = hashes.SHA1
    if digest_node is not None:
        try:
            digest = DIGESTS[digest_node.get("Algorithm", "")]
        except KeyError:
            raise DecryptionError(f"unsupported OAEP digest {digest_node.get('Algorithm')}") from None
    mgf_digest = hashes.SHA1
    mgf_node = method.find(_q(XENC11_NS, "MGF"))
    if algorithm == RSA_OAEP and mgf_node is not None:
        try:
            mgf_digest = MGF_DIGESTS[mgf_node.get("Algorithm", "")]
        except KeyError:
            raise DecryptionError(f"unsupported mask generation function {mgf_node.get('Algorithm')}") from None
    oaep = padding.OAEP(mgf=padding.MGF1(mgf_digest()), algorithm=digest(), label=None)
    try:
        return private_key.decrypt(_cipher_value(encrypted_key), oaep)
    except ValueError as exc:
        raise DecryptionError("content key cannot be unwrapped with the service provider key") from exc


def _decrypt_content(algorithm: str, key: bytes, payload: bytes) -> bytes:
    mode, key_length = BLOCK_CIPHERS[algorithm]
    if len(key) != key_length:
        raise DecryptionError(f"content key is {len(key)} bytes, expected {key_length}")
    if mode == "gcm":
        if len(payload) <= _GCM_NONCE_BYTES:
            raise DecryptionError("ciphertext too short")
        try:
            return AESGCM(key).decrypt(payload[:_GCM_NONCE_BYTES], payload[_GCM_NONCE_BYTES:], None)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
    iv, ciphertext = payload[:_CBC_IV_BYTES], payload[_CBC_IV_BYTES:]
    if not ciphertext or len(ciphertext) % _CBC_IV_BYTES:
        raise DecryptionError("ciphertext is not a whole number of blocks")
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    # xenc padding: the last byte is the pad length, the other pad bytes are arbitrary.
    pad = padded[-1]
    if not 1 <= pad <= _CBC_IV_BYTES:
        raise DecryptionError("invalid block padding")
    return padded[:-pad]


def decrypt_element(container: LET._Element, private_key: rsa.RSAPrivateKey) -> bytes:
    """Decrypt the ``EncryptedData`` held by ``container`` and return the plaintext XML bytes.

    ``container`` is the wrapper element, such as ``saml:EncryptedAssertion``,
    or the ``xenc:EncryptedData`` element itself.
    """

    if container.tag == _q(XENC_NS, "EncryptedData"):
        data = container
    else:
        data = container.find(_q(XENC_NS, "EncryptedData"))
    if data is None:
        raise DecryptionError("missing EncryptedData")
    algorithm = _algorithm(data)
    if algorithm not in BLOCK_CIPHERS:
        raise DecryptionError(f"unsupported content encryption {algorithm}")
    key = unwrap_key(_find_encrypted_key(container, data), private_key)
    return _decrypt_content(algorithm, key, _cipher_value(data))
