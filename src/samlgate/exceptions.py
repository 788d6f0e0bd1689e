"""Gateway exception types."""

from __future__ import annotations


class SamlGateError(Exception):
    """Base error type."""


class ConfigurationError(SamlGateError):
    """Raised at startup when required identity provider settings are missing."""


class SecretStoreError(SamlGateError):
    """Raised when the remote secret store cannot produce a usable record."""


class AssertionFailure(SamlGateError):
    """Base class for failures while consuming a SAML response."""


class MissingAssertionError(AssertionFailure):
    """Raised when a request to the assertion consumer carries no ``SAMLResponse``."""


class AssertionRejectedError(AssertionFailure):
    """Raised when a SAML response fails verification."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class TokenError(SamlGateError):
    """Raised when a session token cannot be signed or verified."""


class DecryptionError(SamlGateError):
    """Raised when an XML-encrypted element cannot be decrypted with the service provider key."""
