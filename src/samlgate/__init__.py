"""SAML2 Web-SSO identity-aware gateway."""

from .config import GatewayConfig, SamlConfig, SecretStoreConfig, TokenConfig, UpstreamConfig, load_config
from .credentials import AwsSecretsManagerStore, CachedKeys, CredentialCache, SecretStore, refreshable
from .exceptions import (
    AssertionRejectedError,
    ConfigurationError,
    DecryptionError,
    MissingAssertionError,
    SamlGateError,
    SecretStoreError,
    TokenError,
)
from .gateway import AuthenticationGateway, AuthPath
from .headers import HeaderActivity, Headers, HeaderValue
from .host import Host
from .requests import Request
from .responses import Response
from .saml import AssertionResult, SamlToolkit, SamlTools, SignedXmlToolkit, repair_friendly_names
from .tokens import JwtSigner, SessionClaims, SessionTokens

__all__ = [
    "AssertionRejectedError",
    "AssertionResult",
    "AuthPath",
    "AuthenticationGateway",
    "AwsSecretsManagerStore",
    "CachedKeys",
    "ConfigurationError",
    "DecryptionError",
    "CredentialCache",
    "GatewayConfig",
    "HeaderActivity",
    "HeaderValue",
    "Headers",
    "Host",
    "JwtSigner",
    "MissingAssertionError",
    "Request",
    "Response",
    "SamlConfig",
    "SamlGateError",
    "SamlToolkit",
    "SamlTools",
    "SecretStore",
    "SecretStoreConfig",
    "SecretStoreError",
    "SessionClaims",
    "SessionTokens",
    "SignedXmlToolkit",
    "TokenConfig",
    "TokenError",
    "UpstreamConfig",
    "load_config",
    "refreshable",
    "repair_friendly_names",
]
