"""OAuth2 credential lifecycle: key material, token storage, grant flow and refresh."""

from mailwarden.auth.errors import (
    AuthDenied,
    AuthFlowError,
    AuthListenerFault,
    AuthMalformedCallback,
    AuthTimeout,
    ConfigurationError,
    CorruptCredentials,
    CredentialWriteError,
    ExchangeFailure,
    MailwardenError,
    MalformedKeyFile,
    MissingKeyFile,
    NoCredentials,
    NoPortAvailable,
    PortExhaustion,
    PortInUse,
    ReauthRequired,
    RefreshFailed,
    RefreshTokenMissing,
    TokenExchangeFailed,
)
from mailwarden.auth.flow import Authenticator, AuthSession, SessionState, authenticate
from mailwarden.auth.keys import KeyMaterial, load_key_material, validate_key_file
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.ports import select_port
from mailwarden.auth.refresh import ensure_fresh, needs_refresh
from mailwarden.auth.session import AuthorizedSession, open_session
from mailwarden.auth.token_store import CredentialRecord, CredentialStore

__all__ = [
    "AuthDenied",
    "AuthFlowError",
    "AuthListenerFault",
    "AuthMalformedCallback",
    "AuthSession",
    "AuthTimeout",
    "Authenticator",
    "AuthorizedSession",
    "ConfigurationError",
    "CorruptCredentials",
    "CredentialRecord",
    "CredentialStore",
    "CredentialWriteError",
    "ExchangeFailure",
    "GoogleOAuthClient",
    "KeyMaterial",
    "MailwardenError",
    "MalformedKeyFile",
    "MissingKeyFile",
    "NoCredentials",
    "NoPortAvailable",
    "PortExhaustion",
    "PortInUse",
    "ReauthRequired",
    "RefreshFailed",
    "RefreshTokenMissing",
    "SessionState",
    "TokenExchangeFailed",
    "authenticate",
    "ensure_fresh",
    "load_key_material",
    "needs_refresh",
    "open_session",
    "select_port",
    "validate_key_file",
]
