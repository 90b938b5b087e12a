# Auth errors — failure taxonomy for the credential lifecycle.
# Created: 2026-10-12
#
# Nothing in mailwarden.auth retries on its own. Each error names what
# went wrong and chains the underlying exception so the caller can choose
# between re-running the interactive flow and giving up.

from __future__ import annotations


class MailwardenError(Exception):
    """Base class for all mailwarden errors."""


# -- Configuration (fatal, fix by re-running setup) --


class ConfigurationError(MailwardenError):
    """OAuth key material is missing or unusable."""


class MissingKeyFile(ConfigurationError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"OAuth keys file not found at: {path}")


class MalformedKeyFile(ConfigurationError):
    """Key file is not JSON, or holds neither "installed" nor "web" credentials."""


class KeyFileRejected(ConfigurationError):
    """Key file parsed but has the wrong credential shape (e.g. service account)."""


# -- Callback port --


class PortExhaustion(MailwardenError):
    """No callback port could be bound."""


class NoPortAvailable(PortExhaustion):
    def __init__(self, candidates):
        self.candidates = list(candidates)
        tried = ", ".join(str(p) for p in self.candidates)
        super().__init__(f"No available ports found. Tried: {tried}")


class PortInUse(PortExhaustion):
    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Port {port} is already in use. Try a different port.")


# -- Interactive grant flow --


class AuthFlowError(MailwardenError):
    """The interactive grant flow ended without credentials."""


class AuthDenied(AuthFlowError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Authentication cancelled: {reason}")


class AuthMalformedCallback(AuthFlowError):
    """Callback carried neither ``code`` nor ``error``."""


class AuthTimeout(AuthFlowError):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(
            f"OAuth authentication timed out after {seconds:g} seconds. Please try again."
        )


class AuthListenerFault(AuthFlowError):
    """The local callback listener stopped before the flow finished."""


# -- Token endpoint exchanges --


class ExchangeFailure(MailwardenError):
    """Network or provider error while talking to the token endpoint."""


class TokenExchangeFailed(ExchangeFailure):
    """Authorization code could not be exchanged for tokens."""


# -- Refresh gate: caller must run the interactive flow --


class ReauthRequired(MailwardenError):
    """Stored credentials cannot be used or renewed silently."""


class NoCredentials(ReauthRequired):
    """No access token is stored."""


class RefreshTokenMissing(ReauthRequired):
    """Access token expired and there is no refresh token."""


class RefreshFailed(ReauthRequired, ExchangeFailure):
    """Provider rejected the refresh attempt."""


# -- Credential file --


class CredentialStoreError(MailwardenError):
    """Problem reading or writing the credential file."""


class CorruptCredentials(CredentialStoreError):
    """Credential file exists but cannot be parsed."""


class CredentialWriteError(CredentialStoreError):
    """Credential file could not be written; the previous file is unchanged."""
