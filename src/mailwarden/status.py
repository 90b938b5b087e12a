# Status report — what `mailwarden status` prints.
# Created: 2026-10-15

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import httpx

from mailwarden.auth.errors import CorruptCredentials, MailwardenError
from mailwarden.auth.session import open_session
from mailwarden.auth.token_store import CredentialRecord, CredentialStore
from mailwarden.config import Settings

logger = logging.getLogger(__name__)

_GMAIL_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"


class AuthStatus(str, Enum):
    NOT_CONFIGURED = "not_configured"
    KEYS_MISSING = "keys_missing"
    NOT_AUTHENTICATED = "not_authenticated"
    CORRUPT = "corrupt"
    EXPIRED_NO_REFRESH = "expired_no_refresh"
    EXPIRED_REFRESHABLE = "expired_refreshable"
    VALID = "valid"


@dataclass
class StatusReport:
    status: AuthStatus
    keys_path: str
    credentials_path: str
    expires_at: datetime | None = None
    has_refresh_token: bool = False
    email: str | None = None
    messages_total: int | None = None
    threads_total: int | None = None
    error: str | None = None
    hint: str | None = None

    @property
    def ok(self) -> bool:
        return (
            self.status in (AuthStatus.VALID, AuthStatus.EXPIRED_REFRESHABLE)
            and self.error is None
        )


def hint_for_error(message: str) -> str:
    """Map a provider error message to a next step for the operator."""
    if "invalid_grant" in message:
        return 'Your token has been revoked. Run "mailwarden auth" to re-authenticate.'
    if "Gmail API has not been used" in message or "accessNotConfigured" in message:
        return "Enable Gmail API: APIs & Services > Library > Gmail API > Enable"
    if "access_denied" in message:
        return "Add your email as a test user in the OAuth consent screen."
    return 'Run "mailwarden auth" to re-authenticate.'


def classify(record: CredentialRecord, now: datetime | None = None) -> AuthStatus:
    """Expired means past the expiry time; a missing expiry also counts as expired."""
    now = now or datetime.now(UTC)
    if record.expires_at is not None and now < record.expires_at:
        return AuthStatus.VALID
    if record.refresh_token:
        return AuthStatus.EXPIRED_REFRESHABLE
    return AuthStatus.EXPIRED_NO_REFRESH


def inspect_local(settings: Settings) -> StatusReport:
    """Check the config directory, key file and credential file without network access."""
    report = StatusReport(
        status=AuthStatus.NOT_CONFIGURED,
        keys_path=str(settings.oauth_keys_path),
        credentials_path=str(settings.credentials_path),
    )
    if not settings.oauth_keys_path.parent.exists():
        report.hint = 'Run "mailwarden import-keys <path>" to set up mailwarden.'
        return report
    if not settings.oauth_keys_path.exists():
        report.status = AuthStatus.KEYS_MISSING
        report.hint = 'Run "mailwarden import-keys <path>" to set up mailwarden.'
        return report

    store = CredentialStore(settings.credentials_path)
    try:
        record = store.load()
    except CorruptCredentials:
        report.status = AuthStatus.CORRUPT
        report.hint = 'Run "mailwarden auth" to re-authenticate.'
        return report
    if record is None or not record.access_token:
        report.status = AuthStatus.NOT_AUTHENTICATED
        report.hint = 'Run "mailwarden auth" to authenticate.'
        return report

    report.expires_at = record.expires_at
    report.has_refresh_token = bool(record.refresh_token)
    report.status = classify(record)
    if report.status is AuthStatus.EXPIRED_NO_REFRESH:
        report.hint = 'Run "mailwarden auth" to re-authenticate.'
    return report


async def fetch_profile(
    authorization: dict[str, str], transport: httpx.AsyncBaseTransport | None = None
) -> dict:
    async with httpx.AsyncClient(timeout=15, transport=transport) as client:
        resp = await client.get(_GMAIL_PROFILE_URL, headers=authorization)
        resp.raise_for_status()
        return resp.json()


async def collect_status(settings: Settings, probe: bool = True) -> StatusReport:
    """Local checks, then (optionally) refresh and read the Gmail profile."""
    report = inspect_local(settings)
    if not probe or report.status not in (AuthStatus.VALID, AuthStatus.EXPIRED_REFRESHABLE):
        return report

    try:
        session = await open_session(settings)
        profile = await fetch_profile(session.authorization_header())
    except httpx.HTTPStatusError as e:
        report.error = f"{e.response.status_code}: {e.response.text[:200]}"
    except (httpx.HTTPError, MailwardenError) as e:
        report.error = str(e)
    else:
        report.status = AuthStatus.VALID
        report.expires_at = session.record.expires_at
        report.email = profile.get("emailAddress")
        report.messages_total = profile.get("messagesTotal")
        report.threads_total = profile.get("threadsTotal")
        return report

    logger.debug("Status probe failed: %s", report.error)
    report.hint = hint_for_error(report.error)
    return report
