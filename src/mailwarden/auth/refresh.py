# Refresh Gate — decide between "still fresh", "refresh silently" and "re-auth".
# Created: 2026-10-13

from __future__ import annotations

import logging
from dataclasses import fields
from datetime import datetime, timedelta

from mailwarden.auth.errors import NoCredentials, RefreshTokenMissing
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.token_store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)

# Refresh this long before expiry so follow-up API calls don't race the deadline.
REFRESH_LOOKAHEAD = timedelta(minutes=5)


def needs_refresh(
    record: CredentialRecord,
    lookahead: timedelta = REFRESH_LOOKAHEAD,
    now: datetime | None = None,
) -> bool:
    """True if the record has no expiry or expires within *lookahead* (inclusive)."""
    return record.expires_within(lookahead, now=now)


async def ensure_fresh(
    record: CredentialRecord | None,
    store: CredentialStore,
    client: GoogleOAuthClient,
    *,
    lookahead: timedelta = REFRESH_LOOKAHEAD,
    now: datetime | None = None,
) -> bool:
    """Refresh *record* if it is expired or about to expire.

    On a successful refresh the new record is written to *store* first, then
    copied into *record* so the caller's handle carries the new token.

    Returns:
        True if a refresh happened, False if the record was still fresh.

    Raises:
        NoCredentials: no record or no access token; run the grant flow.
        RefreshTokenMissing: expired and nothing to refresh with.
        RefreshFailed: provider rejected the refresh.
        CredentialWriteError: the refreshed record could not be saved.
    """
    if record is None or not record.access_token:
        raise NoCredentials("No credentials loaded. Authentication required.")

    if not needs_refresh(record, lookahead, now):
        return False

    if not record.refresh_token:
        raise RefreshTokenMissing(
            "Token expired and no refresh token available. Re-authentication required."
        )

    refreshed = await client.refresh(record)
    store.save(refreshed)

    for f in fields(CredentialRecord):
        setattr(record, f.name, getattr(refreshed, f.name))
    logger.debug("Access token now valid until %s", record.expires_at)
    return True
