# Authorized session — the normal-start path that hands a ready token onward.
# Created: 2026-10-14
#
# Key material and credentials are explicit values on the session; there is
# no module-level "current client".

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from mailwarden.auth.errors import CorruptCredentials, NoCredentials
from mailwarden.auth.keys import KeyMaterial, load_key_material
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.refresh import ensure_fresh
from mailwarden.auth.token_store import CredentialRecord, CredentialStore
from mailwarden.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AuthorizedSession:
    """Key material + fresh credentials, ready for the mailbox API client."""

    keys: KeyMaterial
    record: CredentialRecord
    store: CredentialStore
    client: GoogleOAuthClient
    lookahead: timedelta

    @property
    def access_token(self) -> str:
        return self.record.access_token

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"{self.record.token_type} {self.record.access_token}"}

    async def ensure_fresh(self) -> bool:
        """Refresh before a batch of API calls if the token is close to expiry."""
        return await ensure_fresh(self.record, self.store, self.client, lookahead=self.lookahead)


def load_credentials(store: CredentialStore) -> CredentialRecord | None:
    """Load the stored record, treating a corrupt file as absent."""
    try:
        return store.load()
    except CorruptCredentials as e:
        logger.warning("%s; re-authentication required", e)
        return None


async def open_session(settings: Settings) -> AuthorizedSession:
    """Load keys and credentials, refresh if needed, and return a usable session.

    Raises:
        ConfigurationError: key file missing or malformed.
        ReauthRequired: no usable credentials; run ``mailwarden auth``.
        CredentialWriteError: a refreshed record could not be saved.
    """
    keys = load_key_material(settings.oauth_keys_path)
    store = CredentialStore(settings.credentials_path)
    client = GoogleOAuthClient(keys)
    lookahead = timedelta(seconds=settings.refresh_lookahead_seconds)

    record = load_credentials(store)
    if record is None:
        raise NoCredentials("No credentials loaded. Authentication required.")

    session = AuthorizedSession(
        keys=keys, record=record, store=store, client=client, lookahead=lookahead
    )
    if await session.ensure_fresh():
        logger.info("Access token refreshed at startup")
    return session
