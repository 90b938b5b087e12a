# Google OAuth client — consent URL, code exchange and token refresh.
# Created: 2026-10-13
#
# Talks to Google's token endpoint with httpx. Never writes to disk; the
# grant flow and the refresh gate decide what gets persisted.

from __future__ import annotations

import logging
import urllib.parse
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from mailwarden.auth.errors import RefreshFailed, TokenExchangeFailed
from mailwarden.auth.keys import KeyMaterial
from mailwarden.auth.token_store import CredentialRecord

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

# Modify only: no send scope, no settings scope.
GMAIL_MODIFY_SCOPE = "https://www.googleapis.com/auth/gmail.modify"
DEFAULT_SCOPES: tuple[str, ...] = (GMAIL_MODIFY_SCOPE,)

_TIMEOUT = 15


def _describe(exc: Exception) -> str:
    """Best-effort message for a token endpoint failure, including the OAuth error code."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            detail = body.get("error_description")
            return f"{body['error']}: {detail}" if detail else str(body["error"])
        return f"HTTP {exc.response.status_code} from token endpoint"
    return str(exc) or exc.__class__.__name__


def _record_from_response(
    data: dict[str, Any],
    *,
    previous_refresh_token: str | None,
    requested_scope: str,
    now: datetime,
) -> CredentialRecord:
    access_token = data["access_token"]
    if not isinstance(access_token, str) or not access_token:
        raise ValueError("token response has no access_token")

    expires_in = data.get("expires_in")
    expires_at = now + timedelta(seconds=float(expires_in)) if expires_in is not None else None

    return CredentialRecord(
        access_token=access_token,
        # Providers may omit refresh_token on repeat consent and on refresh.
        refresh_token=data.get("refresh_token") or previous_refresh_token,
        expires_at=expires_at,
        scope=data.get("scope") or requested_scope,
        token_type=data.get("token_type") or "Bearer",
    )


class GoogleOAuthClient:
    """OAuth 2.0 authorization code flow + token refresh for one client.

    Args:
        keys: Client credentials from the keys file.
        scopes: Scopes to request; defaults to gmail.modify.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        keys: KeyMaterial,
        scopes: tuple[str, ...] | list[str] = DEFAULT_SCOPES,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.keys = keys
        self.scopes = list(scopes)
        self._transport = transport

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def get_auth_url(self, redirect_uri: str, state: str = "") -> str:
        """Build the consent URL.

        Always asks for offline access with a forced consent prompt so the
        provider issues a refresh token on every interactive flow.
        """
        params = {
            "client_id": self.keys.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=_TIMEOUT, transport=self._transport) as client:
            resp = await client.post(TOKEN_URL, data=form)
            resp.raise_for_status()
            data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("token endpoint returned a non-object body")
        return data

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        previous_refresh_token: str | None = None,
    ) -> CredentialRecord:
        """Exchange an authorization code for a new credential record.

        The result is built from the response alone; *previous_refresh_token*
        is only used when the response carries no refresh token.

        Raises:
            TokenExchangeFailed: network, HTTP or response-shape error.
        """
        try:
            data = await self._post_token(
                {
                    "code": code,
                    "client_id": self.keys.client_id,
                    "client_secret": self.keys.client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                }
            )
            record = _record_from_response(
                data,
                previous_refresh_token=previous_refresh_token,
                requested_scope=self.scope,
                now=datetime.now(UTC),
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise TokenExchangeFailed(
                f"Failed to exchange authorization code: {_describe(e)}"
            ) from e

        logger.info("OAuth tokens obtained for client %s", self.keys.client_id)
        return record

    async def refresh(self, record: CredentialRecord) -> CredentialRecord:
        """Mint a new access token from *record*'s refresh token.

        Returns a new record; *record* itself is not modified.

        Raises:
            RefreshFailed: provider rejected the refresh or the call failed.
        """
        if not record.refresh_token:
            raise RefreshFailed("No refresh token available")
        try:
            data = await self._post_token(
                {
                    "refresh_token": record.refresh_token,
                    "client_id": self.keys.client_id,
                    "client_secret": self.keys.client_secret,
                    "grant_type": "refresh_token",
                }
            )
            refreshed = _record_from_response(
                data,
                previous_refresh_token=record.refresh_token,
                requested_scope=record.scope or self.scope,
                now=datetime.now(UTC),
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            raise RefreshFailed(
                f"Failed to refresh token: {_describe(e)}. Re-authentication may be required."
            ) from e

        logger.info("Refreshed OAuth access token")
        return refreshed
