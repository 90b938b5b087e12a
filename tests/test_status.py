# Tests for status.py
# Created: 2026-10-15

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from mailwarden.auth.errors import RefreshFailed
from mailwarden.auth.token_store import CredentialRecord, CredentialStore
from mailwarden.config import Settings
from mailwarden.status import AuthStatus, classify, collect_status, hint_for_error, inspect_local


@pytest.fixture
def settings(tmp_path):
    return Settings(config_dir=tmp_path / "cfg")


@pytest.fixture
def configured(settings):
    settings.config_dir.mkdir()
    settings.oauth_keys_path.write_text(
        json.dumps({"installed": {"client_id": "cid", "client_secret": "s"}})
    )
    return settings


def _save(settings, **fields):
    CredentialStore(settings.credentials_path).save(CredentialRecord(**fields))


class TestInspectLocal:
    def test_not_configured(self, settings):
        assert inspect_local(settings).status is AuthStatus.NOT_CONFIGURED

    def test_keys_missing(self, settings):
        settings.config_dir.mkdir()
        assert inspect_local(settings).status is AuthStatus.KEYS_MISSING

    def test_not_authenticated(self, configured):
        report = inspect_local(configured)
        assert report.status is AuthStatus.NOT_AUTHENTICATED
        assert "mailwarden auth" in report.hint

    def test_corrupt(self, configured):
        configured.credentials_path.write_text("{")
        assert inspect_local(configured).status is AuthStatus.CORRUPT

    def test_valid(self, configured):
        expiry = datetime.now(UTC) + timedelta(hours=1)
        _save(configured, access_token="A", refresh_token="R", expires_at=expiry)
        report = inspect_local(configured)
        assert report.status is AuthStatus.VALID
        assert report.has_refresh_token
        assert report.ok

    def test_expired_without_refresh_token(self, configured):
        _save(configured, access_token="A", expires_at=datetime.now(UTC) - timedelta(hours=1))
        report = inspect_local(configured)
        assert report.status is AuthStatus.EXPIRED_NO_REFRESH
        assert not report.ok


def test_classify_missing_expiry_is_expired():
    record = CredentialRecord(access_token="A", refresh_token="R")
    assert classify(record) is AuthStatus.EXPIRED_REFRESHABLE


@pytest.mark.parametrize(
    "message, fragment",
    [
        ("Failed to refresh token: invalid_grant", "revoked"),
        ("403: Gmail API has not been used in project 123", "Enable Gmail API"),
        ("access_denied", "test user"),
        ("something else", "re-authenticate"),
    ],
)
def test_hint_for_error(message, fragment):
    assert fragment in hint_for_error(message)


class TestCollectStatus:
    async def test_offline_skips_probe(self, configured):
        _save(configured, access_token="A", refresh_token="R")
        with patch("mailwarden.status.open_session", new_callable=AsyncMock) as opener:
            report = await collect_status(configured, probe=False)
        opener.assert_not_called()
        assert report.status is AuthStatus.EXPIRED_REFRESHABLE

    async def test_probe_reads_profile(self, configured):
        expiry = datetime.now(UTC) + timedelta(hours=1)
        _save(configured, access_token="A", refresh_token="R", expires_at=expiry)
        profile = {"emailAddress": "me@example.com", "messagesTotal": 10, "threadsTotal": 4}

        with patch("mailwarden.status.fetch_profile", new_callable=AsyncMock, return_value=profile):
            report = await collect_status(configured)

        assert report.ok
        assert report.email == "me@example.com"
        assert report.messages_total == 10

    async def test_probe_failure_sets_hint(self, configured):
        _save(configured, access_token="A", refresh_token="R")
        with patch(
            "mailwarden.auth.oauth.GoogleOAuthClient.refresh",
            new_callable=AsyncMock,
            side_effect=RefreshFailed("Failed to refresh token: invalid_grant"),
        ):
            report = await collect_status(configured)

        assert not report.ok
        assert "invalid_grant" in report.error
        assert "revoked" in report.hint
