# Credential Store — the persisted OAuth token record (credentials.json).
# Created: 2026-10-12
#
# File format matches what Google client libraries write:
#   {access_token, refresh_token?, expiry_date? (epoch ms), scope, token_type}
# Saves are atomic (temp file + rename) and owner-only (0600).

from __future__ import annotations

import json
import logging
import os
import stat
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from mailwarden.auth.errors import CorruptCredentials, CredentialWriteError

logger = logging.getLogger(__name__)


@dataclass
class CredentialRecord:
    """OAuth 2.0 token set for the mailbox account.

    ``expires_at`` of None means "expiry unknown" and is treated as expired.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str = ""
    token_type: str = "Bearer"

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """True if the token is expired, has no expiry, or expires within *window*."""
        if self.expires_at is None:
            return True
        now = now or datetime.now(UTC)
        return now >= self.expires_at - window

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "scope": self.scope,
            "token_type": self.token_type,
        }
        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.expires_at is not None:
            data["expiry_date"] = int(self.expires_at.timestamp() * 1000)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        expiry_ms = data.get("expiry_date")
        expires_at = None
        if expiry_ms is not None:
            expires_at = datetime.fromtimestamp(float(expiry_ms) / 1000, tz=UTC)
        return cls(
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or None,
            expires_at=expires_at,
            scope=data.get("scope") or "",
            token_type=data.get("token_type") or "Bearer",
        )


class CredentialStore:
    """Single-file credential store.

    Holds no state besides the path; every call reads or writes the file.
    Only the grant flow and the refresh gate call ``save``.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> CredentialRecord | None:
        """Load the stored record. Returns None if the file does not exist.

        Raises:
            CorruptCredentials: the file exists but is not a JSON token object.
        """
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
            return CredentialRecord.from_dict(data)
        except (ValueError, TypeError, OverflowError, OSError) as e:
            raise CorruptCredentials(f"Could not parse credentials at {self.path}: {e}") from e

    def save(self, record: CredentialRecord) -> None:
        """Write *record* atomically with mode 0600.

        Either the full new record lands at ``path`` or the old file stays.
        """
        directory = self.path.parent
        if not directory.exists():
            directory.mkdir(mode=0o700, parents=True, exist_ok=True)

        payload = json.dumps(record.to_dict(), indent=2)
        temp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CredentialWriteError(f"Could not write credentials to {self.path}: {e}") from e
        logger.info("Saved OAuth credentials to %s", self.path)
