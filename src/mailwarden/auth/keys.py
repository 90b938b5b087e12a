# Key Material — OAuth application credentials (gcp-oauth.keys.json).
# Created: 2026-10-12
#
# load_key_material() is the runtime loader and accepts both "installed" and
# "web" shapes. validate_key_file() is the stricter gate used by
# `mailwarden import-keys`; it only lets Desktop-app credentials through.

from __future__ import annotations

import json
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mailwarden.auth.errors import KeyFileRejected, MalformedKeyFile, MissingKeyFile

logger = logging.getLogger(__name__)

_GOOGLE_CLIENT_SUFFIX = ".apps.googleusercontent.com"


@dataclass(frozen=True)
class KeyMaterial:
    """OAuth client credentials, loaded once per process."""

    client_id: str
    client_secret: str
    redirect_uris: tuple[str, ...] = ()

    def __repr__(self) -> str:
        return f"KeyMaterial(client_id={self.client_id!r}, redirect_uris={self.redirect_uris!r})"


def _read_json(path: Path) -> Any:
    if not path.exists():
        raise MissingKeyFile(path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedKeyFile(f"Invalid JSON in OAuth keys file {path}: {e}") from e


def load_key_material(path: str | os.PathLike[str]) -> KeyMaterial:
    """Load client id, secret and redirect URIs from an OAuth keys file.

    Raises:
        MissingKeyFile: the file does not exist.
        MalformedKeyFile: not JSON, or neither "installed" nor "web" is present.
    """
    path = Path(path)
    data = _read_json(path)

    keys = None
    if isinstance(data, dict):
        keys = data.get("installed") or data.get("web")
    if not isinstance(keys, dict):
        raise MalformedKeyFile(
            'Invalid OAuth keys file format. File should contain either "installed" '
            'or "web" credentials.'
        )

    client_id = keys.get("client_id")
    client_secret = keys.get("client_secret")
    if not client_id or not client_secret:
        raise MalformedKeyFile(f"OAuth keys file {path} is missing client_id or client_secret")

    redirect_uris = keys.get("redirect_uris") or []
    logger.debug("Loaded OAuth key material from %s", path)
    return KeyMaterial(
        client_id=str(client_id),
        client_secret=str(client_secret),
        redirect_uris=tuple(str(u) for u in redirect_uris),
    )


def validate_key_file(path: str | os.PathLike[str]) -> str:
    """Check that *path* holds Desktop-app OAuth credentials.

    Returns the client id. Raises a ConfigurationError subclass whose message
    says what kind of file was supplied instead.
    """
    path = Path(path)
    if not path.exists():
        raise MissingKeyFile(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedKeyFile("Invalid JSON file - check file is complete") from e

    if not isinstance(data, dict):
        raise MalformedKeyFile("Invalid OAuth file format - expected Desktop app credentials")
    if data.get("type") == "service_account":
        raise KeyFileRejected(
            "This is a service account. Create OAuth Client ID > Desktop app instead."
        )
    if "web" in data:
        raise KeyFileRejected("This is a Web app OAuth. Create Desktop app instead.")
    if not isinstance(data.get("installed"), dict):
        raise MalformedKeyFile("Invalid OAuth file format - expected Desktop app credentials")

    keys = data["installed"]
    client_id = keys.get("client_id")
    if not client_id:
        raise MalformedKeyFile("Invalid OAuth file - missing client_id")
    if not str(client_id).endswith(_GOOGLE_CLIENT_SUFFIX):
        raise KeyFileRejected("Invalid client_id format")
    if not keys.get("client_secret"):
        raise MalformedKeyFile("Invalid OAuth file - missing client_secret")
    if not keys.get("redirect_uris"):
        raise MalformedKeyFile("Invalid OAuth file - missing redirect_uris")

    return str(client_id)


def import_key_file(source: str | os.PathLike[str], destination: Path) -> str:
    """Validate *source* and copy it to *destination* with owner-only permissions.

    The destination directory is created with mode 0700 when missing.
    Returns the client id.
    """
    client_id = validate_key_file(source)

    destination.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    shutil.copyfile(source, destination)
    os.chmod(destination, stat.S_IRUSR | stat.S_IWUSR)
    logger.info("Copied OAuth keys to %s", destination)
    return client_id
