# Settings — pydantic-settings backed configuration for mailwarden.
# Created: 2026-10-12
#
# Values come from MAILWARDEN_* environment variables. The key file and
# credential paths also honour GMAIL_OAUTH_PATH / GMAIL_CREDENTIALS_PATH.

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_DIR = Path.home() / ".mailwarden"
OAUTH_KEYS_FILENAME = "gcp-oauth.keys.json"
CREDENTIALS_FILENAME = "credentials.json"


def get_config_dir(settings: Settings | None = None) -> Path:
    """Get/create the mailwarden config directory (owner-only)."""
    d = (settings or get_settings()).config_dir
    d.mkdir(mode=0o700, parents=True, exist_ok=True)
    return d


class Settings(BaseSettings):
    """Runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="MAILWARDEN_", extra="ignore", populate_by_name=True
    )

    config_dir: Path = DEFAULT_CONFIG_DIR
    oauth_keys_path: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("MAILWARDEN_OAUTH_KEYS_PATH", "GMAIL_OAUTH_PATH"),
    )
    credentials_path: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("MAILWARDEN_CREDENTIALS_PATH", "GMAIL_CREDENTIALS_PATH"),
    )

    # OAuth callback listener
    callback_ports: list[int] = Field(default_factory=lambda: [3000, 3001, 3002])
    callback_host: str = "127.0.0.1"
    auth_timeout_seconds: float = Field(default=300.0, gt=0)
    open_browser: bool = True

    # Refresh gate
    refresh_lookahead_seconds: float = Field(default=300.0, ge=0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _fill_paths(self) -> Settings:
        self.config_dir = self.config_dir.expanduser()
        if self.oauth_keys_path is None:
            self.oauth_keys_path = self.config_dir / OAUTH_KEYS_FILENAME
        if self.credentials_path is None:
            self.credentials_path = self.config_dir / CREDENTIALS_FILENAME
        self.oauth_keys_path = self.oauth_keys_path.expanduser()
        self.credentials_path = self.credentials_path.expanduser()
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
