# Tests for config.py
# Created: 2026-10-12

import stat
from pathlib import Path

from mailwarden.config import Settings, get_config_dir


def test_defaults(tmp_path):
    s = Settings(config_dir=tmp_path)
    assert s.oauth_keys_path == tmp_path / "gcp-oauth.keys.json"
    assert s.credentials_path == tmp_path / "credentials.json"
    assert s.callback_ports == [3000, 3001, 3002]
    assert s.auth_timeout_seconds == 300
    assert s.refresh_lookahead_seconds == 300


def test_env_prefix(monkeypatch, tmp_path):
    monkeypatch.setenv("MAILWARDEN_CONFIG_DIR", str(tmp_path))
    monkeypatch.setenv("MAILWARDEN_CALLBACK_PORTS", "[4000, 4001]")
    monkeypatch.setenv("MAILWARDEN_AUTH_TIMEOUT_SECONDS", "30")
    s = Settings()
    assert s.config_dir == tmp_path
    assert s.callback_ports == [4000, 4001]
    assert s.auth_timeout_seconds == 30


def test_gmail_path_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("GMAIL_OAUTH_PATH", str(tmp_path / "keys.json"))
    monkeypatch.setenv("GMAIL_CREDENTIALS_PATH", str(tmp_path / "tokens.json"))
    s = Settings(config_dir=tmp_path / "cfg")
    assert s.oauth_keys_path == tmp_path / "keys.json"
    assert s.credentials_path == tmp_path / "tokens.json"


def test_home_is_expanded():
    s = Settings(config_dir="~/somewhere")
    assert s.config_dir == Path.home() / "somewhere"
    assert s.credentials_path == Path.home() / "somewhere" / "credentials.json"


def test_get_config_dir_creates_owner_only(tmp_path):
    s = Settings(config_dir=tmp_path / "nested" / "cfg")
    d = get_config_dir(s)
    assert d == tmp_path / "nested" / "cfg"
    assert d.is_dir()
    assert stat.S_IMODE(d.stat().st_mode) == 0o700
    assert get_config_dir(s) == d
