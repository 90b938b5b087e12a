"""mailwarden entry point.

Subcommands:
  auth          Run the browser OAuth flow and store credentials.
  status        Show key/credential status and test the Gmail API.
  refresh       Refresh the access token if it is expired or about to expire.
  import-keys   Validate a Desktop-app OAuth keys file and copy it into place.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta

from mailwarden import __version__
from mailwarden.auth.errors import (
    AuthFlowError,
    ConfigurationError,
    CredentialWriteError,
    ExchangeFailure,
    MailwardenError,
    PortExhaustion,
    ReauthRequired,
)
from mailwarden.auth.flow import Authenticator
from mailwarden.auth.keys import import_key_file, load_key_material
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.ports import select_port
from mailwarden.auth.refresh import ensure_fresh
from mailwarden.auth.session import load_credentials
from mailwarden.auth.token_store import CredentialStore
from mailwarden.config import Settings, get_config_dir, get_settings
from mailwarden.logging_setup import setup_logging
from mailwarden.status import AuthStatus, StatusReport, collect_status

logger = logging.getLogger(__name__)

_EXPIRED = (AuthStatus.EXPIRED_REFRESHABLE, AuthStatus.EXPIRED_NO_REFRESH)
_HAS_TOKEN = (AuthStatus.VALID, *_EXPIRED)


async def run_auth(settings: Settings) -> int:
    keys = load_key_material(settings.oauth_keys_path)
    get_config_dir(settings)
    port = select_port(settings.callback_ports, host=settings.callback_host)
    authenticator = Authenticator(
        keys,
        CredentialStore(settings.credentials_path),
        timeout=settings.auth_timeout_seconds,
        host=settings.callback_host,
        open_browser=settings.open_browser,
    )
    await authenticator.authenticate(port)
    print(f"Credentials saved to {settings.credentials_path}")
    return 0


async def run_refresh(settings: Settings) -> int:
    keys = load_key_material(settings.oauth_keys_path)
    store = CredentialStore(settings.credentials_path)
    record = load_credentials(store)
    refreshed = await ensure_fresh(
        record,
        store,
        GoogleOAuthClient(keys),
        lookahead=timedelta(seconds=settings.refresh_lookahead_seconds),
    )
    print("Access token refreshed." if refreshed else "Access token still valid.")
    return 0


def print_status(report: StatusReport) -> None:
    print("\n=== mailwarden status ===\n")
    print(f"OAuth keys:   {report.keys_path}")
    print(f"Credentials:  {report.credentials_path}")
    print(f"Status:       {report.status.value}")
    if report.status in _HAS_TOKEN:
        expiry = (
            f"{report.expires_at.astimezone():%Y-%m-%d %H:%M:%S %Z}"
            if report.expires_at
            else "Unknown"
        )
        print(f"Token expiry: {expiry}")
    if report.status in _EXPIRED:
        available = "Available (will auto-refresh)" if report.has_refresh_token else "Missing"
        print(f"Refresh token: {available}")
    if report.email:
        print("\nAuthenticated Account:")
        print(f"  Email:    {report.email}")
        print(f"  Messages: {report.messages_total}")
        print(f"  Threads:  {report.threads_total}")
    if report.error:
        print(f"\nAPI Test: Failed\n  Error: {report.error}")
    if report.hint:
        print(f"\n{report.hint}")
    print()


async def run_status(settings: Settings, probe: bool) -> int:
    report = await collect_status(settings, probe=probe)
    print_status(report)
    return 0 if report.ok else 1


def run_import_keys(settings: Settings, source: str) -> int:
    get_config_dir(settings)
    client_id = import_key_file(source, settings.oauth_keys_path)
    print(f"OAuth keys for {client_id} copied to {settings.oauth_keys_path}")
    print('Next: run "mailwarden auth" to authenticate.')
    return 0


def _hint(exc: MailwardenError) -> str:
    if isinstance(exc, ConfigurationError):
        return 'Run "mailwarden import-keys <path>" to set up mailwarden.'
    if isinstance(exc, PortExhaustion):
        return "Free one of the callback ports and try again."
    if isinstance(exc, ReauthRequired):
        return 'Run "mailwarden auth" to re-authenticate.'
    if isinstance(exc, (AuthFlowError, ExchangeFailure, CredentialWriteError)):
        return 'Run "mailwarden auth" to try again.'
    return ""


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="mailwarden",
        description="Restricted Gmail access for automated agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mailwarden import-keys ~/Downloads/client_secret.json
  mailwarden auth
  mailwarden status
  mailwarden status --offline
""",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="status: skip the token refresh and Gmail API check",
    )
    parser.add_argument(
        "command",
        choices=["auth", "status", "refresh", "import-keys"],
        help="Subcommand to run",
    )
    parser.add_argument("path", nargs="?", help="import-keys: path to the downloaded keys file")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.log_level)

    try:
        if args.command == "auth":
            return asyncio.run(run_auth(settings))
        if args.command == "refresh":
            return asyncio.run(run_refresh(settings))
        if args.command == "status":
            return asyncio.run(run_status(settings, probe=not args.offline))
        if not args.path:
            parser.error("import-keys requires the path to the OAuth keys file")
        return run_import_keys(settings, args.path)
    except MailwardenError as e:
        logger.error("%s", e)
        hint = _hint(e)
        if hint:
            print(hint, file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
