# OAuth grant flow — one-shot local callback listener + code exchange.
# Created: 2026-10-14
#
# Binds a FastAPI app on localhost:<port>/oauth2callback, prints the consent
# URL, and waits for exactly one outcome: grant, denial, malformed callback,
# timeout or listener fault. The listener is shut down before returning.

from __future__ import annotations

import asyncio
import errno
import html
import logging
import socket
import sys
import webbrowser
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from mailwarden.auth.errors import (
    AuthDenied,
    AuthListenerFault,
    AuthMalformedCallback,
    AuthTimeout,
    CorruptCredentials,
    MailwardenError,
    PortInUse,
    TokenExchangeFailed,
)
from mailwarden.auth.keys import KeyMaterial
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.ports import bind_loopback
from mailwarden.auth.token_store import CredentialRecord, CredentialStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2callback"
AUTH_TIMEOUT_SECONDS = 5 * 60


class SessionState(str, Enum):
    """Auth session states. Everything except the first two is terminal."""

    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    GRANTED = "granted"
    DENIED = "denied"
    MALFORMED = "malformed"
    TIMED_OUT = "timed_out"
    EXCHANGE_FAILED = "exchange_failed"
    LISTENER_FAULT = "listener_fault"

    @property
    def terminal(self) -> bool:
        return self not in (SessionState.AWAITING_CALLBACK, SessionState.EXCHANGING)


_WAITING = frozenset({SessionState.AWAITING_CALLBACK})
_EXCHANGING = frozenset({SessionState.EXCHANGING})
_LIVE = frozenset({SessionState.AWAITING_CALLBACK, SessionState.EXCHANGING})


class AuthSession:
    """State of a single interactive grant flow.

    Every transition goes through ``_transition``, which refuses to leave a
    terminal state. A late callback, a duplicate redirect or a deadline that
    fires after completion is therefore a no-op.
    """

    def __init__(
        self,
        port: int,
        redirect_uri: str,
        timeout: float = AUTH_TIMEOUT_SECONDS,
    ):
        self.port = port
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.deadline = datetime.now(UTC) + timedelta(seconds=timeout)
        self.state = SessionState.AWAITING_CALLBACK
        self.record: CredentialRecord | None = None
        self.error: MailwardenError | None = None
        self._callback_seen = asyncio.Event()
        self._resolved = asyncio.Event()

    @property
    def resolved(self) -> bool:
        return self.state.terminal

    def remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, (self.deadline - datetime.now(UTC)).total_seconds())

    def _transition(
        self,
        allowed: frozenset[SessionState],
        new_state: SessionState,
        *,
        record: CredentialRecord | None = None,
        error: MailwardenError | None = None,
    ) -> bool:
        if self.state not in allowed:
            logger.debug("Ignoring %s: session already %s", new_state.value, self.state.value)
            return False
        self.state = new_state
        self.record = record
        self.error = error
        # Any transition out of AWAITING_CALLBACK stops the deadline.
        self._callback_seen.set()
        if new_state.terminal:
            self._resolved.set()
        return True

    def begin_exchange(self) -> bool:
        return self._transition(_WAITING, SessionState.EXCHANGING)

    def deny(self, reason: str) -> bool:
        return self._transition(_WAITING, SessionState.DENIED, error=AuthDenied(reason))

    def reject_malformed(self) -> bool:
        return self._transition(
            _WAITING,
            SessionState.MALFORMED,
            error=AuthMalformedCallback("No authorization code provided in callback"),
        )

    def expire(self) -> bool:
        return self._transition(
            _WAITING, SessionState.TIMED_OUT, error=AuthTimeout(self.timeout)
        )

    def grant(self, record: CredentialRecord) -> bool:
        return self._transition(_EXCHANGING, SessionState.GRANTED, record=record)

    def fail_exchange(self, error: MailwardenError) -> bool:
        return self._transition(_EXCHANGING, SessionState.EXCHANGE_FAILED, error=error)

    def fault(self, error: MailwardenError) -> bool:
        return self._transition(_LIVE, SessionState.LISTENER_FAULT, error=error)

    async def wait(self) -> CredentialRecord:
        """Block until the session resolves; return the record or raise its error."""
        try:
            await asyncio.wait_for(self._callback_seen.wait(), timeout=self.remaining())
        except TimeoutError:
            self.expire()
        await self._resolved.wait()

        if self.state is SessionState.GRANTED and self.record is not None:
            return self.record
        if self.error is None:
            raise AuthListenerFault(f"Auth session ended as {self.state.value} without a result")
        raise self.error


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<html>
    <body style="font-family: sans-serif; text-align: center; padding-top: 50px;">
        <h1>{html.escape(title)}</h1>
        <p>{html.escape(message)}</p>
    </body>
</html>""",
        status_code=status_code,
    )


def _already_handled() -> HTMLResponse:
    return _page(
        "Already handled",
        "This sign-in request has already been processed. You can close this window.",
        status_code=409,
    )


def print_consent_url(url: str, timeout: float, open_browser: bool = True) -> None:
    """Show the consent URL on stderr and try to open it in a browser."""
    minutes = timeout / 60
    print("\nPlease visit this URL to authenticate:", file=sys.stderr)
    print(url, file=sys.stderr)
    print(
        f"\nWaiting for authentication (will time out in {minutes:g} minutes)...\n",
        file=sys.stderr,
    )
    if not open_browser:
        return
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug("webbrowser.open failed: %s", e)
        opened = False
    if not opened:
        print(
            "Could not open browser automatically. "
            "Please copy the URL above and paste it in your browser.",
            file=sys.stderr,
        )


class Authenticator:
    """Runs the interactive grant flow and persists the resulting credentials.

    Args:
        keys: OAuth client credentials.
        store: Where the granted record is written.
        client: Token endpoint client; built from *keys* when omitted.
        timeout: Seconds to wait for the browser callback.
        host: IPv4 interface the listener binds to, alongside ``::1``. The
            redirect URL always uses ``localhost``.
        open_browser: Try to open the consent URL with ``webbrowser``.
        announce: Called with the consent URL instead of printing it.
    """

    def __init__(
        self,
        keys: KeyMaterial,
        store: CredentialStore,
        *,
        client: GoogleOAuthClient | None = None,
        timeout: float = AUTH_TIMEOUT_SECONDS,
        host: str = "127.0.0.1",
        open_browser: bool = True,
        announce: Callable[[str], None] | None = None,
    ):
        self.keys = keys
        self.store = store
        self.client = client or GoogleOAuthClient(keys)
        self.timeout = timeout
        self.host = host
        self.open_browser = open_browser
        self.announce = announce

    # -- callback handling --

    def create_app(self, session: AuthSession) -> FastAPI:
        """Callback app bound to *session*. Unknown paths get FastAPI's 404."""
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH)
        async def oauth2callback(request: Request) -> HTMLResponse:
            params = request.query_params
            return await self.handle_callback(session, params.get("code"), params.get("error"))

        return app

    async def handle_callback(
        self, session: AuthSession, code: str | None, error: str | None
    ) -> HTMLResponse:
        """Apply one callback request to *session* and render the browser page."""
        if error:
            if not session.deny(error):
                return _already_handled()
            logger.warning("Authorization denied by provider: %s", error)
            return _page(
                "Authentication failed",
                f"Authentication was cancelled or failed: {error}",
                status_code=400,
            )

        if not code:
            if not session.reject_malformed():
                return _already_handled()
            logger.warning("OAuth callback carried neither code nor error")
            return _page(
                "Authentication failed", "No authorization code provided", status_code=400
            )

        if not session.begin_exchange():
            return _already_handled()

        try:
            record = await self._exchange(code, session.redirect_uri)
        except MailwardenError as e:
            session.fail_exchange(e)
            logger.error("OAuth code exchange failed: %s", e)
            return _page("Authentication failed", str(e), status_code=500)
        except Exception as e:
            logger.exception("Unexpected error during OAuth code exchange")
            failure = TokenExchangeFailed(f"Failed to exchange authorization code: {e}")
            failure.__cause__ = e
            session.fail_exchange(failure)
            return _page("Authentication failed", str(failure), status_code=500)

        session.grant(record)
        return _page(
            "Authentication Successful!",
            "You can close this window and return to the terminal.",
        )

    def _previous_refresh_token(self) -> str | None:
        try:
            previous = self.store.load()
        except CorruptCredentials as e:
            logger.warning("Ignoring unreadable stored credentials: %s", e)
            return None
        return previous.refresh_token if previous else None

    async def _exchange(self, code: str, redirect_uri: str) -> CredentialRecord:
        record = await self.client.exchange_code(
            code,
            redirect_uri,
            previous_refresh_token=self._previous_refresh_token(),
        )
        self.store.save(record)
        return record

    # -- listener lifecycle --

    def _bind(self, port: int) -> list[socket.socket]:
        try:
            return bind_loopback(port, self.host)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise PortInUse(port) from e
            raise AuthListenerFault(
                f"Could not start callback listener on port {port}: {e}"
            ) from e

    @staticmethod
    def _on_listener_exit(session: AuthSession, task: asyncio.Task) -> None:
        if session.resolved:
            return
        exc = None if task.cancelled() else task.exception()
        if exc is not None:
            fault = AuthListenerFault(f"Callback listener failed: {exc}")
            fault.__cause__ = exc
        else:
            fault = AuthListenerFault("Callback listener stopped before authentication completed")
        session.fault(fault)

    async def authenticate(self, port: int) -> CredentialRecord:
        """Run the grant flow on *port* and return the stored record.

        Raises:
            PortInUse: *port* could not be bound.
            AuthDenied / AuthMalformedCallback / AuthTimeout / AuthListenerFault:
                the flow ended without a code.
            TokenExchangeFailed: the code could not be exchanged.
            CredentialWriteError: the granted record could not be saved.
        """
        sockets = self._bind(port)
        redirect_uri = f"http://localhost:{port}{CALLBACK_PATH}"
        session = AuthSession(port, redirect_uri, timeout=self.timeout)

        config = uvicorn.Config(
            self.create_app(session),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve(sockets=sockets))
        server_task.add_done_callback(lambda t: self._on_listener_exit(session, t))
        logger.info("OAuth callback listener on %s", redirect_uri)

        try:
            url = self.client.get_auth_url(redirect_uri)
            if self.announce is not None:
                self.announce(url)
            else:
                print_consent_url(url, self.timeout, open_browser=self.open_browser)
            record = await session.wait()
        finally:
            server.should_exit = True
            await asyncio.wait([server_task])
            for s in sockets:
                s.close()

        logger.info("OAuth authentication complete")
        return record


async def authenticate(
    keys: KeyMaterial,
    port: int,
    store: CredentialStore,
    **kwargs,
) -> CredentialRecord:
    """Run the interactive grant flow once. See ``Authenticator``."""
    return await Authenticator(keys, store, **kwargs).authenticate(port)
