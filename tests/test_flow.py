# Tests for auth/flow.py — session state machine, callback app, listener lifecycle.
# Created: 2026-10-14

import asyncio
import errno
import socket
import urllib.parse
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import uvicorn

from mailwarden.auth.errors import (
    AuthDenied,
    AuthListenerFault,
    AuthMalformedCallback,
    AuthTimeout,
    PortInUse,
    TokenExchangeFailed,
)
from mailwarden.auth.flow import CALLBACK_PATH, Authenticator, AuthSession, SessionState
from mailwarden.auth.keys import KeyMaterial
from mailwarden.auth.oauth import GoogleOAuthClient
from mailwarden.auth.ports import is_port_available
from mailwarden.auth.token_store import CredentialRecord, CredentialStore

KEYS = KeyMaterial(client_id="cid.apps.googleusercontent.com", client_secret="csecret")
GRANT = {"access_token": "A", "refresh_token": "R", "expires_in": 3600, "token_type": "Bearer"}


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TokenEndpoint:
    """Fake token endpoint behind httpx.MockTransport."""

    def __init__(self, payload=None, status_code=200):
        self.payload = GRANT if payload is None else payload
        self.status_code = status_code
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(dict(urllib.parse.parse_qsl(request.content.decode())))
        return httpx.Response(self.status_code, json=self.payload)


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "credentials.json")


@pytest.fixture
def endpoint():
    return TokenEndpoint()


@pytest.fixture
def authenticator(store, endpoint):
    client = GoogleOAuthClient(KEYS, transport=httpx.MockTransport(endpoint))
    return Authenticator(KEYS, store, client=client, open_browser=False)


@pytest.fixture
def session():
    return AuthSession(3000, f"http://localhost:3000{CALLBACK_PATH}", timeout=60)


@pytest.fixture
def callback(authenticator, session):
    """GET the callback app in-process; returns the response."""

    async def _get(path=CALLBACK_PATH, **params):
        app = authenticator.create_app(session)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost:3000") as c:
            return await c.get(path, params=params)

    return _get


# ---------------------------------------------------------------------------
# AuthSession
# ---------------------------------------------------------------------------


class TestAuthSession:
    def test_initial_state(self, session):
        assert session.state is SessionState.AWAITING_CALLBACK
        assert not session.resolved
        assert session.deadline > datetime.now(UTC) + timedelta(seconds=55)

    def test_terminal_transition_happens_once(self, session):
        assert session.deny("access_denied")
        assert not session.deny("again")
        assert not session.reject_malformed()
        assert not session.expire()
        assert not session.begin_exchange()
        assert session.state is SessionState.DENIED
        assert session.error.reason == "access_denied"

    def test_deadline_after_grant_is_noop(self, session):
        record = CredentialRecord(access_token="A")
        assert session.begin_exchange()
        assert not session.expire()
        assert session.grant(record)
        assert not session.expire()
        assert session.state is SessionState.GRANTED
        assert session.record is record

    def test_grant_requires_exchange(self, session):
        assert not session.grant(CredentialRecord(access_token="A"))
        assert session.state is SessionState.AWAITING_CALLBACK

    def test_fault_only_while_live(self, session):
        session.expire()
        assert not session.fault(TokenExchangeFailed("boom"))
        assert session.state is SessionState.TIMED_OUT

    async def test_wait_times_out(self):
        session = AuthSession(3000, "http://localhost:3000/oauth2callback", timeout=0.05)
        with pytest.raises(AuthTimeout):
            await session.wait()
        assert session.state is SessionState.TIMED_OUT
        assert not session.begin_exchange()

    async def test_wait_returns_granted_record(self, session):
        record = CredentialRecord(access_token="A")
        waiter = asyncio.create_task(session.wait())
        await asyncio.sleep(0)
        session.begin_exchange()
        await asyncio.sleep(0)
        assert not waiter.done()
        session.grant(record)
        assert await waiter is record

    async def test_fault_during_exchange_resolves_wait(self, session):
        waiter = asyncio.create_task(session.wait())
        await asyncio.sleep(0)
        assert session.begin_exchange()
        assert session.fault(AuthListenerFault("listener gone"))
        with pytest.raises(AuthListenerFault, match="listener gone"):
            await asyncio.wait_for(waiter, timeout=1)
        assert session.state is SessionState.LISTENER_FAULT
        assert not session.grant(CredentialRecord(access_token="A"))

    async def test_wait_uses_remaining_time_until_deadline(self):
        session = AuthSession(3000, "http://localhost:3000/oauth2callback", timeout=60)
        session.deadline = datetime.now(UTC) - timedelta(seconds=1)
        assert session.remaining() == 0
        with pytest.raises(AuthTimeout):
            await asyncio.wait_for(session.wait(), timeout=1)

    async def test_wait_raises_denial(self, session):
        waiter = asyncio.create_task(session.wait())
        await asyncio.sleep(0)
        session.deny("access_denied")
        with pytest.raises(AuthDenied, match="access_denied"):
            await waiter


# ---------------------------------------------------------------------------
# Callback handling
# ---------------------------------------------------------------------------


class TestCallback:
    async def test_grant(self, callback, session, store, endpoint):
        before = datetime.now(UTC)
        resp = await callback(code="auth-code")

        assert resp.status_code == 200
        assert "Authentication Successful" in resp.text
        assert session.state is SessionState.GRANTED
        assert endpoint.calls[0]["code"] == "auth-code"
        assert endpoint.calls[0]["redirect_uri"] == session.redirect_uri

        saved = store.load()
        assert saved == session.record
        assert saved.access_token == "A"
        assert saved.refresh_token == "R"
        assert before + timedelta(seconds=3590) <= saved.expires_at
        assert saved.expires_at <= datetime.now(UTC) + timedelta(seconds=3600)

    async def test_denied_leaves_existing_file(self, callback, session, store, endpoint):
        store.save(CredentialRecord(access_token="old", refresh_token="old-r"))
        before = store.path.read_text()

        resp = await callback(error="access_denied")

        assert resp.status_code == 400
        assert "access_denied" in resp.text
        assert session.state is SessionState.DENIED
        assert isinstance(session.error, AuthDenied)
        assert store.path.read_text() == before
        assert endpoint.calls == []

    async def test_error_is_html_escaped(self, callback):
        resp = await callback(error="<script>x</script>")
        assert "<script>" not in resp.text

    async def test_malformed(self, callback, session, store):
        resp = await callback()
        assert resp.status_code == 400
        assert session.state is SessionState.MALFORMED
        assert isinstance(session.error, AuthMalformedCallback)
        assert not store.exists()

    async def test_other_paths_are_404(self, callback, session):
        resp = await callback("/favicon.ico")
        assert resp.status_code == 404
        resp = await callback("/", code="sneaky")
        assert resp.status_code == 404
        assert session.state is SessionState.AWAITING_CALLBACK

    async def test_duplicate_callback_is_ignored(self, callback, session, endpoint):
        first = await callback(code="auth-code")
        second = await callback(code="auth-code")
        third = await callback(error="access_denied")

        assert first.status_code == 200
        assert second.status_code == 409
        assert third.status_code == 409
        assert session.state is SessionState.GRANTED
        assert len(endpoint.calls) == 1

    async def test_callback_after_timeout_is_ignored(self, callback, session, store, endpoint):
        session.expire()
        resp = await callback(code="late")
        assert resp.status_code == 409
        assert session.state is SessionState.TIMED_OUT
        assert isinstance(session.error, AuthTimeout)
        assert endpoint.calls == []
        assert not store.exists()

    async def test_exchange_failure(self, callback, session, store, endpoint):
        endpoint.payload = {"error": "invalid_grant"}
        endpoint.status_code = 400
        store.save(CredentialRecord(access_token="old"))
        before = store.path.read_text()

        resp = await callback(code="bad")

        assert resp.status_code == 500
        assert session.state is SessionState.EXCHANGE_FAILED
        assert isinstance(session.error, TokenExchangeFailed)
        assert store.path.read_text() == before

    async def test_grant_replaces_stale_refresh_token(self, callback, store):
        store.save(CredentialRecord(access_token="old", refresh_token="stale"))
        await callback(code="c")
        assert store.load().refresh_token == "R"

    async def test_grant_without_refresh_token_keeps_previous(self, callback, store, endpoint):
        endpoint.payload = {"access_token": "A", "expires_in": 3600}
        store.save(CredentialRecord(access_token="old", refresh_token="keep-me", scope="old"))

        await callback(code="c")

        saved = store.load()
        assert saved.access_token == "A"
        assert saved.refresh_token == "keep-me"
        assert saved.scope != "old"

    async def test_corrupt_previous_file_is_overwritten(self, callback, store):
        store.path.write_text("{garbage")
        resp = await callback(code="c")
        assert resp.status_code == 200
        assert store.load().access_token == "A"


# ---------------------------------------------------------------------------
# authenticate() — real listener on a local port
# ---------------------------------------------------------------------------


class TestAuthenticate:
    async def test_end_to_end_grant(self, store, endpoint):
        port = _free_port()
        urls = []
        announced = asyncio.Event()

        def announce(url):
            urls.append(url)
            announced.set()

        authenticator = Authenticator(
            KEYS,
            store,
            client=GoogleOAuthClient(KEYS, transport=httpx.MockTransport(endpoint)),
            announce=announce,
            timeout=10,
        )
        task = asyncio.create_task(authenticator.authenticate(port))
        await asyncio.wait_for(announced.wait(), timeout=5)

        params = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(urls[0]).query))
        assert params["redirect_uri"] == f"http://localhost:{port}{CALLBACK_PATH}"

        async with httpx.AsyncClient() as http:
            resp = await http.get(
                f"http://127.0.0.1:{port}{CALLBACK_PATH}", params={"code": "auth-code"}
            )
        assert resp.status_code == 200

        record = await asyncio.wait_for(task, timeout=10)
        assert record.access_token == "A"
        assert record.refresh_token == "R"
        assert store.load() == record
        assert is_port_available(port)

    async def test_timeout_releases_listener(self, store):
        port = _free_port()
        authenticator = Authenticator(KEYS, store, announce=lambda url: None, timeout=0.2)

        with pytest.raises(AuthTimeout):
            await authenticator.authenticate(port)

        assert is_port_available(port)
        assert not store.exists()

    async def test_denied_over_http(self, store):
        port = _free_port()
        announced = asyncio.Event()
        authenticator = Authenticator(
            KEYS, store, announce=lambda url: announced.set(), timeout=10
        )
        task = asyncio.create_task(authenticator.authenticate(port))
        await asyncio.wait_for(announced.wait(), timeout=5)

        async with httpx.AsyncClient() as http:
            resp = await http.get(
                f"http://127.0.0.1:{port}{CALLBACK_PATH}", params={"error": "access_denied"}
            )
        assert resp.status_code == 400

        with pytest.raises(AuthDenied):
            await asyncio.wait_for(task, timeout=10)
        assert is_port_available(port)

    async def test_port_in_use(self, store):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]

            authenticator = Authenticator(KEYS, store, announce=lambda url: None)
            with pytest.raises(PortInUse, match=str(port)):
                await authenticator.authenticate(port)

    async def test_listener_crash_is_listener_fault(self, store):
        port = _free_port()
        authenticator = Authenticator(KEYS, store, announce=lambda url: None, timeout=10)
        crash = AsyncMock(side_effect=RuntimeError("listener crashed"))

        with patch.object(uvicorn.Server, "serve", crash):
            with pytest.raises(AuthListenerFault, match="listener crashed") as exc_info:
                await asyncio.wait_for(authenticator.authenticate(port), timeout=3)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert is_port_available(port)
        assert not store.exists()

    async def test_listener_stopping_early_is_listener_fault(self, store):
        port = _free_port()
        authenticator = Authenticator(KEYS, store, announce=lambda url: None, timeout=10)

        with patch.object(uvicorn.Server, "serve", AsyncMock(return_value=None)):
            with pytest.raises(AuthListenerFault, match="stopped before"):
                await asyncio.wait_for(authenticator.authenticate(port), timeout=3)

        assert is_port_available(port)

    async def test_bind_error_other_than_in_use_is_listener_fault(self, store):
        fake = MagicMock()
        fake.bind.side_effect = OSError(errno.EACCES, "Permission denied")
        authenticator = Authenticator(KEYS, store, announce=lambda url: None)

        with patch("mailwarden.auth.ports.socket.socket", return_value=fake):
            with pytest.raises(AuthListenerFault, match="Could not start callback listener"):
                await authenticator.authenticate(3000)

        fake.close.assert_called_once()
        assert not store.exists()

    async def test_listener_answers_on_ipv6_loopback(self, store, endpoint):
        if not socket.has_ipv6:
            pytest.skip("IPv6 not supported")
        try:
            with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as probe:
                probe.bind(("::1", 0))
        except OSError as e:
            pytest.skip(f"IPv6 loopback unavailable: {e}")

        port = _free_port()
        announced = asyncio.Event()
        authenticator = Authenticator(
            KEYS,
            store,
            client=GoogleOAuthClient(KEYS, transport=httpx.MockTransport(endpoint)),
            announce=lambda url: announced.set(),
            timeout=10,
        )
        task = asyncio.create_task(authenticator.authenticate(port))
        await asyncio.wait_for(announced.wait(), timeout=5)

        async with httpx.AsyncClient() as http:
            resp = await http.get(
                f"http://[::1]:{port}{CALLBACK_PATH}", params={"code": "auth-code"}
            )
        assert resp.status_code == 200

        record = await asyncio.wait_for(task, timeout=10)
        assert record.access_token == "A"
        assert is_port_available(port)
