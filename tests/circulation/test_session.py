"""
Test cases for the circulation session manager.
"""

import httpx
import pytest

from circulation.errors import AuthError, TerminalFetchFailure
from circulation.fetch_client import FetchOptions, ResilientFetchClient
from circulation.models import LoginCredentials, SessionState
from circulation.session import SessionManager, extract_cookies
from tests.conftest import BASE_URL, PyxisStub, no_sleep


def make_session_manager(stub: PyxisStub) -> SessionManager:
    fetch_client = ResilientFetchClient(
        client=stub.client(),
        default_options=FetchOptions(retries=0, retry_backoff_ms=0),
        sleep=no_sleep,
    )
    return SessionManager(
        fetch_client,
        BASE_URL,
        LoginCredentials(login_id="reader", password="secret"),
        login_options=FetchOptions(retries=1, retry_backoff_ms=0),
    )


class TestExtractCookies:
    """Test cases for cookie extraction."""

    def test_joins_name_value_pairs(self):
        response = httpx.Response(200, headers=[
            ("set-cookie", "JSESSIONID=abc; Path=/; HttpOnly"),
            ("set-cookie", "ROUTE=r1; Secure"),
        ])
        assert extract_cookies(response) == "JSESSIONID=abc; ROUTE=r1"

    def test_no_cookies(self):
        assert extract_cookies(httpx.Response(200)) == ""


class TestSessionManager:
    """Test cases for login, caching and re-authentication."""

    @pytest.mark.asyncio
    async def test_login_caches_session(self):
        stub = PyxisStub()
        manager = make_session_manager(stub)

        first = await manager.get_session()
        second = await manager.get_session()

        assert first is second
        assert manager.state == SessionState.AUTHENTICATED
        assert stub.count("/api/login") == 1
        assert first.access_token == "token-1"
        assert first.cookies == "JSESSIONID=abc123"

        login = stub.requests[0]
        assert login.method == "POST"
        assert b'"loginId"' in login.content

    @pytest.mark.asyncio
    async def test_auth_headers_sent(self):
        stub = PyxisStub()
        manager = make_session_manager(stub)

        await manager.authorized_request(f"{BASE_URL}/8/api/charges?max=20&offset=0")

        request = stub.requests[-1]
        assert request.headers["pyxis-auth-token"] == "token-1"
        assert request.headers["cookie"] == "JSESSIONID=abc123"

    @pytest.mark.asyncio
    async def test_reauthenticates_once_on_401(self):
        stub = PyxisStub()
        stub.charges_statuses = [401]
        manager = make_session_manager(stub)

        result = await manager.authorized_request(f"{BASE_URL}/8/api/charges?max=20&offset=0")

        assert result.ok
        assert stub.count("/api/login") == 2
        assert stub.requests[-1].headers["pyxis-auth-token"] == "token-2"

    @pytest.mark.asyncio
    async def test_second_rejection_raises_auth_error(self):
        stub = PyxisStub()
        stub.charges_statuses = [403, 403]
        manager = make_session_manager(stub)

        with pytest.raises(AuthError) as exc_info:
            await manager.authorized_request(f"{BASE_URL}/8/api/charges?max=20&offset=0")

        assert exc_info.value.status_code == 403
        assert stub.count("/api/login") == 2
        assert manager.state == SessionState.EXPIRED

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        stub = PyxisStub()
        stub.login_statuses = [401]
        manager = make_session_manager(stub)

        with pytest.raises(AuthError):
            await manager.get_session()
        assert manager.state == SessionState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope(self):
        stub = PyxisStub()
        stub.login_body = {"success": False, "code": "error.login", "message": "Invalid password"}
        manager = make_session_manager(stub)

        with pytest.raises(AuthError, match="Invalid password"):
            await manager.get_session()

    @pytest.mark.asyncio
    async def test_unreachable_login_is_a_fetch_failure(self):
        stub = PyxisStub()
        stub.login_statuses = [503, 503]
        manager = make_session_manager(stub)

        with pytest.raises(TerminalFetchFailure) as exc_info:
            await manager.get_session()

        assert exc_info.value.status_code == 503
        assert stub.count("/api/login") == 2
