"""
Session management for the circulation API.

Obtains an access token/cookie pair through the resilient fetch client,
caches it for the rest of the run and re-authenticates exactly once when a
request is rejected with 401/403.
"""

from typing import Any, Optional

import httpx
import structlog

from circulation.errors import AuthError
from circulation.fetch_client import FetchOptions, FetchResult, ResilientFetchClient
from circulation.models import LoginCredentials, SessionData, SessionState

logger = structlog.get_logger(__name__)

AUTH_REJECTED_STATUSES = (401, 403)


def extract_cookies(response: httpx.Response) -> str:
    """
    Build a Cookie header value from the Set-Cookie headers of a response.

    Args:
        response: Login response

    Returns:
        ``name=value`` pairs joined by ``; `` (empty string when none)
    """
    pairs = []
    for raw in response.headers.get_list("set-cookie"):
        pair = raw.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


class SessionManager:
    """
    Per-run authentication state machine.

    UNAUTHENTICATED -> AUTHENTICATING -> AUTHENTICATED -> EXPIRED -> AUTHENTICATING ...
    """

    def __init__(
        self,
        fetch_client: ResilientFetchClient,
        base_url: str,
        credentials: LoginCredentials,
        login_options: Optional[FetchOptions] = None,
    ):
        """
        Initialize session manager.

        Args:
            fetch_client: Resilient client used for every call
            base_url: Circulation API root, e.g. https://lib.example.ac.kr/pyxis-api
            credentials: Library account credentials
            login_options: Resilience settings for the login call
        """
        self.fetch_client = fetch_client
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.login_options = login_options or FetchOptions(retries=1)
        self.state = SessionState.UNAUTHENTICATED
        self._session: Optional[SessionData] = None
        self.login_count = 0
        self.logger = logger.bind(component="session_manager")

    @property
    def is_authenticated(self) -> bool:
        return self.state == SessionState.AUTHENTICATED and self._session is not None

    async def get_session(self) -> SessionData:
        """
        Return the cached session, logging in first when needed.

        Returns:
            SessionData with access token and cookies

        Raises:
            AuthError: Credentials were rejected
            TerminalFetchFailure: The login endpoint was unreachable
        """
        if self.is_authenticated:
            return self._session
        return await self._login()

    def expire(self) -> None:
        """Mark the cached session as no longer valid."""
        if self.state == SessionState.AUTHENTICATED:
            self.logger.info("Session expired")
        self.state = SessionState.EXPIRED
        self._session = None

    async def authorized_request(
        self,
        url: str,
        method: str = "GET",
        json: Optional[Any] = None,
        options: Optional[FetchOptions] = None,
    ) -> FetchResult:
        """
        Send an authenticated request, re-authenticating once on 401/403.

        Returns:
            FetchResult of the (possibly repeated) request

        Raises:
            AuthError: The request was still rejected after re-authentication
        """
        session = await self.get_session()
        result = await self.fetch_client.request(
            url, method=method, headers=session.auth_headers(), json=json, options=options
        )
        if result.status_code not in AUTH_REJECTED_STATUSES:
            return result

        self.logger.warning("Request rejected, re-authenticating", url=url, status_code=result.status_code)
        self.expire()
        session = await self.get_session()
        result = await self.fetch_client.request(
            url, method=method, headers=session.auth_headers(), json=json, options=options
        )
        if result.status_code in AUTH_REJECTED_STATUSES:
            self.expire()
            raise AuthError(
                f"Request to {url} rejected after re-authentication",
                status_code=result.status_code,
            )
        return result

    async def _login(self) -> SessionData:
        """Call the login endpoint and cache the resulting session."""
        self.state = SessionState.AUTHENTICATING
        self.login_count += 1
        self.logger.info("Authenticating with circulation API", login_id=self.credentials.login_id)

        result = await self.fetch_client.request(
            f"{self.base_url}/api/login",
            method="POST",
            headers={"Content-Type": "application/json"},
            json=self.credentials.to_payload(),
            options=self.login_options,
        )

        if not result.ok:
            self.state = SessionState.UNAUTHENTICATED
            if result.failure.status_code is not None and 400 <= result.failure.status_code < 500:
                raise AuthError(
                    f"Login failed with status {result.failure.status_code}",
                    status_code=result.failure.status_code,
                )
            result.raise_for_failure()

        try:
            body = result.response.json()
        except ValueError as e:
            self.state = SessionState.UNAUTHENTICATED
            raise AuthError(f"Login response is not JSON: {e}") from e

        data = body.get("data") or {}
        if not body.get("success") or not data.get("accessToken"):
            self.state = SessionState.UNAUTHENTICATED
            raise AuthError(
                f"Login failed: {body.get('message') or 'no access token'}",
                status_code=401,
            )

        self._session = SessionData(
            access_token=data["accessToken"],
            cookies=extract_cookies(result.response),
            user_name=data.get("name"),
        )
        self.state = SessionState.AUTHENTICATED
        self.logger.info("Login successful", user_name=self._session.user_name)
        return self._session
