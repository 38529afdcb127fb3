"""
Remote API client: login call, optional token renewal, and authenticated requests.
Authenticated requests carry "Authorization: Bearer <token>" from the session controller;
a 401 ends the session the same way local expiry does.
"""
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from admin_web.config import API_BASE_URL, API_LOGIN_PATH, API_REFRESH_PATH, API_TIMEOUT
from admin_web.errors import AuthErrorKind, LoginError, NotAuthenticatedError, RefreshError

if TYPE_CHECKING:
    from admin_web.session import SessionController

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    email: str
    password: str


@dataclass
class LoginResult:
    """Login (or renewal) response. expires_at is authoritative; expires_in is informational."""
    access_token: str
    expires_at: str
    expires_in: int | None = None


def error_detail(r: httpx.Response) -> str:
    """Server-provided error message if the body is JSON, else the raw text."""
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            err = r.json()
        except ValueError:
            err = {}
        if isinstance(err, dict):
            detail = err.get("message") or err.get("detail") or err.get("error")
            if detail:
                return str(detail)
    return r.text or f"HTTP {r.status_code}"


def parse_login_result(data: Any) -> LoginResult:
    if not isinstance(data, dict) or not data.get("access_token") or not data.get("expires_at"):
        raise ValueError("response must include access_token and expires_at")
    expires_in = data.get("expires_in")
    return LoginResult(
        access_token=str(data["access_token"]),
        expires_at=str(data["expires_at"]),
        expires_in=int(expires_in) if expires_in is not None else None,
    )


class ApiClient:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        *,
        login_path: str = API_LOGIN_PATH,
        refresh_path: str = API_REFRESH_PATH,
        timeout: float = API_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.login_path = login_path
        self.refresh_path = refresh_path
        self.timeout = timeout
        # Tests swap in httpx.MockTransport here
        self.transport = transport
        self.session: "SessionController | None" = None

    @property
    def supports_refresh(self) -> bool:
        return bool(self.refresh_path)

    def bind(self, session: "SessionController") -> None:
        """Attach the controller that supplies tokens for authenticated requests."""
        self.session = session

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    async def login(self, credentials: Credentials) -> LoginResult:
        """POST {email, password}. Raises LoginError on any failure; never logs the password."""
        try:
            async with self._client() as client:
                r = await client.post(
                    self.login_path,
                    json={"email": credentials.email, "password": credentials.password},
                    headers={"Accept": "application/json"},
                )
        except httpx.RequestError as e:
            logger.warning("login request failed: %s", e)
            kind = AuthErrorKind.NETWORK_ERROR if isinstance(e, httpx.TransportError) else AuthErrorKind.UNKNOWN
            raise LoginError(f"Login request failed: {e}", kind) from e

        if r.status_code != 200:
            kind = AuthErrorKind.UNAUTHORIZED if r.status_code in (400, 401, 403) else AuthErrorKind.UNKNOWN
            raise LoginError(error_detail(r), kind, status_code=r.status_code)
        try:
            return parse_login_result(r.json())
        except ValueError as e:
            raise LoginError(f"Malformed login response: {e}", status_code=r.status_code) from e

    async def refresh(self, token: str) -> LoginResult | None:
        """Exchange the current token for a new one. Raises RefreshError on failure."""
        if not self.refresh_path:
            return None
        try:
            async with self._client() as client:
                r = await client.post(
                    self.refresh_path,
                    headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
                )
        except httpx.RequestError as e:
            raise RefreshError(f"Renewal request failed: {e}") from e
        if r.status_code != 200:
            raise RefreshError(f"Renewal rejected: {error_detail(r)}")
        try:
            return parse_login_result(r.json())
        except ValueError as e:
            raise RefreshError(f"Malformed renewal response: {e}") from e

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Authenticated call. No session or a 401 -> session expired (redirect to login) and
        NotAuthenticatedError. Other HTTP errors raise httpx.HTTPStatusError.
        """
        if self.session is None:
            raise RuntimeError("ApiClient is not bound to a session controller")
        token = await self.session.get_auth_token()
        if token is None:
            self.session.expire("no_session")
            raise NotAuthenticatedError()

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        async with self._client() as client:
            r = await client.request(method, path, headers=headers, **kwargs)

        if r.status_code == 401:
            logger.info("%s %s: API returned 401, ending session", method, path)
            self.session.expire("unauthorized")
            raise NotAuthenticatedError("Session rejected by the API")
        if r.is_error:
            logger.warning("%s %s: API returned %s", method, path, r.status_code)
        r.raise_for_status()
        self.session.record_activity()
        return r

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)
