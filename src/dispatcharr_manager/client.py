import json
import logging
from typing import Any, Dict, Optional, Protocol

import aiohttp

from dispatcharr_manager.domain.connection import ConnectionCredentials
from dispatcharr_manager.errors import AuthenticationError, RemoteRequestError

logger = logging.getLogger(__name__)


class RemoteClient(Protocol):
    """
    Capability consumed by the executors.
    """

    async def authenticate(self) -> str:
        ...

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        ...

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        ...

    async def put(self, endpoint: str, payload: Any = None) -> Any:
        ...

    async def patch(self, endpoint: str, payload: Any = None) -> Any:
        ...

    async def delete(self, endpoint: str) -> Any:
        ...

    async def download(self, url: str) -> bytes:
        ...

    async def close(self) -> None:
        ...


class DispatcharrClient:
    """
    JWT-authenticated client for a Dispatcharr instance, built on aiohttp.

    Authenticates lazily on the first call. A 401 response triggers exactly one
    re-authentication and retry of the same request.
    """
    TOKEN_ENDPOINT = "/api/accounts/token/"

    def __init__(self, connection: ConnectionCredentials, timeout: float = 120.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.connection = connection
        self.base_url = connection.url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._token: Optional[str] = None

    async def __aenter__(self) -> "DispatcharrClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def authenticated(self) -> bool:
        return self._token is not None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def authenticate(self) -> str:
        session = self._ensure_session()
        async with session.post(
            self._url(self.TOKEN_ENDPOINT),
            json={"username": self.connection.username, "password": self.connection.password},
        ) as response:
            data = _decode(await response.text())
            if response.status >= 400:
                detail = data.get("detail") or data.get("message") if isinstance(data, dict) else data
                logger.error("Authentication against %s as %s failed with status %s",
                             self.base_url, self.connection.username, response.status)
                raise AuthenticationError(
                    f"Authentication failed ({response.status}): {detail or response.reason}",
                    status=response.status,
                )

        token = data.get("access") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError("No access token received from server")
        self._token = token
        return token

    async def _send(self, method: str, endpoint: str, payload: Any = None,
                    params: Optional[Dict[str, Any]] = None, raw: bool = False):
        session = self._ensure_session()
        headers = {"Authorization": f"Bearer {self._token}"}
        async with session.request(method, self._url(endpoint), json=payload,
                                   params=params, headers=headers) as response:
            if raw:
                body = await response.read()
            else:
                body = _decode(await response.text())
            return response.status, body

    async def request(self, method: str, endpoint: str, payload: Any = None,
                      params: Optional[Dict[str, Any]] = None, raw: bool = False) -> Any:
        if not self.authenticated:
            await self.authenticate()

        status, body = await self._send(method, endpoint, payload, params, raw)
        if status == 401:
            logger.info("%s %s returned 401, re-authenticating", method, endpoint)
            self._token = None
            await self.authenticate()
            status, body = await self._send(method, endpoint, payload, params, raw)

        if status >= 400:
            logger.warning("%s %s failed with status %s", method, endpoint, status)
            raise RemoteRequestError(method, endpoint, status, body)
        return body

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("POST", endpoint, payload)

    async def put(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("PUT", endpoint, payload)

    async def patch(self, endpoint: str, payload: Any = None) -> Any:
        return await self.request("PATCH", endpoint, payload)

    async def delete(self, endpoint: str) -> Any:
        return await self.request("DELETE", endpoint)

    async def download(self, url: str) -> bytes:
        return await self.request("GET", url, raw=True)

    async def test_connection(self) -> Dict[str, Any]:
        try:
            await self.authenticate()
            await self.get("/api/accounts/users/me/")
        except (AuthenticationError, RemoteRequestError, aiohttp.ClientError) as e:
            return {"success": False, "message": str(e)}
        return {"success": True, "message": "Connection successful"}


def _decode(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text
