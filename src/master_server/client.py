"""Client used by game servers to talk to a master server."""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .utils.errors import (
    AddressMismatchError,
    ErrorRecovery,
    MasterServerError,
    NetworkError,
    NotFoundError,
    PortMismatchError,
    StoreUnavailableError,
    error_from_dict,
)
from .utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 60.0


class MasterServerClient:
    """HTTP client for one game server registration.

    Keeps the id handed out by the master server and replays it on every
    heartbeat, update and deregistration. Error responses are raised as the
    matching MasterServerError subclass.
    """

    def __init__(self, base_url: str, timeout: float = 30.0,
                 headers: Optional[Dict[str, str]] = None,
                 max_retries: int = 3, retry_base_delay: float = 1.0):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = headers or {}
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

        self.registration_id: Optional[str] = None
        self.name: Optional[str] = None
        self.port: Optional[int] = None

        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "MasterServerClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_registered(self) -> bool:
        return self.registration_id is not None

    async def connect(self) -> None:
        """Create the HTTP session"""
        if self._session and not self._session.closed:
            return

        timeout_config = aiohttp.ClientTimeout(total=self.timeout)
        self._session = aiohttp.ClientSession(
            headers=self.headers,
            timeout=timeout_config
        )

    async def close(self) -> None:
        """Close the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def register(self, name: str, port: int) -> Dict[str, Any]:
        """Register (or refresh) this server; returns the stored registration."""
        status, data = await self._request("POST", "/server", json={"name": name, "port": port})

        self.registration_id = data["id"]
        self.name = data.get("name", name)
        self.port = data.get("port", port)

        logger.info("registered_with_master_server", id=self.registration_id,
                    created=status == 201, port=self.port)
        return data

    async def heartbeat(self) -> None:
        """Prove liveness for the current registration."""
        await self._request("GET", self._registration_path())
        logger.debug("heartbeat_sent", id=self.registration_id)

    async def update(self, name: str) -> None:
        """Rename the current registration."""
        await self._request(
            "PUT", self._registration_path(),
            json={"id": self.registration_id, "name": name}
        )
        self.name = name

    async def deregister(self) -> None:
        """Remove the current registration."""
        await self._request("DELETE", self._registration_path())
        logger.info("deregistered_from_master_server", id=self.registration_id)
        self.registration_id = None

    async def list_servers(self) -> List[Dict[str, Any]]:
        """Servers the master server currently considers live."""
        _, data = await self._request("GET", "/server")
        return data or []

    async def run_heartbeat(
        self,
        interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        stop_event: Optional[asyncio.Event] = None
    ) -> None:
        """
        Heartbeat until stop_event is set.

        A lost registration is re-created. Transient failures are retried
        with exponential backoff; a tick that still fails is logged and the
        loop carries on.
        """
        if self.name is None or self.port is None:
            raise ValueError("register() must be called before run_heartbeat()")

        stop_event = stop_event or asyncio.Event()

        while not stop_event.is_set():
            try:
                await ErrorRecovery.exponential_backoff(
                    self._beat,
                    max_retries=self.max_retries,
                    base_delay=self.retry_base_delay,
                    exceptions=(StoreUnavailableError, NetworkError)
                )
            except MasterServerError as e:
                logger.error("heartbeat_failed", error=str(e), error_code=e.code)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _beat(self) -> None:
        try:
            await self.heartbeat()
        except (NotFoundError, PortMismatchError, AddressMismatchError) as e:
            logger.warning("registration_lost_reregistering",
                           id=self.registration_id, reason=e.code)
            await self.register(self.name, self.port)

    def _registration_path(self) -> str:
        if self.registration_id is None or self.port is None:
            raise NotFoundError("Not registered; call register() first")
        return f"/server/{self.registration_id}/{self.port}"

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None
    ) -> Tuple[int, Any]:
        if self._session is None or self._session.closed:
            await self.connect()

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(method, url, json=json) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if response.status >= 400:
                    raise error_from_dict(data, fallback_message=f"HTTP {response.status}")

                return response.status, data

        except aiohttp.ClientError as e:
            raise NetworkError(f"Request to {url} failed: {e}", cause=e) from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request to {url} timed out", cause=e) from e


__all__ = [
    'MasterServerClient',
    'DEFAULT_HEARTBEAT_INTERVAL',
]
