"""
Dead Man's Snitch client - Monitor service RPC interface.

MonitorClient is the interface the reconciler depends on;
DeadMansSnitchClient implements it against the Dead Man's Snitch REST API.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from models import Snitch

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.deadmanssnitch.com/v1"


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class DMSClientError(Exception):
    """Raised when a call to the monitor service fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class MonitorClient(ABC):
    """Interface to the external heartbeat monitor."""

    @abstractmethod
    async def create(
        self,
        name: str,
        tags: List[str],
        interval: str = "15_minute",
        alert_type: str = "basic",
    ) -> Snitch:
        """Create a snitch and return it."""
        pass

    @abstractmethod
    async def delete(self, token: str) -> bool:
        """Delete a snitch by token. Returns False if it was already gone."""
        pass

    @abstractmethod
    async def find_snitches_by_name(self, name: str) -> List[Snitch]:
        """Return every snitch with exactly this name (empty when none)."""
        pass

    @abstractmethod
    async def check_in(self, snitch: Snitch) -> None:
        """Check in against the snitch's check-in URL."""
        pass


class DeadMansSnitchClient(MonitorClient):
    """
    Monitor client for https://deadmanssnitch.com.

    Authenticates with HTTP basic auth, the API key being the user name.
    Each call opens its own session and is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        api_key: str,
        api_base_url: str = DEFAULT_API_URL,
        timeout: int = 30,
    ):
        self.api_key = api_key
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout = timeout

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            auth=aiohttp.BasicAuth(self.api_key, ""),
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"Accept": "application/json"},
        )

    @staticmethod
    def _parse_snitch(data: Dict[str, Any]) -> Snitch:
        try:
            return Snitch.model_validate(data)
        except ValidationError as e:
            raise DMSClientError(f"Unexpected snitch payload: {e}") from e

    async def create(
        self,
        name: str,
        tags: List[str],
        interval: str = "15_minute",
        alert_type: str = "basic",
    ) -> Snitch:
        payload = {
            "name": name,
            "interval": interval,
            "alert_type": alert_type,
            "tags": [t for t in tags if t],
        }
        url = f"{self.api_base_url}/snitches"

        try:
            async with self._session() as session:
                async with session.post(url, json=payload) as response:
                    if response.status not in (200, 201):
                        raise DMSClientError(
                            f"Failed to create snitch {name}: {response.status} - "
                            f"{await response.text()}",
                            status=response.status,
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DMSClientError(
                f"Failed to create snitch {name}: {_reason(e)}"
            ) from e

        snitch = self._parse_snitch(data)
        logger.info(f"Created snitch {snitch.name} ({snitch.token})")
        return snitch

    async def delete(self, token: str) -> bool:
        url = f"{self.api_base_url}/snitches/{token}"

        try:
            async with self._session() as session:
                async with session.delete(url) as response:
                    if response.status in (200, 204):
                        logger.info(f"Deleted snitch {token}")
                        return True
                    if response.status == 404:
                        logger.info(f"Snitch {token} already deleted")
                        return False
                    raise DMSClientError(
                        f"Failed to delete snitch {token}: {response.status} - "
                        f"{await response.text()}",
                        status=response.status,
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DMSClientError(
                f"Failed to delete snitch {token}: {_reason(e)}"
            ) from e

    async def find_snitches_by_name(self, name: str) -> List[Snitch]:
        url = f"{self.api_base_url}/snitches"

        try:
            async with self._session() as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        raise DMSClientError(
                            f"Failed to list snitches: {response.status} - "
                            f"{await response.text()}",
                            status=response.status,
                        )
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DMSClientError(f"Failed to list snitches: {_reason(e)}") from e

        return [
            self._parse_snitch(item)
            for item in data or []
            if item.get("name") == name
        ]

    async def check_in(self, snitch: Snitch) -> None:
        if not snitch.check_in_url:
            raise DMSClientError(f"Snitch {snitch.token} has no check-in URL")

        try:
            async with self._session() as session:
                async with session.get(snitch.check_in_url) as response:
                    if response.status >= 400:
                        raise DMSClientError(
                            f"Check-in for {snitch.check_in_url} failed: "
                            f"{response.status}",
                            status=response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DMSClientError(
                f"Check-in for {snitch.check_in_url} failed: {_reason(e)}"
            ) from e

        logger.info(f"Checked in snitch {snitch.name or snitch.token}")
