"""HTTP client for the server's machine endpoints.

Used for the initial snapshot, as the fallback whenever the push channel
is down, and for operator lifecycle actions (adopt, archive, unarchive).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from lookout.errors import FetchFailure
from lookout.models.machine import Machine, parse_snapshot

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]


class MachineApiClient:
    """Authenticated client for ``/machines``."""

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider or (lambda: None)
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, headers=self._headers(), **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 401:
                raise FetchFailure(f"{method} {path}: not authenticated", status_code=status) from e
            raise FetchFailure(f"{method} {path} failed with HTTP {status}", status_code=status) from e
        except httpx.HTTPError as e:
            raise FetchFailure(f"{method} {path} failed: {e}") from e

    async def fetch_machines(self, include_archived: bool = False) -> List[Machine]:
        """Fetch the full machine list."""
        response = await self._request(
            "GET",
            "/machines",
            params={"includeArchived": "true" if include_archived else "false"},
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise FetchFailure("GET /machines returned invalid JSON") from e

        if not isinstance(payload, list):
            raise FetchFailure(f"GET /machines returned {type(payload).__name__}, expected a list")

        machines = parse_snapshot(payload)
        logger.debug(f"Fetched {len(machines)} machines (includeArchived={include_archived})")
        return machines

    async def adopt_machine(
        self,
        machine_id: str,
        display_name: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> dict:
        """Adopt a pending machine into active monitoring."""
        body = dict(options or {})
        if display_name:
            body["displayName"] = display_name
        response = await self._request("POST", f"/machines/{machine_id}/adopt", json=body)
        logger.info(f"Adopted machine {machine_id}")
        return response.json()

    async def archive_machine(self, machine_id: str) -> dict:
        response = await self._request("PATCH", f"/machines/{machine_id}/archive")
        logger.info(f"Archived machine {machine_id}")
        return response.json()

    async def unarchive_machine(self, machine_id: str) -> dict:
        response = await self._request("PATCH", f"/machines/{machine_id}/unarchive")
        logger.info(f"Unarchived machine {machine_id}")
        return response.json()

    async def update_display_name(self, machine_id: str, display_name: Optional[str]) -> dict:
        response = await self._request(
            "PATCH",
            f"/machines/{machine_id}/display-name",
            json={"displayName": display_name},
        )
        return response.json()

    async def aclose(self):
        await self.client.aclose()
