"""
REST client for the remote data service: PostgREST-style tables under /rest/v1.
"""

import logging
from typing import Any, Optional

import httpx

from inbox_sync.errors import TransientRemoteFailure

DEFAULT_BASE_URL = "http://localhost:54321"

logger = logging.getLogger("inbox_sync.transport.http")


class HttpClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._api_key = api_key
        self._client = httpx.AsyncClient(
            base_url=f"{self._base_url}/rest/v1",
            headers={"User-Agent": "inbox-sync/0.1.0", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def set_token(self, token: str) -> None:
        self._token = token

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @staticmethod
    def _unwrap(json_data: Any) -> Any:
        """Unwrap a { "status": ..., "data": <rows> } response envelope."""
        if isinstance(json_data, dict) and "status" in json_data and "data" in json_data:
            return json_data["data"]
        return json_data

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, params=params, json=body, headers=self._headers(prefer))
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise TransientRemoteFailure(f"{method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise TransientRemoteFailure(f"HTTP {resp.status_code}: {resp.text[:200]}", status=resp.status_code)
        if not resp.content:
            return None
        return self._unwrap(resp.json())

    async def select(self, table: str, params: Optional[dict[str, str]] = None) -> list[dict[str, Any]]:
        rows = await self._request("GET", f"/{table}", params={"select": "*", **(params or {})})
        return rows if isinstance(rows, list) else []

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it with its server-assigned fields."""
        result = await self._request("POST", f"/{table}", body=[row], prefer="return=representation")
        if isinstance(result, list) and result:
            return result[0]
        if isinstance(result, dict):
            return result
        raise TransientRemoteFailure(f"Insert into {table} returned no row")

    async def upsert(self, table: str, row: dict[str, Any], on_conflict: str) -> Any:
        return await self._request(
            "POST", f"/{table}",
            params={"on_conflict": on_conflict},
            body=[row],
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def close(self) -> None:
        await self._client.aclose()
