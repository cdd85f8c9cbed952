"""
Minimal async client for a PostgREST-style HTTP endpoint.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx


def _rows(resp: httpx.Response) -> List[Dict[str, Any]]:
    resp.raise_for_status()
    data = resp.json()
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []


class PostgrestClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self._headers = headers
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def select(self, table: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET /rest/v1/<table> with PostgREST filter params; raises on HTTP errors."""
        resp = await self.client.get(f"/rest/v1/{table}", params=params or {}, headers=self._headers)
        return _rows(resp)

    async def invoke(self, function: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """POST /functions/v1/<function>; raises on HTTP errors."""
        resp = await self.client.post(f"/functions/v1/{function}", json=payload or {}, headers=self._headers)
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    async def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """POST /rest/v1/rpc/<function> (a stored SQL function); raises on HTTP errors."""
        resp = await self.client.post(f"/rest/v1/rpc/{function}", json=params or {}, headers=self._headers)
        return _rows(resp)
