"""
Minimal async HTTP client for a PostgREST-style data API.

Three kinds of call reach the remote side:
- rpc(): stored procedures under /rest/v1/rpc/<name>
- select(): table/view reads under /rest/v1/<table>
- invoke(): server functions under /functions/v1/<name>

Transport failures and non-2xx answers become NetworkError; bodies that are
not JSON become DataError. Callers decide how to degrade.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

import httpx

from payrecon.core.errors import DataError, NetworkError


def eq(value: Any) -> str:
    return f"eq.{value}"


def _quote(value: Any) -> str:
    # Inside double quotes PostgREST reads \\ and \" as literal backslash and quote
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def in_(values: Iterable[Any]) -> str:
    return f"in.({','.join(_quote(v) for v in values)})"


class AsyncDataClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers: Dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, http2=True, timeout=timeout, headers=headers)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "AsyncDataClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def rpc(self, name: str, params: Mapping[str, Any]) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{name}", json=dict(params))

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Mapping[str, str]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows. filters map column -> PostgREST operator string (see eq(), in_()).
        order is "<column>.desc" / "<column>.asc".
        """
        params: Dict[str, Any] = {"select": columns}
        if filters:
            params.update(filters)
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        data = await self._request("GET", f"/rest/v1/{table}", params=params)
        if data is None:
            return []
        if not isinstance(data, list):
            raise DataError(f"expected row list from {table}, got {type(data).__name__}")
        return data

    async def invoke(self, function: str, body: Mapping[str, Any]) -> Any:
        return await self._request("POST", f"/functions/v1/{function}", json=dict(body))

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise NetworkError(
                f"{method} {path} -> {exc.response.status_code}: {exc.response.text[:200]}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {path} failed: {exc!r}") from exc

        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise DataError(f"{method} {path} returned non-JSON body") from exc
