"""
Backend API client.

Thin async wrapper over httpx used by every planning component that talks to
the TMS backend. Non-2xx responses raise BackendError; transport failures
propagate as httpx exceptions.
"""

from typing import Any, Dict, List, Optional, Union

import httpx

from planit.app.core.config import Settings, settings as default_settings
from planit.app.core.exceptions import BackendError
from planit.app.core.observability import event_hooks
from planit.app.models.enums import ResourceKey

COMMON_LIST_KEYS = ("data", "results", "items", "rows")


def _find_arrays(payload: Any, path: tuple = ()) -> List[tuple]:
    found = []
    if not isinstance(payload, dict):
        return found
    for key, value in payload.items():
        if isinstance(value, list):
            found.append((key, path + (key,), value))
        elif isinstance(value, dict):
            found.extend(_find_arrays(value, path + (key,)))
    return found


def normalize_list(payload: Any, resource_key: Optional[str] = None) -> List[Any]:
    """
    Extract the resource list from any of the response shapes the backend uses.
    
    Accepts a bare array, an array under the resource key (or its plural),
    an array under one of the common envelope keys, or a nested array. When
    several nested arrays exist the shallowest one wins.
    
    Args:
        payload: Decoded JSON body
        resource_key: Resource name used for key matching, e.g. "zones"
    
    Returns:
        The list, or [] when the payload holds none
    """
    if not payload:
        return []
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    
    if resource_key:
        norm = resource_key.lower()
        for candidate in (norm, f"{norm}s"):
            for key, value in payload.items():
                if key.lower() == candidate and isinstance(value, list):
                    return value
    
    for key in COMMON_LIST_KEYS:
        if isinstance(payload.get(key), list):
            return payload[key]
    
    arrays = _find_arrays(payload)
    if not arrays:
        return []
    
    if resource_key:
        norm = resource_key.lower()
        for key, _, value in arrays:
            if key.lower() in (norm, f"{norm}s"):
                return value
        for key, _, value in arrays:
            if norm in key.lower():
                return value
    
    if len(arrays) == 1:
        return arrays[0][2]
    
    return min(arrays, key=lambda item: len(item[1]))[2]


class ApiClient:
    """
    Async client for the TMS backend.
    
    Args:
        base_url: Backend root, e.g. http://localhost:5000
        token: Optional bearer token
        timeout: Request timeout in seconds
        transport: Custom httpx transport (tests use ASGITransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        config: Optional[Settings] = None,
    ):
        config = config or default_settings
        headers = {"Content-Type": "application/json"}
        token = token or config.api_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        
        self._client = httpx.AsyncClient(
            base_url=base_url or config.api_base_url,
            headers=headers,
            timeout=timeout or config.request_timeout_seconds,
            transport=transport,
            event_hooks=event_hooks,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            raise BackendError.from_response(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("GET", path, params=params)

    async def get_list(self, resource: Union[ResourceKey, str], params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Fetch a list endpoint and normalize its body to a plain list."""
        key = ResourceKey(resource)
        payload = await self.get(key.path, params=params)
        return normalize_list(payload, key.value)

    async def post(self, path: str, json: Any = None) -> Any:
        return await self._request("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self._request("PUT", path, json=json)

    async def delete(self, path: str, json: Any = None) -> Any:
        """DELETE, optionally with a JSON payload (bulk endpoints read ids from the body)."""
        if json is None:
            return await self._request("DELETE", path)
        return await self._request("DELETE", path, json=json)
