"""
POS Catalog API client

Async HTTP client for the remote catalog: list pages, upsert objects, delete
objects. Every request fetches a bearer token from the token provider, so the
raw token only lives for the duration of the call. HTTP failures are mapped to
the sync error taxonomy; retrying is left to the batch executor.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import aiohttp

from exceptions import AuthError, PosSyncError, RateLimitError, TransientRemoteError, ValidationError

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class CatalogPage:
    """One page of catalog objects."""
    objects: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None


def _error_detail(payload: Any) -> str:
    if isinstance(payload, dict):
        errors = payload.get('errors')
        if isinstance(errors, list) and errors:
            first = errors[0]
            return first.get('detail') or first.get('code') or str(first)
        for key in ('message', 'error_description', 'error'):
            if payload.get(key):
                return str(payload[key])
    if payload:
        return str(payload)[:500]
    return ''


def error_from_response(status: int, payload: Any, headers: Optional[Mapping[str, str]] = None) -> PosSyncError:
    """Map an unsuccessful HTTP response to a sync error."""
    detail = _error_detail(payload)
    headers = headers or {}

    if status in (401, 403):
        return AuthError(f"POS rejected credentials ({status}): {detail}", details={'status': status})
    if status == 429:
        retry_after = None
        raw = headers.get('Retry-After')
        if raw:
            try:
                retry_after = float(raw)
            except ValueError:
                retry_after = None
        return RateLimitError(f"POS rate limit exceeded: {detail}", retry_after=retry_after,
                              details={'status': status})
    if status == 404:
        return ValidationError(f"POS object not found: {detail}", code='REMOTE_OBJECT_MISSING',
                               details={'status': status})
    if status >= 500:
        return TransientRemoteError(f"POS server error ({status}): {detail}", status=status)
    return ValidationError(f"POS rejected request ({status}): {detail}", details={'status': status})


class PosCatalogClient:
    """Remote catalog API. Use as an async context manager."""

    def __init__(self, base_url: str, token_provider: TokenProvider, timeout: int = 30,
                 api_version: str = '2024-01-18', session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.timeout = timeout
        self.api_version = api_version
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={
                    'Content-Type': 'application/json',
                    'Square-Version': self.api_version
                }
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.session:
            raise RuntimeError("Session not initialized. Use async context manager.")

        token = await self.token_provider()
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(method, url, params=params, json=json,
                                            headers={'Authorization': f'Bearer {token}'}) as response:
                try:
                    payload = await response.json(content_type=None)
                except ValueError:
                    payload = await response.text()

                if response.status >= 400:
                    error = error_from_response(response.status, payload, response.headers)
                    logger.warning(f"{method} {path} failed: {error}")
                    raise error

                return payload if isinstance(payload, dict) else {}

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRemoteError(f"{method} {path} failed: {e}") from e

    async def list_catalog_objects(self, cursor: Optional[str] = None, types: str = 'ITEM') -> CatalogPage:
        params = {'types': types}
        if cursor:
            params['cursor'] = cursor
        data = await self._request('GET', '/v2/catalog/list', params=params)
        return CatalogPage(objects=data.get('objects') or [], next_cursor=data.get('cursor'))

    async def upsert_catalog_object(self, catalog_object: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        data = await self._request('POST', '/v2/catalog/object', json={
            'idempotency_key': idempotency_key,
            'object': catalog_object
        })
        result = data.get('catalog_object')
        if not result:
            raise TransientRemoteError("Upsert response did not include the catalog object")
        return result

    async def delete_catalog_object(self, object_id: str) -> None:
        try:
            await self._request('DELETE', f'/v2/catalog/object/{object_id}')
        except ValidationError as e:
            if e.error_code != 'REMOTE_OBJECT_MISSING':
                raise
            logger.info(f"Catalog object {object_id} already deleted")
