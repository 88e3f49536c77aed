"""Asynchronous provenance recorders (REST variant requires ``httpx``)."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from clamav_gateway.exceptions import PersistenceError
from clamav_gateway.models import ScanRecord, UpdateEvent
from clamav_gateway.recorder import (
    SCAN_TABLE,
    UPDATE_TABLE,
    InMemoryRecorder,
    rest_headers,
    scan_from_row,
    scan_to_row,
    update_from_row,
    update_to_row,
)

logger = logging.getLogger(__name__)


class AsyncProvenanceRecorder(Protocol):
    async def persist_scan(self, record: ScanRecord) -> None: ...

    async def persist_update(self, event: UpdateEvent) -> None: ...

    async def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]: ...

    async def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]: ...


class AsyncInMemoryRecorder:
    """Async facade over :class:`InMemoryRecorder`."""

    def __init__(self, store: InMemoryRecorder | None = None) -> None:
        self.store = store or InMemoryRecorder()

    async def persist_scan(self, record: ScanRecord) -> None:
        self.store.persist_scan(record)

    async def persist_update(self, event: UpdateEvent) -> None:
        self.store.persist_update(event)

    async def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]:
        return self.store.list_scans(limit=limit, offset=offset)

    async def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        return self.store.list_updates(limit=limit, offset=offset)


class AsyncRestRecorder:
    """Async recorder for a PostgREST-style HTTP API.

    Args:
        base_url: REST root, e.g. ``"https://xyz.supabase.co/rest/v1"``.
        api_key: Sent as ``apikey`` and as a bearer token when given.
        timeout: Request timeout in seconds.
        client: Optional pre-configured :class:`httpx.AsyncClient`.

    Example::

        async with AsyncRestRecorder("http://localhost:3000") as recorder:
            await recorder.persist_scan(record)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = rest_headers(api_key)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def persist_scan(self, record: ScanRecord) -> None:
        await self._post(SCAN_TABLE, scan_to_row(record))

    async def persist_update(self, event: UpdateEvent) -> None:
        await self._post(UPDATE_TABLE, update_to_row(event))

    async def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]:
        rows = await self._get(SCAN_TABLE, "scan_time.desc", limit, offset)
        return [scan_from_row(row) for row in rows]

    async def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        rows = await self._get(UPDATE_TABLE, "observed_at.desc", limit, offset)
        return [update_from_row(row) for row in rows]

    async def close(self) -> None:
        """Close the underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> AsyncRestRecorder:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, table: str, row: dict[str, Any]) -> None:
        try:
            resp = await self._client.post(
                f"{self._base_url}/{table}",
                json=row,
                headers={**self._headers, "Prefer": "return=minimal"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"cannot write to {table}: {exc}") from exc
        if not resp.is_success:
            raise PersistenceError(f"{table} request failed with HTTP {resp.status_code}: {resp.text}")
        logger.debug("persisted row to %s", table)

    async def _get(self, table: str, order: str, limit: int, offset: int) -> list[dict[str, Any]]:
        try:
            resp = await self._client.get(
                f"{self._base_url}/{table}",
                params={"select": "*", "order": order, "limit": limit, "offset": offset},
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise PersistenceError(f"cannot read {table}: {exc}") from exc
        if not resp.is_success:
            raise PersistenceError(f"{table} request failed with HTTP {resp.status_code}: {resp.text}")
        return resp.json()  # type: ignore[no-any-return]
