"""Provenance recorders: where finished scans and update cycles are persisted."""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime
from typing import Any, Protocol

import requests

from clamav_gateway.exceptions import PersistenceError
from clamav_gateway.models import (
    ClientContext,
    DatabaseInfo,
    DatabaseUpdate,
    Digests,
    ScanRecord,
    SignatureSnapshot,
    TransportMode,
    UpdateEvent,
    UpdateStatus,
    Verdict,
)

logger = logging.getLogger(__name__)

SCAN_TABLE = "scan_logs"
UPDATE_TABLE = "signature_updates"

_FRACTION_RE = re.compile(r"(?<=:\d\d)\.(\d+)")


class ProvenanceRecorder(Protocol):
    """Storage interface the gateway writes to.

    Implementations must persist each record atomically and list history
    newest first.
    """

    def persist_scan(self, record: ScanRecord) -> None: ...

    def persist_update(self, event: UpdateEvent) -> None: ...

    def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]: ...

    def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]: ...


class InMemoryRecorder:
    """Thread-safe append-only recorder kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._scans: list[ScanRecord] = []
        self._updates: list[UpdateEvent] = []

    def persist_scan(self, record: ScanRecord) -> None:
        with self._lock:
            self._scans.append(record)

    def persist_update(self, event: UpdateEvent) -> None:
        with self._lock:
            self._updates.append(event)

    def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]:
        with self._lock:
            newest_first = self._scans[::-1]
        return newest_first[offset : offset + limit]

    def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        with self._lock:
            newest_first = self._updates[::-1]
        return newest_first[offset : offset + limit]


class RestRecorder:
    """Recorder backed by a PostgREST-style HTTP API (e.g. Supabase).

    Args:
        base_url: REST root, e.g. ``"https://xyz.supabase.co/rest/v1"``.
        api_key: Sent as ``apikey`` and as a bearer token when given.
        timeout: Request timeout in seconds.
        session: Optional pre-configured :class:`requests.Session`.

    Example::

        recorder = RestRecorder("http://localhost:3000", api_key="service-key")
        recorder.persist_scan(record)
        latest = recorder.list_scans(limit=10)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._headers = rest_headers(api_key)

    def persist_scan(self, record: ScanRecord) -> None:
        self._post(SCAN_TABLE, scan_to_row(record))

    def persist_update(self, event: UpdateEvent) -> None:
        self._post(UPDATE_TABLE, update_to_row(event))

    def list_scans(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]:
        rows = self._get(SCAN_TABLE, "scan_time.desc", limit, offset)
        return [scan_from_row(row) for row in rows]

    def list_updates(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        rows = self._get(UPDATE_TABLE, "observed_at.desc", limit, offset)
        return [update_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _post(self, table: str, row: dict[str, Any]) -> None:
        try:
            resp = self._session.post(
                f"{self._base_url}/{table}",
                json=row,
                headers={**self._headers, "Prefer": "return=minimal"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise PersistenceError(f"cannot write to {table}: {exc}") from exc
        _raise_for_status(table, resp.status_code, resp.text)
        logger.debug("persisted row to %s", table)

    def _get(self, table: str, order: str, limit: int, offset: int) -> list[dict[str, Any]]:
        try:
            resp = self._session.get(
                f"{self._base_url}/{table}",
                params={"select": "*", "order": order, "limit": limit, "offset": offset},
                headers=self._headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise PersistenceError(f"cannot read {table}: {exc}") from exc
        _raise_for_status(table, resp.status_code, resp.text)
        return resp.json()  # type: ignore[no-any-return]


# ------------------------------------------------------------------
# Row conversion (shared with the async recorder)
# ------------------------------------------------------------------


def rest_headers(api_key: str | None) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["apikey"] = api_key
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _raise_for_status(table: str, status_code: int, text: str) -> None:
    if 200 <= status_code < 300:
        return
    raise PersistenceError(f"{table} request failed with HTTP {status_code}: {text}")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp as returned by PostgREST.

    Postgres trims trailing zeros from fractional seconds and may use a ``Z``
    suffix; both are normalised before :meth:`datetime.fromisoformat`.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(
        _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    )


def scan_to_row(record: ScanRecord) -> dict[str, Any]:
    return {
        "filename": record.filename,
        "file_size": record.byte_length,
        "md5_hash": record.digests.md5,
        "sha1_hash": record.digests.sha1,
        "sha256_hash": record.digests.sha256,
        "scan_result": "INFECTED" if record.verdict.infected else "CLEAN",
        "threats_found": list(record.verdict.threat_names),
        "engine_note": record.verdict.raw_note,
        "client_ip": record.client_context.client_ip,
        "user_agent": record.client_context.user_agent,
        "transport": record.transport.value,
        "scan_time": record.timestamp.isoformat(),
    }


def scan_from_row(row: dict[str, Any]) -> ScanRecord:
    threats = tuple(row.get("threats_found") or ())
    infected = row["scan_result"] == "INFECTED"
    return ScanRecord(
        filename=row["filename"],
        byte_length=row["file_size"],
        digests=Digests(md5=row["md5_hash"], sha1=row["sha1_hash"], sha256=row["sha256_hash"]),
        verdict=Verdict(infected=infected, threat_names=threats, raw_note=row.get("engine_note")),
        timestamp=parse_timestamp(row["scan_time"]),
        client_context=ClientContext(client_ip=row.get("client_ip"), user_agent=row.get("user_agent")),
        transport=TransportMode(row.get("transport", TransportMode.DAEMON.value)),
    )


def snapshot_to_dict(snapshot: SignatureSnapshot | None) -> dict[str, Any] | None:
    if snapshot is None:
        return None
    return {
        "engine_version": snapshot.engine_version,
        "database_version": snapshot.database_version,
        "databases": [
            {
                "name": db.name,
                "signature_count": db.signature_count,
                "version": db.version,
                "build_time": db.build_time,
            }
            for db in snapshot.databases
        ],
        "total_signatures": snapshot.total_signatures,
        "last_update": snapshot.last_update,
        "observed_at": snapshot.observed_at.isoformat(),
    }


def snapshot_from_dict(data: dict[str, Any] | None) -> SignatureSnapshot | None:
    if data is None:
        return None
    return SignatureSnapshot(
        engine_version=data["engine_version"],
        database_version=data.get("database_version"),
        databases=tuple(DatabaseInfo(**db) for db in data.get("databases") or ()),
        total_signatures=data.get("total_signatures"),
        last_update=data.get("last_update"),
        observed_at=parse_timestamp(data["observed_at"]),
    )


def update_to_row(event: UpdateEvent) -> dict[str, Any]:
    return {
        "update_status": event.status.value,
        "update_details": event.detail,
        "databases": [
            {
                "name": db.name,
                "version": db.version,
                "signature_count": db.signature_count,
                "updated": db.updated,
            }
            for db in event.databases
        ],
        "before": snapshot_to_dict(event.before),
        "after": snapshot_to_dict(event.after),
        "output": event.output,
        "observed_at": event.observed_at.isoformat(),
    }


def update_from_row(row: dict[str, Any]) -> UpdateEvent:
    return UpdateEvent(
        status=UpdateStatus(row["update_status"]),
        detail=row.get("update_details") or "",
        databases=tuple(DatabaseUpdate(**db) for db in row.get("databases") or ()),
        before=snapshot_from_dict(row.get("before")),
        after=snapshot_from_dict(row.get("after")),
        output=row.get("output") or "",
        observed_at=parse_timestamp(row["observed_at"]),
    )
