"""Signature-database status queries and serialized update cycles."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from pathlib import Path
from typing import Union

from clamav_gateway import protocol
from clamav_gateway.exceptions import (
    EngineUnavailableError,
    PersistenceError,
    ScanGatewayError,
    UpdateInProgressError,
)
from clamav_gateway.models import (
    DatabaseInfo,
    DatabaseUpdate,
    SignatureSnapshot,
    UpdateEvent,
    UpdateStatus,
)
from clamav_gateway.recorder import ProvenanceRecorder
from clamav_gateway.transport import ScanTransport

logger = logging.getLogger(__name__)

DATABASES = ("main", "daily", "bytecode")

# freshclam exit statuses: 0 updated, 1 already up to date
_UPDATER_OK = (0, 1)

_FRESHCLAM_RE = re.compile(
    r"(?P<name>[\w-]+\.c[lv]d)\b.*?(?P<state>up[- ]to[- ]date|updated)\s*"
    r"\(version:\s*(?P<version>\d+),\s*sigs:\s*(?P<sigs>\d+)",
    re.IGNORECASE,
)


class SignatureStatusTracker:
    """Reports the engine's signature databases and runs update cycles.

    Per-database counts come from ``sigtool --info``. Without a database
    directory or ``sigtool`` the snapshot is aggregate-only; counts are never
    estimated.

    Args:
        transport: Transport used for ``version()`` and post-update ``reload()``.
        recorder: Receives one :class:`UpdateEvent` per update cycle.
        database_dir: Directory holding ``*.cvd`` / ``*.cld`` files.
        sigtool: ``sigtool`` executable.
        freshclam: ``freshclam`` executable.
        update_timeout: Budget for one ``freshclam`` run in seconds.
        inspect_timeout: Budget for each ``sigtool`` run in seconds.
        reload_after_update: Ask the engine to reload after a successful update.
    """

    def __init__(
        self,
        transport: ScanTransport,
        recorder: ProvenanceRecorder,
        *,
        database_dir: Union[str, Path, None] = None,
        sigtool: str = "sigtool",
        freshclam: str = "freshclam",
        update_timeout: float = 120,
        inspect_timeout: float = 30,
        reload_after_update: bool = True,
    ) -> None:
        self._transport = transport
        self._recorder = recorder
        self._database_dir = Path(database_dir) if database_dir is not None else None
        self._sigtool = sigtool
        self._freshclam = freshclam
        self._update_timeout = update_timeout
        self._inspect_timeout = inspect_timeout
        self._reload_after_update = reload_after_update
        self._update_lock = threading.Lock()

    def current_status(self) -> SignatureSnapshot:
        """Take a snapshot of the engine's signature databases.

        Raises:
            EngineUnavailableError: If the engine does not answer ``version()``.
        """
        try:
            raw = self._transport.version()
            engine, db_version, build_date = protocol.parse_version(raw)
        except (ScanGatewayError, OSError) as exc:
            raise EngineUnavailableError(f"cannot query engine version: {exc}") from exc

        databases = tuple(self._inspect_databases())
        total = None
        if databases and all(db.signature_count is not None for db in databases):
            total = sum(db.signature_count or 0 for db in databases)

        return SignatureSnapshot(
            engine_version=engine,
            database_version=db_version,
            databases=databases,
            total_signatures=total,
            last_update=build_date,
        )

    def trigger_update(self) -> UpdateEvent:
        """Run one update cycle and record it.

        Exactly one :class:`UpdateEvent` is persisted per call, with status
        ``FAILED`` when the updater could not run or reported an error.

        Raises:
            UpdateInProgressError: If another update cycle is running.
            PersistenceError: If the event could not be recorded.
        """
        if not self._update_lock.acquire(blocking=False):
            raise UpdateInProgressError("a signature update is already running")
        try:
            event = self._update_cycle()
            try:
                self._recorder.persist_update(event)
            except PersistenceError:
                raise
            except Exception as exc:
                raise PersistenceError(f"cannot record signature update: {exc}") from exc
            return event
        finally:
            self._update_lock.release()

    def history(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        return self._recorder.list_updates(limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update_cycle(self) -> UpdateEvent:
        notes: list[str] = []
        before = self._snapshot_or_none("before", notes)
        status, detail, output = self._run_updater()
        notes.insert(0, detail)

        if status is UpdateStatus.SUCCESS and self._reload_after_update:
            try:
                self._transport.reload()
            except ScanGatewayError as exc:
                logger.warning("engine reload after update failed: %s", exc)
                notes.append(f"reload failed: {exc}")

        after = self._snapshot_or_none("after", notes)
        event = UpdateEvent(
            status=status,
            detail="; ".join(notes),
            databases=tuple(parse_updater_output(output)),
            before=before,
            after=after,
            output=output,
        )
        if status is UpdateStatus.SUCCESS:
            logger.info("signature update finished: %s", event.detail)
        else:
            logger.warning("signature update failed: %s", event.detail)
        return event

    def _snapshot_or_none(self, label: str, notes: list[str]) -> SignatureSnapshot | None:
        try:
            return self.current_status()
        except EngineUnavailableError as exc:
            notes.append(f"{label} snapshot unavailable: {exc}")
            return None

    def _run_updater(self) -> tuple[UpdateStatus, str, str]:
        cmd = [self._freshclam, "--stdout"]
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self._update_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output if isinstance(exc.output, str) else ""
            return UpdateStatus.FAILED, f"{self._freshclam} timed out after {self._update_timeout}s", output
        except OSError as exc:
            return UpdateStatus.FAILED, f"cannot run {self._freshclam}: {exc}", ""

        if proc.returncode in _UPDATER_OK:
            return UpdateStatus.SUCCESS, "signature update completed", proc.stdout
        return (
            UpdateStatus.FAILED,
            f"{self._freshclam} exited with status {proc.returncode}",
            proc.stdout,
        )

    def _inspect_databases(self) -> list[DatabaseInfo]:
        if self._database_dir is None:
            return []
        found: list[DatabaseInfo] = []
        for base in DATABASES:
            path = _database_file(self._database_dir, base)
            if path is None:
                continue
            found.append(self._sigtool_info(path))
        return found

    def _sigtool_info(self, path: Path) -> DatabaseInfo:
        try:
            proc = subprocess.run(
                [self._sigtool, "--info", str(path)],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self._inspect_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("sigtool failed on %s: %s", path, exc)
            return DatabaseInfo(name=path.name)
        if proc.returncode != 0:
            logger.debug("sigtool exited %d on %s", proc.returncode, path)
            return DatabaseInfo(name=path.name)
        return parse_sigtool_info(path.name, proc.stdout)


def _database_file(directory: Path, base: str) -> Path | None:
    # .cld is the incrementally updated form and wins over a stale .cvd
    for suffix in (".cld", ".cvd"):
        candidate = directory / f"{base}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def parse_sigtool_info(name: str, output: str) -> DatabaseInfo:
    """Parse ``sigtool --info`` output for one database file."""
    fields: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            fields[key.strip().lower()] = value.strip()
    return DatabaseInfo(
        name=name,
        signature_count=_int_or_none(fields.get("signatures")),
        version=_int_or_none(fields.get("version")),
        build_time=fields.get("build time") or None,
    )


def parse_updater_output(output: str) -> list[DatabaseUpdate]:
    """Extract per-database results from ``freshclam`` output."""
    results: list[DatabaseUpdate] = []
    for line in output.splitlines():
        match = _FRESHCLAM_RE.search(line)
        if match is None:
            continue
        results.append(
            DatabaseUpdate(
                name=match.group("name"),
                version=int(match.group("version")),
                signature_count=int(match.group("sigs")),
                updated=match.group("state").lower() == "updated",
            )
        )
    return results


def _int_or_none(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
