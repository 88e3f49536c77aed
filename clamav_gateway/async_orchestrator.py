"""Asynchronous scan orchestration on asyncio."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Union

from clamav_gateway.async_recorder import AsyncProvenanceRecorder
from clamav_gateway.async_transport import AsyncScanTransport
from clamav_gateway.cancellation import CancelToken
from clamav_gateway.digest import digest_file
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    InputError,
    PayloadTooLargeError,
    PersistenceError,
    ScanCancelledError,
    ScanGatewayError,
    ScanTimeoutError,
)
from clamav_gateway.metrics import ScanMetrics
from clamav_gateway.models import ClientContext, Digests, ScanRecord, TransportMode, Verdict
from clamav_gateway.orchestrator import DEFAULT_MAX_BYTES
from clamav_gateway.spool import ByteSource, async_spooled

logger = logging.getLogger(__name__)


class AsyncScanOrchestrator:
    """Async variant of :class:`~clamav_gateway.orchestrator.ScanOrchestrator`.

    Digesting runs in a worker thread and scanning runs as a task; the call
    waits for both. If either fails, times out, or the calling task is
    cancelled, the other is stopped and awaited before the spool is removed.

    Example::

        orchestrator = AsyncScanOrchestrator(AsyncDaemonTransport(), AsyncInMemoryRecorder())
        record = await orchestrator.scan(payload, len(payload), "upload.bin")
    """

    def __init__(
        self,
        transport: AsyncScanTransport,
        recorder: AsyncProvenanceRecorder,
        *,
        fallback: AsyncScanTransport | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        spool_dir: Union[str, Path, None] = None,
        chunk_size: int = 64 * 1024,
        metrics: ScanMetrics | None = None,
    ) -> None:
        self._transport = transport
        self._fallback = fallback
        self._recorder = recorder
        self._max_bytes = max_bytes
        self._spool_dir = spool_dir
        self._chunk_size = chunk_size
        self.metrics = metrics or ScanMetrics()

    async def scan(
        self,
        source: ByteSource,
        declared_size: int | None,
        declared_name: str,
        *,
        client: ClientContext | None = None,
        timeout: float | None = None,
    ) -> ScanRecord:
        """Scan *source* and persist the resulting record.

        Raises:
            PayloadTooLargeError: If the declared or actual size exceeds the limit.
            InputError: If the size is negative or the source is unreadable.
            TransportError: If the engine could not produce a verdict.
            PersistenceError: If the recorder failed after a verdict was reached.
        """
        if declared_size is not None:
            if declared_size < 0:
                raise InputError(f"invalid declared size {declared_size}")
            if declared_size > self._max_bytes:
                raise PayloadTooLargeError(
                    f"{declared_name}: {declared_size} bytes exceeds the {self._max_bytes} byte limit"
                )

        try:
            async with async_spooled(
                source,
                max_bytes=self._max_bytes,
                directory=self._spool_dir,
                chunk_size=self._chunk_size,
            ) as spool:
                digests, verdict, mode = await self._digest_and_scan(spool.path, timeout)
        except ScanGatewayError:
            self.metrics.record_failure()
            raise
        self.metrics.record_verdict(spool.size, verdict.infected)

        record = ScanRecord(
            filename=declared_name,
            byte_length=spool.size,
            digests=digests,
            verdict=verdict,
            client_context=client or ClientContext(),
            transport=mode,
        )
        logger.info(
            "scanned %s (%d bytes, sha256=%s): %s",
            declared_name,
            spool.size,
            digests.sha256,
            ", ".join(verdict.threat_names) if verdict.infected else "clean",
        )
        try:
            await self._recorder.persist_scan(record)
        except PersistenceError as exc:
            raise PersistenceError(str(exc), record=record) from exc
        except Exception as exc:
            raise PersistenceError(f"cannot record scan of {declared_name}: {exc}", record=record) from exc
        return record

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _digest_and_scan(
        self, path: Path, timeout: float | None
    ) -> tuple[Digests, Verdict, TransportMode]:
        token = CancelToken()
        digest_task = asyncio.ensure_future(
            asyncio.to_thread(digest_file, path, chunk_size=self._chunk_size, token=token)
        )
        scan_task = asyncio.ensure_future(self._scan_with_fallback(path))
        branches = (digest_task, scan_task)

        try:
            done, pending = await asyncio.wait(branches, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _stop(digest_task, scan_task, token)
            raise

        timed_out = bool(pending) and not any(_error(t) for t in done)
        if pending:
            await _stop(digest_task, scan_task, token)

        errors = [err for err in (_error(t) for t in branches) if err is not None]
        for err in errors:
            if not isinstance(err, (ScanCancelledError, ScanTimeoutError)):
                raise err
        if timed_out:
            raise ScanTimeoutError(f"scan exceeded {timeout}s")
        if errors:
            raise errors[0]

        verdict, mode = scan_task.result()
        return digest_task.result(), verdict, mode

    async def _scan_with_fallback(self, path: Path) -> tuple[Verdict, TransportMode]:
        try:
            return await self._transport.scan_spool(path), self._transport.mode
        except DaemonConnectionError as exc:
            if self._fallback is None:
                raise
            logger.warning("daemon unavailable (%s); scanning with %s", exc, self._fallback.mode.value)
            return await self._fallback.scan_spool(path), self._fallback.mode


async def _stop(digest_task: asyncio.Future, scan_task: asyncio.Future, token: CancelToken) -> None:
    # The digest thread cannot be interrupted; it stops at its next chunk.
    token.cancel()
    scan_task.cancel()
    await asyncio.gather(digest_task, scan_task, return_exceptions=True)


def _error(task: asyncio.Future) -> BaseException | None:
    if task.cancelled():
        return None
    return task.exception()
