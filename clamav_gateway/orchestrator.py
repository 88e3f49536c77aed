"""Coordinates spooling, digesting, scanning and recording of one upload."""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Union

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
from clamav_gateway.recorder import ProvenanceRecorder
from clamav_gateway.spool import ByteSource, spooled
from clamav_gateway.transport import ScanTransport

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024

_POLL_INTERVAL = 0.05


class ScanOrchestrator:
    """Runs one scan end to end.

    The upload is spooled to a private temporary file, then digested and
    scanned concurrently through independent read handles. Both branches share
    a :class:`CancelToken`; if one fails, the other is cancelled and joined
    before the spool is removed and the first error is raised.

    Args:
        transport: Primary scan transport.
        recorder: Where finished :class:`ScanRecord` objects are persisted.
        fallback: Transport used for the current call when *transport* raises
            :class:`DaemonConnectionError`. *None* disables fallback.
        max_bytes: Upload size limit.
        spool_dir: Directory for spool files; system temp dir when *None*.
        chunk_size: Read size for spooling and digesting.
        max_workers: Thread pool size (two threads per in-flight scan).
        metrics: Counters to update; a fresh :class:`ScanMetrics` when *None*.

    Example::

        orchestrator = ScanOrchestrator(DaemonTransport(), InMemoryRecorder())
        with open("upload.bin", "rb") as fh:
            record = orchestrator.scan(fh, os.path.getsize("upload.bin"), "upload.bin")
        print(record.verdict.infected, record.digests.sha256)
    """

    def __init__(
        self,
        transport: ScanTransport,
        recorder: ProvenanceRecorder,
        *,
        fallback: ScanTransport | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
        spool_dir: Union[str, Path, None] = None,
        chunk_size: int = 64 * 1024,
        max_workers: int = 8,
        metrics: ScanMetrics | None = None,
    ) -> None:
        self._transport = transport
        self._fallback = fallback
        self._recorder = recorder
        self._max_bytes = max_bytes
        self._spool_dir = spool_dir
        self._chunk_size = chunk_size
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scan")
        self.metrics = metrics or ScanMetrics()

    @property
    def transport(self) -> ScanTransport:
        return self._transport

    def scan(
        self,
        source: ByteSource,
        declared_size: int | None,
        declared_name: str,
        *,
        client: ClientContext | None = None,
        timeout: float | None = None,
        token: CancelToken | None = None,
    ) -> ScanRecord:
        """Scan *source* and persist the resulting record.

        Args:
            source: Raw bytes or readable binary stream, read once.
            declared_size: Size claimed by the uploader, or *None* if unknown.
            declared_name: Filename claimed by the uploader.
            client: Upload origin metadata.
            timeout: Overall deadline in seconds for digest plus scan.
            token: Caller-owned cancellation token; overrides *timeout*.

        Returns:
            The persisted :class:`ScanRecord`.

        Raises:
            PayloadTooLargeError: If the declared or actual size exceeds the limit.
            InputError: If the size is negative or the source is unreadable.
            TransportError: If the engine could not produce a verdict.
            ScanCancelledError: If *token* was cancelled.
            PersistenceError: If the recorder failed after a verdict was reached.
        """
        if declared_size is not None:
            if declared_size < 0:
                raise InputError(f"invalid declared size {declared_size}")
            if declared_size > self._max_bytes:
                raise PayloadTooLargeError(
                    f"{declared_name}: {declared_size} bytes exceeds the {self._max_bytes} byte limit"
                )

        token = token or CancelToken(timeout)
        try:
            with spooled(
                source,
                max_bytes=self._max_bytes,
                directory=self._spool_dir,
                chunk_size=self._chunk_size,
            ) as spool:
                digests, verdict, mode = self._digest_and_scan(spool.path, token)
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
            self._recorder.persist_scan(record)
        except PersistenceError as exc:
            raise PersistenceError(str(exc), record=record) from exc
        except Exception as exc:
            raise PersistenceError(f"cannot record scan of {declared_name}: {exc}", record=record) from exc
        return record

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> ScanOrchestrator:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _digest_and_scan(self, path: Path, token: CancelToken) -> tuple[Digests, Verdict, TransportMode]:
        digest_future = self._executor.submit(digest_file, path, chunk_size=self._chunk_size, token=token)
        scan_future = self._executor.submit(self._scan_with_fallback, path, token)
        branches = [digest_future, scan_future]

        while True:
            # Short waits so a caller-side cancel or the deadline is noticed.
            done, pending = wait(branches, timeout=_POLL_INTERVAL, return_when=FIRST_EXCEPTION)
            if not pending or _failed(done) or token.cancelled or token.expired:
                break

        if pending or _failed(done):
            timed_out = token.expired and not token.cancelled
            token.cancel()
            wait(branches)
            raise _first_error(branches, timed_out)

        verdict, mode = scan_future.result()
        return digest_future.result(), verdict, mode

    def _scan_with_fallback(self, path: Path, token: CancelToken) -> tuple[Verdict, TransportMode]:
        try:
            return self._transport.scan_spool(path, token), self._transport.mode
        except DaemonConnectionError as exc:
            if self._fallback is None:
                raise
            logger.warning("daemon unavailable (%s); scanning with %s", exc, self._fallback.mode.value)
            return self._fallback.scan_spool(path, token), self._fallback.mode


def _failed(done: set[Future]) -> bool:
    return any(f.exception() is not None for f in done)


def _first_error(branches: list[Future], timed_out: bool) -> BaseException:
    """Pick the error to surface once both branches have stopped.

    A branch that failed on its own wins over one that only stopped because
    the shared token was cancelled.
    """
    errors = [f.exception() for f in branches if f.exception() is not None]
    for err in errors:
        if not isinstance(err, (ScanCancelledError, ScanTimeoutError)):
            return err  # type: ignore[return-value]
    if timed_out:
        return ScanTimeoutError("scan deadline exceeded")
    if errors:
        return errors[0]  # type: ignore[return-value]
    return ScanCancelledError("scan cancelled")
