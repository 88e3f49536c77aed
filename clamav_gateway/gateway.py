"""Inbound interface of the scan gateway and startup transport selection."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from clamav_gateway.config import GatewaySettings
from clamav_gateway.exceptions import InputError, PersistenceError, ScanGatewayError
from clamav_gateway.mock import MockTransport
from clamav_gateway.models import (
    BatchResult,
    ClientContext,
    HealthReport,
    MetricsSnapshot,
    ScanRecord,
    SignatureSnapshot,
    TransportMode,
    UpdateEvent,
)
from clamav_gateway.orchestrator import ScanOrchestrator
from clamav_gateway.recorder import InMemoryRecorder, ProvenanceRecorder, RestRecorder
from clamav_gateway.signatures import SignatureStatusTracker
from clamav_gateway.spool import ByteSource
from clamav_gateway.transport import DaemonTransport, LocalProcessTransport, ScanTransport

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
MAX_BATCH_FILES = 10


def select_transports(settings: GatewaySettings) -> tuple[ScanTransport, ScanTransport | None]:
    """Build the primary transport and the optional per-call fallback.

    An explicit ``transport_mode`` wins. Otherwise the daemon is probed once
    with ``PING`` and the local scanner is used if it does not answer.
    """
    daemon = DaemonTransport(
        host=settings.clamd_host,
        port=settings.clamd_port,
        socket_path=settings.clamd_socket,
        timeout=settings.clamd_timeout,
        chunk_size=settings.chunk_size,
    )
    local = LocalProcessTransport(settings.clamscan_path, timeout=settings.clamscan_timeout)

    mode = settings.transport_mode
    if mode is TransportMode.MOCK:
        return MockTransport(), None
    if mode is None:
        mode = TransportMode.DAEMON if daemon.ping() else TransportMode.LOCAL_PROCESS
        logger.info("probed clamd at %s: using %s transport", daemon.address, mode.value)

    if mode is TransportMode.DAEMON:
        return daemon, local if settings.fallback_enabled else None
    return local, None


def build_recorder(settings: GatewaySettings) -> ProvenanceRecorder:
    if settings.recorder_url:
        return RestRecorder(
            settings.recorder_url,
            api_key=settings.recorder_api_key,
            timeout=settings.recorder_timeout,
        )
    return InMemoryRecorder()


class ScanGateway:
    """Scan, signature-status and history operations behind one object.

    Args:
        orchestrator: Runs individual scans.
        tracker: Reports and updates signature databases.
        recorder: Source of scan and update history.
        scan_timeout: Default deadline per scan in seconds.

    Example::

        with ScanGateway.from_settings() as gateway:
            record = gateway.scan(b"hello", 5, "hello.txt")
            status = gateway.get_signature_status()
    """

    def __init__(
        self,
        orchestrator: ScanOrchestrator,
        tracker: SignatureStatusTracker,
        recorder: ProvenanceRecorder,
        scan_timeout: float | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._tracker = tracker
        self._recorder = recorder
        self._scan_timeout = scan_timeout

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings | None = None,
        recorder: ProvenanceRecorder | None = None,
    ) -> ScanGateway:
        settings = settings or GatewaySettings()
        recorder = recorder or build_recorder(settings)
        transport, fallback = select_transports(settings)
        orchestrator = ScanOrchestrator(
            transport,
            recorder,
            fallback=fallback,
            max_bytes=settings.max_upload_bytes,
            spool_dir=settings.spool_dir,
            chunk_size=settings.chunk_size,
            max_workers=settings.scan_workers,
        )
        tracker = SignatureStatusTracker(
            transport,
            recorder,
            database_dir=settings.database_dir,
            sigtool=settings.sigtool_path,
            freshclam=settings.freshclam_path,
            update_timeout=settings.update_timeout,
        )
        return cls(orchestrator, tracker, recorder, scan_timeout=settings.scan_timeout)

    @property
    def transport_mode(self) -> TransportMode:
        return self._orchestrator.transport.mode

    def scan(
        self,
        source: ByteSource,
        size: int | None,
        name: str,
        client: ClientContext | None = None,
    ) -> ScanRecord:
        return self._orchestrator.scan(source, size, name, client=client, timeout=self._scan_timeout)

    def scan_many(
        self,
        files: Iterable[tuple[ByteSource, int | None, str]],
        client: ClientContext | None = None,
    ) -> list[BatchResult]:
        """Scan up to :data:`MAX_BATCH_FILES` uploads, one result per file in order.

        A failing file does not stop the batch; its error is kept in the
        corresponding :class:`BatchResult`.

        Raises:
            InputError: If the batch is empty or has too many files.
        """
        batch = list(files)
        if not batch:
            raise InputError("no files to scan")
        if len(batch) > MAX_BATCH_FILES:
            raise InputError(f"{len(batch)} files exceeds the batch limit of {MAX_BATCH_FILES}")

        results: list[BatchResult] = []
        for source, size, name in batch:
            try:
                results.append(BatchResult(name=name, record=self.scan(source, size, name, client)))
            except PersistenceError as exc:
                results.append(BatchResult(name=name, record=exc.record, error=exc))
            except ScanGatewayError as exc:
                logger.warning("batch scan of %s failed: %s", name, exc)
                results.append(BatchResult(name=name, error=exc))
        return results

    def metrics(self) -> MetricsSnapshot:
        return self._orchestrator.metrics.snapshot()

    def health(self) -> HealthReport:
        """Check that the active transport reaches the engine and reports a version."""
        transport = self._orchestrator.transport
        try:
            if not transport.ping():
                return HealthReport(
                    healthy=False, transport=transport.mode, error="engine did not answer ping"
                )
            version = transport.version()
        except ScanGatewayError as exc:
            logger.warning("health check failed: %s", exc)
            return HealthReport(healthy=False, transport=transport.mode, error=str(exc))
        return HealthReport(healthy=True, transport=transport.mode, engine_version=version)

    def get_signature_status(self) -> SignatureSnapshot:
        return self._tracker.current_status()

    def update_signatures(self) -> UpdateEvent:
        return self._tracker.trigger_update()

    def list_scan_history(self, limit: int = 100, offset: int = 0) -> list[ScanRecord]:
        limit, offset = _page(limit, offset)
        return self._recorder.list_scans(limit=limit, offset=offset)

    def list_update_history(self, limit: int = 50, offset: int = 0) -> list[UpdateEvent]:
        limit, offset = _page(limit, offset)
        return self._tracker.history(limit=limit, offset=offset)

    def close(self) -> None:
        self._orchestrator.close()

    def __enter__(self) -> ScanGateway:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def _page(limit: int, offset: int) -> tuple[int, int]:
    return min(MAX_PAGE_SIZE, max(1, limit)), max(0, offset)
