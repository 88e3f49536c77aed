"""ClamAV scan gateway: digest, scan and record untrusted uploads."""

from clamav_gateway.cancellation import CancelToken
from clamav_gateway.config import GatewaySettings
from clamav_gateway.digest import compute_digests, digest_file
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    EngineUnavailableError,
    ExecutionError,
    InputError,
    PayloadTooLargeError,
    PersistenceError,
    ProtocolError,
    ScanCancelledError,
    ScanGatewayError,
    ScanTimeoutError,
    TransportError,
    UpdateInProgressError,
)
from clamav_gateway.gateway import ScanGateway, select_transports
from clamav_gateway.metrics import ScanMetrics
from clamav_gateway.mock import MockTransport
from clamav_gateway.models import (
    BatchResult,
    ClientContext,
    DatabaseInfo,
    DatabaseUpdate,
    Digests,
    HealthReport,
    MetricsSnapshot,
    ScanRecord,
    SignatureSnapshot,
    TransportMode,
    UpdateEvent,
    UpdateStatus,
    Verdict,
)
from clamav_gateway.orchestrator import ScanOrchestrator
from clamav_gateway.recorder import InMemoryRecorder, ProvenanceRecorder, RestRecorder
from clamav_gateway.signatures import SignatureStatusTracker
from clamav_gateway.transport import DaemonTransport, LocalProcessTransport, ScanTransport

__all__ = [
    "ScanGateway",
    "GatewaySettings",
    "ScanOrchestrator",
    "AsyncScanOrchestrator",
    "SignatureStatusTracker",
    "ScanTransport",
    "DaemonTransport",
    "LocalProcessTransport",
    "MockTransport",
    "AsyncDaemonTransport",
    "AsyncLocalProcessTransport",
    "ProvenanceRecorder",
    "InMemoryRecorder",
    "RestRecorder",
    "AsyncInMemoryRecorder",
    "AsyncRestRecorder",
    "CancelToken",
    "compute_digests",
    "digest_file",
    "select_transports",
    "ScanMetrics",
    "BatchResult",
    "ClientContext",
    "DatabaseInfo",
    "DatabaseUpdate",
    "Digests",
    "HealthReport",
    "MetricsSnapshot",
    "ScanRecord",
    "SignatureSnapshot",
    "TransportMode",
    "UpdateEvent",
    "UpdateStatus",
    "Verdict",
    "ScanGatewayError",
    "InputError",
    "PayloadTooLargeError",
    "TransportError",
    "ScanTimeoutError",
    "DaemonConnectionError",
    "ProtocolError",
    "ExecutionError",
    "ScanCancelledError",
    "EngineUnavailableError",
    "UpdateInProgressError",
    "PersistenceError",
]

_ASYNC_EXPORTS = {
    "AsyncScanOrchestrator": "clamav_gateway.async_orchestrator",
    "AsyncDaemonTransport": "clamav_gateway.async_transport",
    "AsyncLocalProcessTransport": "clamav_gateway.async_transport",
    "AsyncInMemoryRecorder": "clamav_gateway.async_recorder",
    "AsyncRestRecorder": "clamav_gateway.async_recorder",
}


def __getattr__(name: str) -> object:
    """Lazy-import async components so ``httpx`` is optional at import time."""
    if name in _ASYNC_EXPORTS:
        import importlib

        return getattr(importlib.import_module(_ASYNC_EXPORTS[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
