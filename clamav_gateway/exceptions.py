"""Exception hierarchy for the ClamAV scan gateway."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clamav_gateway.models import ScanRecord


class ScanGatewayError(Exception):
    """Base exception for all scan gateway errors."""


class InputError(ScanGatewayError):
    """Raised when the uploaded source is unusable (oversized, unreadable, bad size).

    Caller-caused; never retried automatically.
    """


class PayloadTooLargeError(InputError):
    """Raised when a payload exceeds the configured size limit.

    Also raised when clamd reports ``INSTREAM size limit exceeded``.
    """


class TransportError(ScanGatewayError):
    """Base class for failures delivering bytes to the engine."""


class ScanTimeoutError(TransportError):
    """Raised when a connect, read, write or process deadline expires."""


class DaemonConnectionError(TransportError):
    """Raised when the clamd daemon cannot be reached.

    The orchestrator treats this as the signal to use the fallback transport.
    """


class ProtocolError(TransportError):
    """Raised when clamd answers with something that is neither ``OK`` nor ``FOUND``."""


class ExecutionError(TransportError):
    """Raised when the local scanner process fails for reasons other than a detection."""


class ScanCancelledError(ScanGatewayError):
    """Raised when the caller cancels a scan before it completes."""


class EngineUnavailableError(ScanGatewayError):
    """Raised when the engine cannot report its signature status."""


class UpdateInProgressError(ScanGatewayError):
    """Raised when a signature update is triggered while another one is running."""


class PersistenceError(ScanGatewayError):
    """Raised when the provenance recorder fails.

    When raised from a scan, ``record`` holds the finished :class:`ScanRecord`
    so callers can tell the scan itself succeeded.
    """

    def __init__(self, message: str, record: ScanRecord | None = None) -> None:
        super().__init__(message)
        self.record = record
