"""Deterministic in-process transport for tests and development wiring."""

from __future__ import annotations

import threading
from pathlib import Path

from clamav_gateway.cancellation import CancelToken
from clamav_gateway.models import TransportMode, Verdict

EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"
EICAR_SIGNATURE = "Eicar-Test-Signature"


class MockTransport:
    """Flags the EICAR test string and passes everything else.

    Args:
        signatures: Extra ``{byte marker: threat name}`` pairs to detect.
        error: Exception raised by every scan instead of returning a verdict.
        engine_version: String returned by :meth:`version`.
    """

    mode = TransportMode.MOCK

    def __init__(
        self,
        signatures: dict[bytes, str] | None = None,
        error: Exception | None = None,
        engine_version: str = "ClamAV 1.0.0/27000/Mon Jan  1 00:00:00 2024",
    ) -> None:
        self._signatures = {EICAR_MARKER: EICAR_SIGNATURE, **(signatures or {})}
        self._error = error
        self._engine_version = engine_version
        self._lock = threading.Lock()
        self.scanned: list[bytes] = []
        self.reloads = 0

    def scan_spool(self, path: Path, token: CancelToken | None = None) -> Verdict:
        if token is not None:
            token.raise_if_cancelled()
        if self._error is not None:
            raise self._error
        data = Path(path).read_bytes()
        with self._lock:
            self.scanned.append(data)
        threats = [name for marker, name in self._signatures.items() if marker in data]
        if threats:
            return Verdict.found(threats, raw_note=f"stream: {threats[0]} FOUND")
        return Verdict.clean(raw_note="stream: OK")

    def ping(self) -> bool:
        return self._error is None

    def version(self) -> str:
        return self._engine_version

    def reload(self) -> None:
        self.reloads += 1
