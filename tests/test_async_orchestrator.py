"""Tests for AsyncScanOrchestrator."""

from __future__ import annotations

import asyncio
import hashlib
import io
from pathlib import Path

import pytest

from clamav_gateway.async_orchestrator import AsyncScanOrchestrator
from clamav_gateway.async_recorder import AsyncInMemoryRecorder
from clamav_gateway.async_transport import AsyncDaemonTransport, AsyncLocalProcessTransport
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    PayloadTooLargeError,
    PersistenceError,
    ScanTimeoutError,
)
from clamav_gateway.models import TransportMode, Verdict


class HangingTransport:
    mode = TransportMode.DAEMON

    def __init__(self) -> None:
        self.cancelled = False

    async def scan_spool(self, path: Path) -> Verdict:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return Verdict.clean()

    async def ping(self) -> bool:
        return True

    async def version(self) -> str:
        return "ClamAV 1.0.0"


class BrokenRecorder(AsyncInMemoryRecorder):
    async def persist_scan(self, record):
        raise RuntimeError("database is down")


@pytest.fixture()
def spool_dir(tmp_path: Path) -> Path:
    path = tmp_path / "spool"
    path.mkdir()
    return path


class TestAsyncScan:
    async def test_daemon_scan(self, fake_clamd, spool_dir, eicar_bytes: bytes):
        recorder = AsyncInMemoryRecorder()
        orch = AsyncScanOrchestrator(
            AsyncDaemonTransport("127.0.0.1", fake_clamd.port), recorder, spool_dir=spool_dir
        )
        record = await orch.scan(io.BytesIO(eicar_bytes), len(eicar_bytes), "eicar.com")
        assert record.verdict.infected is True
        assert record.digests.sha1 == hashlib.sha1(eicar_bytes).hexdigest()
        assert await recorder.list_scans() == [record]
        assert list(spool_dir.iterdir()) == []

    async def test_declared_size_too_large(self, spool_dir):
        recorder = AsyncInMemoryRecorder()
        orch = AsyncScanOrchestrator(HangingTransport(), recorder, max_bytes=4, spool_dir=spool_dir)
        with pytest.raises(PayloadTooLargeError):
            await orch.scan(b"12345", 5, "x")
        assert await recorder.list_scans() == []

    async def test_timeout_cancels_scan(self, spool_dir, sample_bytes: bytes):
        transport = HangingTransport()
        orch = AsyncScanOrchestrator(transport, AsyncInMemoryRecorder(), spool_dir=spool_dir)
        with pytest.raises(ScanTimeoutError):
            await orch.scan(sample_bytes, None, "x", timeout=0.2)
        assert transport.cancelled is True
        assert list(spool_dir.iterdir()) == []

    async def test_caller_cancel(self, spool_dir, sample_bytes: bytes):
        transport = HangingTransport()
        orch = AsyncScanOrchestrator(transport, AsyncInMemoryRecorder(), spool_dir=spool_dir)
        task = asyncio.ensure_future(orch.scan(sample_bytes, None, "x"))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert transport.cancelled is True
        assert list(spool_dir.iterdir()) == []

    async def test_fallback(self, closed_port: int, fake_clamscan: str, spool_dir, sample_bytes: bytes):
        orch = AsyncScanOrchestrator(
            AsyncDaemonTransport("127.0.0.1", closed_port),
            AsyncInMemoryRecorder(),
            fallback=AsyncLocalProcessTransport(fake_clamscan),
            spool_dir=spool_dir,
        )
        record = await orch.scan(sample_bytes, None, "x")
        assert record.transport is TransportMode.LOCAL_PROCESS
        assert record.verdict.infected is False

    async def test_no_fallback(self, closed_port: int, spool_dir, sample_bytes: bytes):
        orch = AsyncScanOrchestrator(
            AsyncDaemonTransport("127.0.0.1", closed_port), AsyncInMemoryRecorder(), spool_dir=spool_dir
        )
        with pytest.raises(DaemonConnectionError):
            await orch.scan(sample_bytes, None, "x")
        assert list(spool_dir.iterdir()) == []

    async def test_persistence_error(self, fake_clamd, spool_dir, sample_bytes: bytes):
        orch = AsyncScanOrchestrator(
            AsyncDaemonTransport("127.0.0.1", fake_clamd.port), BrokenRecorder(), spool_dir=spool_dir
        )
        with pytest.raises(PersistenceError) as exc_info:
            await orch.scan(sample_bytes, None, "x")
        assert exc_info.value.record is not None
        assert exc_info.value.record.byte_length == len(sample_bytes)
