"""Tests for ScanOrchestrator: concurrency, cleanup, fallback and errors."""

from __future__ import annotations

import hashlib
import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from clamav_gateway.cancellation import CancelToken
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    ExecutionError,
    InputError,
    PayloadTooLargeError,
    PersistenceError,
    ScanCancelledError,
    ScanTimeoutError,
)
from clamav_gateway.mock import MockTransport
from clamav_gateway.models import ClientContext, TransportMode, Verdict
from clamav_gateway.orchestrator import ScanOrchestrator
from clamav_gateway.recorder import InMemoryRecorder
from clamav_gateway.transport import DaemonTransport, LocalProcessTransport


class BlockingTransport:
    """Holds every scan until its token is cancelled or expires."""

    mode = TransportMode.DAEMON

    def __init__(self) -> None:
        self.started = threading.Event()
        self.stopped = threading.Event()

    def scan_spool(self, path: Path, token: CancelToken | None = None) -> Verdict:
        assert token is not None
        self.started.set()
        try:
            while not token.wait(0.01):
                if token.expired:
                    break
            token.raise_if_cancelled()
            raise AssertionError("unreachable")
        finally:
            self.stopped.set()

    def ping(self) -> bool:
        return True

    def version(self) -> str:
        return "ClamAV 1.0.0"

    def reload(self) -> None:
        pass


class FailingRecorder(InMemoryRecorder):
    def persist_scan(self, record):
        raise RuntimeError("database is down")


@pytest.fixture()
def spool_dir(tmp_path: Path) -> Path:
    path = tmp_path / "spool"
    path.mkdir()
    return path


@pytest.fixture()
def recorder() -> InMemoryRecorder:
    return InMemoryRecorder()


@pytest.fixture()
def orchestrator(recorder: InMemoryRecorder, spool_dir: Path):
    with ScanOrchestrator(MockTransport(), recorder, spool_dir=spool_dir) as orch:
        yield orch


class TestScan:
    def test_clean_record(self, orchestrator, recorder, spool_dir, sample_bytes: bytes):
        client = ClientContext(client_ip="10.0.0.1", user_agent="curl/8.0")
        record = orchestrator.scan(sample_bytes, len(sample_bytes), "hello.txt", client=client)

        assert record.filename == "hello.txt"
        assert record.byte_length == len(sample_bytes)
        assert record.verdict.infected is False
        assert record.digests.sha256 == hashlib.sha256(sample_bytes).hexdigest()
        assert record.digests.md5 == hashlib.md5(sample_bytes).hexdigest()
        assert record.client_context == client
        assert record.transport is TransportMode.MOCK
        assert recorder.list_scans() == [record]
        assert list(spool_dir.iterdir()) == []

    def test_eicar(self, orchestrator, eicar_bytes: bytes):
        record = orchestrator.scan(io.BytesIO(eicar_bytes), None, "eicar.com")
        assert record.verdict.infected is True
        assert record.verdict.threat_names == ("Eicar-Test-Signature",)

    def test_zero_bytes(self, orchestrator):
        record = orchestrator.scan(b"", 0, "empty")
        assert record.byte_length == 0
        assert record.digests.sha256 == hashlib.sha256(b"").hexdigest()
        assert record.verdict.infected is False

    def test_same_bytes_same_digests(self, orchestrator, sample_bytes: bytes):
        first = orchestrator.scan(sample_bytes, None, "a")
        second = orchestrator.scan(io.BytesIO(sample_bytes), None, "b")
        assert first.digests == second.digests
        assert first.verdict.infected == second.verdict.infected

    def test_actual_size_wins_over_declared(self, orchestrator, sample_bytes: bytes):
        record = orchestrator.scan(sample_bytes, 3, "liar.txt")
        assert record.byte_length == len(sample_bytes)


class TestLimits:
    def test_declared_size_rejected_before_reading(self, recorder, spool_dir):
        source = io.BytesIO(b"x" * 100)
        with ScanOrchestrator(MockTransport(), recorder, max_bytes=10, spool_dir=spool_dir) as orch:
            with pytest.raises(PayloadTooLargeError):
                orch.scan(source, 100, "big.bin")
        assert source.tell() == 0
        assert recorder.list_scans() == []

    def test_actual_size_rejected(self, recorder, spool_dir):
        with ScanOrchestrator(MockTransport(), recorder, max_bytes=10, spool_dir=spool_dir) as orch:
            with pytest.raises(PayloadTooLargeError):
                orch.scan(io.BytesIO(b"x" * 100), None, "big.bin")
        assert list(spool_dir.iterdir()) == []
        assert recorder.list_scans() == []

    def test_negative_declared_size(self, orchestrator):
        with pytest.raises(InputError):
            orchestrator.scan(b"x", -1, "neg")

    def test_exactly_at_limit(self, recorder, spool_dir):
        with ScanOrchestrator(MockTransport(), recorder, max_bytes=10, spool_dir=spool_dir) as orch:
            record = orch.scan(b"x" * 10, 10, "ten")
        assert record.byte_length == 10


class TestFailures:
    def test_transport_error_propagates_and_cleans_up(self, recorder, spool_dir, sample_bytes: bytes):
        transport = MockTransport(error=ExecutionError("clamscan exited with status 2"))
        with ScanOrchestrator(transport, recorder, spool_dir=spool_dir) as orch:
            with pytest.raises(ExecutionError):
                orch.scan(sample_bytes, None, "x")
        assert list(spool_dir.iterdir()) == []
        assert recorder.list_scans() == []

    def test_persistence_error_carries_record(self, spool_dir, sample_bytes: bytes):
        with ScanOrchestrator(MockTransport(), FailingRecorder(), spool_dir=spool_dir) as orch:
            with pytest.raises(PersistenceError) as exc_info:
                orch.scan(sample_bytes, None, "x")
        record = exc_info.value.record
        assert record is not None
        assert record.verdict.infected is False
        assert record.digests.sha256 == hashlib.sha256(sample_bytes).hexdigest()

    def test_timeout_stops_both_branches(self, recorder, spool_dir, sample_bytes: bytes):
        transport = BlockingTransport()
        with ScanOrchestrator(transport, recorder, spool_dir=spool_dir) as orch:
            with pytest.raises(ScanTimeoutError):
                orch.scan(sample_bytes, None, "slow", timeout=0.2)
        assert transport.stopped.is_set()
        assert list(spool_dir.iterdir()) == []
        assert recorder.list_scans() == []

    def test_cancel_token(self, recorder, spool_dir, sample_bytes: bytes):
        transport = BlockingTransport()
        token = CancelToken()
        with ScanOrchestrator(transport, recorder, spool_dir=spool_dir) as orch:
            def cancel_when_started() -> None:
                transport.started.wait(5)
                token.cancel()

            threading.Thread(target=cancel_when_started).start()
            with pytest.raises(ScanCancelledError):
                orch.scan(sample_bytes, None, "x", token=token)
        assert transport.stopped.is_set()
        assert list(spool_dir.iterdir()) == []

    def test_cancel_stops_daemon_wait(self, fake_clamd, recorder, spool_dir, sample_bytes: bytes):
        fake_clamd.delay = 4.0
        token = CancelToken()
        daemon = DaemonTransport("127.0.0.1", fake_clamd.port)
        threading.Timer(0.3, token.cancel).start()
        started = time.monotonic()
        with ScanOrchestrator(daemon, recorder, spool_dir=spool_dir) as orch:
            with pytest.raises(ScanCancelledError):
                orch.scan(sample_bytes, None, "x", token=token)
        assert time.monotonic() - started < 1.5
        assert list(spool_dir.iterdir()) == []
        assert orch.metrics.snapshot().failed_scans == 1


class TestFallback:
    def test_daemon_down_uses_local_scanner(
        self, closed_port: int, fake_clamscan: str, recorder, spool_dir, eicar_bytes: bytes
    ):
        daemon = DaemonTransport("127.0.0.1", closed_port)
        local = LocalProcessTransport(fake_clamscan)
        with ScanOrchestrator(daemon, recorder, fallback=local, spool_dir=spool_dir) as orch:
            record = orch.scan(eicar_bytes, None, "eicar.com")
        assert record.transport is TransportMode.LOCAL_PROCESS
        assert record.verdict.infected is True

    def test_empty_upload_on_local_scanner(self, closed_port: int, make_script, recorder, spool_dir):
        exe = make_script("clamscan", 'for last; do :; done\necho "$last: Empty file"\nexit 0')
        daemon = DaemonTransport("127.0.0.1", closed_port)
        local = LocalProcessTransport(exe)
        with ScanOrchestrator(daemon, recorder, fallback=local, spool_dir=spool_dir) as orch:
            record = orch.scan(b"", 0, "empty")
        assert record.transport is TransportMode.LOCAL_PROCESS
        assert record.verdict.infected is False
        assert record.byte_length == 0

    def test_no_fallback_configured(self, closed_port: int, recorder, spool_dir, sample_bytes: bytes):
        daemon = DaemonTransport("127.0.0.1", closed_port)
        with ScanOrchestrator(daemon, recorder, spool_dir=spool_dir) as orch:
            with pytest.raises(DaemonConnectionError):
                orch.scan(sample_bytes, None, "x")

    def test_daemon_used_when_reachable(self, fake_clamd, fake_clamscan: str, recorder, sample_bytes: bytes):
        daemon = DaemonTransport("127.0.0.1", fake_clamd.port)
        local = LocalProcessTransport(fake_clamscan)
        with ScanOrchestrator(daemon, recorder, fallback=local) as orch:
            record = orch.scan(sample_bytes, None, "x")
        assert record.transport is TransportMode.DAEMON
        assert fake_clamd.streams == [sample_bytes]


class TestConcurrency:
    def test_parallel_scans_keep_inputs_apart(self, fake_clamd, recorder, spool_dir, eicar_bytes: bytes):
        payloads = [f"payload {i}".encode() * (i + 1) for i in range(12)]
        payloads[5] = eicar_bytes
        daemon = DaemonTransport("127.0.0.1", fake_clamd.port)

        with ScanOrchestrator(daemon, recorder, spool_dir=spool_dir, max_workers=8) as orch:
            with ThreadPoolExecutor(max_workers=4) as pool:
                records = list(pool.map(lambda p: orch.scan(p[1], None, f"f{p[0]}"), enumerate(payloads)))

        for i, (payload, record) in enumerate(zip(payloads, records)):
            assert record.filename == f"f{i}"
            assert record.digests.sha256 == hashlib.sha256(payload).hexdigest()
            assert record.verdict.infected is (i == 5)
        assert len(recorder.list_scans()) == len(payloads)
        assert sorted(fake_clamd.streams) == sorted(payloads)
        assert list(spool_dir.iterdir()) == []


class TestMetrics:
    def test_counts_verdicts_and_failures(self, recorder, spool_dir, sample_bytes: bytes, eicar_bytes: bytes):
        transport = MockTransport()
        with ScanOrchestrator(transport, recorder, spool_dir=spool_dir) as orch:
            orch.scan(sample_bytes, None, "a")
            orch.scan(eicar_bytes, None, "b")
            with pytest.raises(PayloadTooLargeError):
                orch.scan(b"x" * 10, 10**12, "declared-too-big")
        snapshot = orch.metrics.snapshot()
        assert snapshot.files_scanned == 2
        assert snapshot.clean_files == 1
        assert snapshot.infected_files == 1
        assert snapshot.bytes_scanned == len(sample_bytes) + len(eicar_bytes)
        assert snapshot.average_file_size == round((len(sample_bytes) + len(eicar_bytes)) / 2)
        assert snapshot.infection_rate == 0.5
        assert snapshot.failed_scans == 0

    def test_transport_failure_counted(self, recorder, spool_dir, sample_bytes: bytes):
        transport = MockTransport(error=ExecutionError("boom"))
        with ScanOrchestrator(transport, recorder, spool_dir=spool_dir) as orch:
            with pytest.raises(ExecutionError):
                orch.scan(sample_bytes, None, "x")
        snapshot = orch.metrics.snapshot()
        assert snapshot.failed_scans == 1
        assert snapshot.files_scanned == 0
        assert snapshot.infection_rate == 0.0

    def test_parallel_updates(self, recorder, spool_dir):
        with ScanOrchestrator(MockTransport(), recorder, spool_dir=spool_dir) as orch:
            with ThreadPoolExecutor(max_workers=4) as pool:
                list(pool.map(lambda i: orch.scan(b"z" * i, None, f"f{i}"), range(1, 21)))
        snapshot = orch.metrics.snapshot()
        assert snapshot.files_scanned == 20
        assert snapshot.bytes_scanned == sum(range(1, 21))
