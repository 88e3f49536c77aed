"""Data models for scan verdicts, provenance records and signature status."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransportMode(str, Enum):
    """How bytes reach the engine."""

    DAEMON = "daemon"
    LOCAL_PROCESS = "local_process"
    MOCK = "mock"


class UpdateStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass(frozen=True, slots=True)
class Digests:
    """Content digests of one scanned byte sequence.

    Attributes:
        md5: Hex MD5 digest.
        sha1: Hex SHA-1 digest.
        sha256: Hex SHA-256 digest.
    """

    md5: str
    sha1: str
    sha256: str

    def as_dict(self) -> dict[str, str]:
        return {"md5": self.md5, "sha1": self.sha1, "sha256": self.sha256}


@dataclass(frozen=True, slots=True)
class Verdict:
    """Clean/infected classification of one byte sequence.

    Attributes:
        infected: ``True`` when the engine reported at least one threat.
        threat_names: Threat names in the order the engine reported them.
            Empty if and only if *infected* is ``False``.
        raw_note: Raw engine response, kept for audit.
    """

    infected: bool
    threat_names: tuple[str, ...] = ()
    raw_note: str | None = None

    def __post_init__(self) -> None:
        if self.infected and not self.threat_names:
            raise ValueError("an infected verdict needs at least one threat name")
        if not self.infected and self.threat_names:
            raise ValueError("a clean verdict cannot carry threat names")

    @classmethod
    def clean(cls, raw_note: str | None = None) -> Verdict:
        return cls(infected=False, raw_note=raw_note)

    @classmethod
    def found(cls, threat_names: list[str] | tuple[str, ...], raw_note: str | None = None) -> Verdict:
        return cls(infected=True, threat_names=tuple(threat_names), raw_note=raw_note)


@dataclass(frozen=True, slots=True)
class ClientContext:
    """Where an upload came from. Both fields are optional."""

    client_ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True, slots=True)
class ScanRecord:
    """Write-once provenance record of a finished scan.

    Attributes:
        filename: Name declared by the uploader.
        byte_length: Number of bytes actually spooled, digested and scanned.
        digests: Content digests of those bytes.
        verdict: Final engine verdict.
        timestamp: When the verdict became final (UTC).
        client_context: Upload origin metadata.
        transport: Transport that produced the verdict.
    """

    filename: str
    byte_length: int
    digests: Digests
    verdict: Verdict
    timestamp: datetime = field(default_factory=utcnow)
    client_context: ClientContext = field(default_factory=ClientContext)
    transport: TransportMode = TransportMode.DAEMON


@dataclass(frozen=True, slots=True)
class DatabaseInfo:
    """One signature database as reported by ``sigtool --info``.

    Attributes:
        name: File name, e.g. ``"daily.cld"``.
        signature_count: Number of signatures, ``None`` if not reported.
        version: Database version number.
        build_time: Build time string exactly as the engine printed it.
    """

    name: str
    signature_count: int | None = None
    version: int | None = None
    build_time: str | None = None


@dataclass(frozen=True, slots=True)
class SignatureSnapshot:
    """The engine's signature-database identity at one point in time.

    Attributes:
        engine_version: Engine release, e.g. ``"1.0.2"``.
        database_version: Version of the newest loaded database (the middle
            field of the ``VERSION`` reply), if reported.
        databases: Per-database breakdown; empty when the engine only reports
            an aggregate.
        total_signatures: Total signature count, ``None`` when unknown.
        last_update: Database build time as reported by the engine.
        observed_at: When the snapshot was taken (UTC).
    """

    engine_version: str
    database_version: int | None = None
    databases: tuple[DatabaseInfo, ...] = ()
    total_signatures: int | None = None
    last_update: str | None = None
    observed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.total_signatures is None or not self.databases:
            return
        if any(db.signature_count is None for db in self.databases):
            return
        counted = sum(db.signature_count or 0 for db in self.databases)
        if counted != self.total_signatures:
            raise ValueError(
                f"per-database counts sum to {counted}, not total_signatures={self.total_signatures}"
            )


@dataclass(frozen=True, slots=True)
class DatabaseUpdate:
    """Per-database outcome of one ``freshclam`` run."""

    name: str
    version: int | None = None
    signature_count: int | None = None
    updated: bool = False


@dataclass(frozen=True, slots=True)
class UpdateEvent:
    """Append-only record of one signature update cycle.

    Attributes:
        status: ``SUCCESS`` or ``FAILED``.
        detail: Human-readable outcome or failure reason.
        databases: Per-database results parsed from the updater's output.
        before: Snapshot taken before the update, ``None`` if unobtainable.
        after: Snapshot taken after the update, ``None`` if unobtainable.
        output: Raw updater output.
        observed_at: When the cycle completed (UTC).
    """

    status: UpdateStatus
    detail: str
    databases: tuple[DatabaseUpdate, ...] = ()
    before: SignatureSnapshot | None = None
    after: SignatureSnapshot | None = None
    output: str = ""
    observed_at: datetime = field(default_factory=utcnow)

    @property
    def new_signatures(self) -> int | None:
        if self.before is None or self.after is None:
            return None
        if self.before.total_signatures is None or self.after.total_signatures is None:
            return None
        return max(0, self.after.total_signatures - self.before.total_signatures)


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    """Operational counters of one orchestrator since it was created.

    Attributes:
        files_scanned: Scans that reached a verdict.
        clean_files: Verdicts that were clean.
        infected_files: Verdicts that were infected.
        failed_scans: Scans that ended in an error before a verdict.
        bytes_scanned: Total size of every file that reached a verdict.
        uptime_seconds: Seconds since the counters started.
    """

    files_scanned: int = 0
    clean_files: int = 0
    infected_files: int = 0
    failed_scans: int = 0
    bytes_scanned: int = 0
    uptime_seconds: float = 0.0

    @property
    def average_file_size(self) -> int:
        if not self.files_scanned:
            return 0
        return round(self.bytes_scanned / self.files_scanned)

    @property
    def infection_rate(self) -> float:
        """Share of verdicts that were infected, from 0.0 to 1.0."""
        if not self.files_scanned:
            return 0.0
        return self.infected_files / self.files_scanned


@dataclass(frozen=True, slots=True)
class HealthReport:
    """Engine readiness as seen through the active transport."""

    healthy: bool
    transport: TransportMode
    engine_version: str | None = None
    error: str | None = None
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Outcome of one file in a batch scan: a record, an error, or both.

    A :class:`PersistenceError` leaves both set: the verdict was reached but
    could not be stored.
    """

    name: str
    record: ScanRecord | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
