"""clamd wire-format helpers shared by the sync and async transports."""

from __future__ import annotations

import re
import struct

from clamav_gateway.exceptions import ExecutionError, PayloadTooLargeError, ProtocolError
from clamav_gateway.models import Verdict

# ``n`` prefix: newline-terminated command, newline-delimited reply.
CMD_INSTREAM = b"nINSTREAM\n"
CMD_PING = b"nPING\n"
CMD_VERSION = b"nVERSION\n"
CMD_RELOAD = b"nRELOAD\n"

END_OF_STREAM = struct.pack("!I", 0)

MIN_CHUNK_SIZE = 1024
MAX_CHUNK_SIZE = 1024 * 1024

_FOUND = "FOUND"
_OK = "OK"
_ERROR = "ERROR"

# clamscan exit statuses
_EXIT_CLEAN = 0
_EXIT_FOUND = 1

# ClamAV 1.0.2/27000/Tue Aug 22 07:53:13 2023
_VERSION_RE = re.compile(r"^ClamAV\s+(?P<engine>[^/\s]+)(?:/(?P<db>\d+)(?:/(?P<date>.+))?)?$")


def frame(chunk: bytes) -> bytes:
    """Prefix *chunk* with its 4-byte big-endian length."""
    return struct.pack("!I", len(chunk)) + chunk


def check_chunk_size(chunk_size: int) -> int:
    if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(
            f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} bytes, got {chunk_size}"
        )
    return chunk_size


def threat_name(line: str) -> str:
    """Extract the threat name between the last ``:`` and the ``FOUND`` token."""
    head = line[: line.rindex(_FOUND)]
    return head.rsplit(":", 1)[-1].strip()


def parse_response(raw: str, *, tolerate_noise: bool = False) -> Verdict:
    """Interpret a scan reply from clamd or ``clamscan``.

    Every line carrying a ``FOUND`` token contributes one threat name, in
    order, so archive members reported on separate lines are all kept. Without
    any ``FOUND`` line, an ``OK`` token means clean.

    Args:
        raw: Reply text.
        tolerate_noise: Skip lines that are not a result, such as the
            ``LibClamAV Warning`` lines ``clamscan`` interleaves with its
            output. Daemon replies are parsed strictly.

    Raises:
        PayloadTooLargeError: If the daemon rejected the stream size.
        ProtocolError: For empty, ``ERROR`` or unrecognised replies.
    """
    lines = [ln.strip().strip("\0").strip() for ln in raw.splitlines()]
    lines = [ln for ln in lines if ln]
    if not lines:
        raise ProtocolError("empty response from engine")

    threats: list[str] = []
    clean = False
    for line in lines:
        tokens = line.split()
        if _FOUND in tokens:
            name = threat_name(line)
            if not name:
                raise ProtocolError(f"FOUND without a threat name: {line!r}")
            threats.append(name)
        elif _OK in tokens:
            clean = True
        elif "size limit exceeded" in line.lower():
            raise PayloadTooLargeError(line)
        elif _ERROR in tokens:
            raise ProtocolError(f"engine error: {line}")
        elif not tolerate_noise:
            raise ProtocolError(f"unrecognised engine response line: {line!r}")

    note = "\n".join(lines)
    if threats:
        return Verdict.found(threats, raw_note=note)
    if clean:
        return Verdict.clean(raw_note=note)
    raise ProtocolError(f"unrecognised engine response: {note!r}")


def parse_clamscan(executable: str, returncode: int, output: str) -> Verdict:
    """Map a finished ``clamscan`` run to a verdict.

    Exit status 0 is clean whatever the output says (an empty file prints
    ``Empty file`` rather than ``OK``). Exit status 1 with ``FOUND`` lines is an
    infected verdict, not a failure.

    Raises:
        ExecutionError: For any other exit status, or exit 1 without a threat.
    """
    if returncode == _EXIT_CLEAN:
        return Verdict.clean(raw_note=output.strip() or None)
    if returncode == _EXIT_FOUND and _FOUND in output:
        return parse_response(output, tolerate_noise=True)
    raise ExecutionError(f"{executable} exited with status {returncode}: {output.strip()}")


def parse_version(raw: str) -> tuple[str, int | None, str | None]:
    """Split a ``VERSION`` reply into engine version, database version and build date.

    Raises:
        ProtocolError: If *raw* does not look like a ClamAV version string.
    """
    match = _VERSION_RE.match(raw.strip())
    if match is None:
        raise ProtocolError(f"unrecognised version string: {raw!r}")
    db = match.group("db")
    date = match.group("date")
    return match.group("engine"), int(db) if db else None, date.strip() if date else None
