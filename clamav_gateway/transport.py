"""Synchronous scan transports: clamd daemon streaming and local ``clamscan``."""

from __future__ import annotations

import logging
import shutil
import socket
import subprocess
from pathlib import Path
from typing import BinaryIO, Protocol, Union

from clamav_gateway import protocol
from clamav_gateway.cancellation import CancelToken
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    ExecutionError,
    ProtocolError,
    ScanTimeoutError,
)
from clamav_gateway.models import TransportMode, Verdict

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1
_RECV_SLICE = 0.1


class ScanTransport(Protocol):
    """Delivers spooled bytes to the engine and returns its verdict."""

    mode: TransportMode

    def scan_spool(self, path: Path, token: CancelToken | None = None) -> Verdict:
        """Scan the file at *path*."""

    def ping(self) -> bool:
        """Return ``True`` if the engine is reachable through this transport."""

    def version(self) -> str:
        """Return the engine's raw version string."""

    def reload(self) -> None:
        """Make the engine pick up freshly downloaded signatures."""


class DaemonTransport:
    """Streams bytes to a running ``clamd`` with the ``INSTREAM`` command.

    A fresh connection is opened per call; clamd closes it after each reply.

    Args:
        host: clamd TCP host, used when *socket_path* is *None*.
        port: clamd TCP port.
        socket_path: Path to clamd's unix socket; takes precedence over TCP.
        timeout: Connect/read/write budget in seconds.
        chunk_size: Bytes per ``INSTREAM`` chunk (1 KiB to 1 MiB).

    Example::

        daemon = DaemonTransport("localhost", 3310)
        with open("sample.bin", "rb") as fh:
            verdict = daemon.scan_stream(fh)
        print(verdict.infected, verdict.threat_names)
    """

    mode = TransportMode.DAEMON

    def __init__(
        self,
        host: str = "localhost",
        port: int = 3310,
        socket_path: str | None = None,
        timeout: float = 30,
        chunk_size: int = 64 * 1024,
    ) -> None:
        self._host = host
        self._port = port
        self._socket_path = socket_path
        self._timeout = timeout
        self._chunk_size = protocol.check_chunk_size(chunk_size)

    @property
    def address(self) -> str:
        return self._socket_path or f"{self._host}:{self._port}"

    def scan_stream(
        self,
        stream: BinaryIO,
        size_hint: int | None = None,
        *,
        token: CancelToken | None = None,
    ) -> Verdict:
        """Stream *stream* to clamd and interpret the reply.

        Args:
            stream: Readable binary stream, consumed to EOF.
            size_hint: Expected byte count, used for logging only.
            token: Optional cancellation token checked between chunks; its
                deadline also bounds the socket timeout.

        Returns:
            A :class:`Verdict` with every reported threat name.

        Raises:
            DaemonConnectionError: If clamd is unreachable or drops the connection.
            ScanTimeoutError: If any socket operation exceeds the budget.
            ProtocolError: If the reply is neither ``OK`` nor ``FOUND``.
            PayloadTooLargeError: If clamd rejects the stream size.
        """
        logger.debug("INSTREAM to %s (size_hint=%s)", self.address, size_hint)
        sent = 0
        with self._connect(token) as sock:
            try:
                sock.sendall(protocol.CMD_INSTREAM)
                while True:
                    if token is not None:
                        token.raise_if_cancelled()
                        sock.settimeout(token.bound(self._timeout))
                    chunk = stream.read(self._chunk_size)
                    if not chunk:
                        break
                    sock.sendall(protocol.frame(chunk))
                    sent += len(chunk)
                sock.sendall(protocol.END_OF_STREAM)
                raw = self._recv_reply(sock, token)
            except socket.timeout as exc:
                raise ScanTimeoutError(f"clamd at {self.address} timed out") from exc
            except (BrokenPipeError, ConnectionResetError) as exc:
                # clamd replies and hangs up early, e.g. on its stream size limit.
                raw = _recv_pending(sock)
                if not raw:
                    raise DaemonConnectionError(
                        f"clamd at {self.address} dropped the connection: {exc}"
                    ) from exc
            except OSError as exc:
                raise DaemonConnectionError(f"clamd at {self.address} dropped the connection: {exc}") from exc

        verdict = protocol.parse_response(raw)
        logger.debug("clamd verdict for %d bytes: %s", sent, verdict.raw_note)
        return verdict

    def scan_spool(self, path: Path, token: CancelToken | None = None) -> Verdict:
        with open(path, "rb") as fh:
            return self.scan_stream(fh, path.stat().st_size, token=token)

    def ping(self) -> bool:
        """Send ``PING``; return ``True`` on ``PONG`` and ``False`` on any failure."""
        try:
            return self._command(protocol.CMD_PING) == "PONG"
        except (DaemonConnectionError, ScanTimeoutError):
            return False

    def version(self) -> str:
        """Return the raw ``VERSION`` reply, e.g. ``ClamAV 1.0.2/27000/Tue Aug 22 07:53:13 2023``."""
        reply = self._command(protocol.CMD_VERSION)
        if not reply:
            raise ProtocolError("empty VERSION response from clamd")
        return reply

    def reload(self) -> None:
        """Ask clamd to reload its signature databases."""
        reply = self._command(protocol.CMD_RELOAD)
        if reply != "RELOADING":
            raise ProtocolError(f"unexpected RELOAD response: {reply!r}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _connect(self, token: CancelToken | None = None) -> socket.socket:
        timeout = self._timeout if token is None else token.bound(self._timeout)
        try:
            if self._socket_path is not None:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                sock.settimeout(timeout)
                try:
                    sock.connect(self._socket_path)
                except BaseException:
                    sock.close()
                    raise
            else:
                sock = socket.create_connection((self._host, self._port), timeout=timeout)
                sock.settimeout(timeout)
        except socket.timeout as exc:
            raise ScanTimeoutError(f"connecting to clamd at {self.address} timed out") from exc
        except OSError as exc:
            raise DaemonConnectionError(f"cannot reach clamd at {self.address}: {exc}") from exc
        return sock

    def _recv_reply(self, sock: socket.socket, token: CancelToken | None) -> str:
        if token is None:
            return _recv_all(sock)
        # Short reads so a cancel is seen while clamd is still scanning.
        budget = CancelToken(self._timeout)
        buf = bytearray()
        while True:
            token.raise_if_cancelled()
            if budget.expired:
                raise socket.timeout("timed out waiting for reply")
            sock.settimeout(min(_RECV_SLICE, token.bound(budget.remaining() or 0.0)))
            try:
                chunk = sock.recv(4096)
            except socket.timeout:
                continue
            if not chunk:
                break
            buf.extend(chunk)
        return buf.decode("utf-8", "replace")

    def _command(self, command: bytes) -> str:
        with self._connect() as sock:
            try:
                sock.sendall(command)
                return _recv_all(sock).strip()
            except socket.timeout as exc:
                raise ScanTimeoutError(f"clamd at {self.address} timed out") from exc
            except OSError as exc:
                raise DaemonConnectionError(str(exc)) from exc


class LocalProcessTransport:
    """Runs a local ``clamscan`` executable against a file path.

    Args:
        executable: Scanner executable name or path.
        timeout: Process budget in seconds.
        extra_args: Additional command-line arguments.
    """

    mode = TransportMode.LOCAL_PROCESS

    def __init__(
        self,
        executable: str = "clamscan",
        timeout: float = 120,
        extra_args: tuple[str, ...] = (),
    ) -> None:
        self._executable = executable
        self._timeout = timeout
        self._extra_args = tuple(extra_args)

    def scan_path(self, path: Union[str, Path], *, token: CancelToken | None = None) -> Verdict:
        """Scan the file at *path*.

        Exit status 1 together with ``FOUND`` output is a successful scan with
        an infected verdict, not a failure.

        Raises:
            ExecutionError: If the process cannot start, exits with any other
                status, or exits 1 without reporting a threat.
            ScanTimeoutError: If the process exceeds its budget (it is killed).
            ScanCancelledError: If *token* is cancelled (the process is killed).
        """
        cmd = [self._executable, "--no-summary", "--stdout", *self._extra_args, str(path)]
        returncode, output = self._run(cmd, token)

        verdict = protocol.parse_clamscan(self._executable, returncode, output)
        logger.debug("%s verdict for %s: %s", self._executable, path, verdict.raw_note)
        return verdict

    def scan_spool(self, path: Path, token: CancelToken | None = None) -> Verdict:
        return self.scan_path(path, token=token)

    def ping(self) -> bool:
        return shutil.which(self._executable) is not None

    def version(self) -> str:
        returncode, output = self._run([self._executable, "--version"], None)
        if returncode != 0:
            raise ExecutionError(f"{self._executable} --version exited with status {returncode}")
        return output.strip()

    def reload(self) -> None:
        """No-op: every clamscan run loads the databases from disk."""

    def _run(self, cmd: list[str], token: CancelToken | None) -> tuple[int, str]:
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            raise ExecutionError(f"cannot run {cmd[0]}: {exc}") from exc

        budget = CancelToken(self._timeout)
        while True:
            try:
                output, _ = proc.communicate(timeout=_POLL_INTERVAL)
                return proc.returncode, output
            except subprocess.TimeoutExpired:
                pass
            if token is not None and (token.cancelled or token.expired):
                _kill(proc)
                token.raise_if_cancelled()
            if budget.expired:
                _kill(proc)
                raise ScanTimeoutError(f"{cmd[0]} exceeded {self._timeout}s")


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.communicate()


def _recv_all(sock: socket.socket) -> str:
    buf = bytearray()
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            break
        buf.extend(chunk)
    return buf.decode("utf-8", "replace")


def _recv_pending(sock: socket.socket) -> str:
    try:
        return _recv_all(sock)
    except OSError:
        return ""
