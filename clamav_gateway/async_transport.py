"""Asynchronous scan transports built on asyncio streams and subprocesses."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import BinaryIO, Protocol, Union

from clamav_gateway import protocol
from clamav_gateway.exceptions import (
    DaemonConnectionError,
    ExecutionError,
    ProtocolError,
    ScanTimeoutError,
)
from clamav_gateway.models import TransportMode, Verdict

logger = logging.getLogger(__name__)


class AsyncScanTransport(Protocol):
    """Async counterpart of :class:`~clamav_gateway.transport.ScanTransport`.

    Cancellation is delivered by cancelling the awaiting task.
    """

    mode: TransportMode

    async def scan_spool(self, path: Path) -> Verdict: ...

    async def ping(self) -> bool: ...

    async def version(self) -> str: ...


class AsyncDaemonTransport:
    """Streams bytes to ``clamd`` with ``INSTREAM`` over asyncio streams.

    Args:
        host: clamd TCP host, used when *socket_path* is *None*.
        port: clamd TCP port.
        socket_path: Path to clamd's unix socket; takes precedence over TCP.
        timeout: Budget in seconds for each connect, drain and read.
        chunk_size: Bytes per ``INSTREAM`` chunk (1 KiB to 1 MiB).

    Example::

        daemon = AsyncDaemonTransport("localhost", 3310)
        verdict = await daemon.scan_spool(Path("/tmp/upload.bin"))
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

    async def scan_stream(self, stream: BinaryIO, size_hint: int | None = None) -> Verdict:
        """Stream *stream* to clamd; each chunk is drained before the next read.

        Raises:
            DaemonConnectionError: If clamd is unreachable or drops the connection.
            ScanTimeoutError: If any step exceeds the budget.
            ProtocolError: If the reply is neither ``OK`` nor ``FOUND``.
        """
        logger.debug("INSTREAM to %s (size_hint=%s)", self.address, size_hint)
        reader, writer = await self._connect()
        try:
            await self._send(writer, protocol.CMD_INSTREAM)
            while True:
                chunk = stream.read(self._chunk_size)
                if not chunk:
                    break
                await self._send(writer, protocol.frame(chunk))
            await self._send(writer, protocol.END_OF_STREAM)
            raw = await asyncio.wait_for(reader.read(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ScanTimeoutError(f"clamd at {self.address} timed out") from exc
        except (BrokenPipeError, ConnectionResetError) as exc:
            raw = await _read_pending(reader, self._timeout)
            if not raw:
                raise DaemonConnectionError(f"clamd at {self.address} dropped the connection: {exc}") from exc
        except OSError as exc:
            raise DaemonConnectionError(f"clamd at {self.address} dropped the connection: {exc}") from exc
        finally:
            await _close(writer)

        return protocol.parse_response(raw.decode("utf-8", "replace"))

    async def scan_spool(self, path: Path) -> Verdict:
        with open(path, "rb") as fh:
            return await self.scan_stream(fh, path.stat().st_size)

    async def ping(self) -> bool:
        try:
            return await self._command(protocol.CMD_PING) == "PONG"
        except (DaemonConnectionError, ScanTimeoutError):
            return False

    async def version(self) -> str:
        reply = await self._command(protocol.CMD_VERSION)
        if not reply:
            raise ProtocolError("empty VERSION response from clamd")
        return reply

    async def reload(self) -> None:
        reply = await self._command(protocol.CMD_RELOAD)
        if reply != "RELOADING":
            raise ProtocolError(f"unexpected RELOAD response: {reply!r}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _connect(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            if self._socket_path is not None:
                opener = asyncio.open_unix_connection(self._socket_path)
            else:
                opener = asyncio.open_connection(self._host, self._port)
            return await asyncio.wait_for(opener, self._timeout)
        except asyncio.TimeoutError as exc:
            raise ScanTimeoutError(f"connecting to clamd at {self.address} timed out") from exc
        except OSError as exc:
            raise DaemonConnectionError(f"cannot reach clamd at {self.address}: {exc}") from exc

    async def _send(self, writer: asyncio.StreamWriter, data: bytes) -> None:
        writer.write(data)
        await asyncio.wait_for(writer.drain(), self._timeout)

    async def _command(self, command: bytes) -> str:
        reader, writer = await self._connect()
        try:
            await self._send(writer, command)
            raw = await asyncio.wait_for(reader.read(), self._timeout)
        except asyncio.TimeoutError as exc:
            raise ScanTimeoutError(f"clamd at {self.address} timed out") from exc
        except OSError as exc:
            raise DaemonConnectionError(str(exc)) from exc
        finally:
            await _close(writer)
        return raw.decode("utf-8", "replace").strip()


class AsyncLocalProcessTransport:
    """Runs ``clamscan`` as an asyncio subprocess.

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

    async def scan_path(self, path: Union[str, Path]) -> Verdict:
        """Scan the file at *path*; exit 1 with ``FOUND`` output is an infected verdict.

        Raises:
            ExecutionError: For any other non-zero exit or a missing executable.
            ScanTimeoutError: If the process exceeds its budget (it is killed).
        """
        returncode, output = await self._run(
            self._executable, "--no-summary", "--stdout", *self._extra_args, str(path)
        )
        return protocol.parse_clamscan(self._executable, returncode, output)

    async def scan_spool(self, path: Path) -> Verdict:
        return await self.scan_path(path)

    async def ping(self) -> bool:
        return shutil.which(self._executable) is not None

    async def version(self) -> str:
        returncode, output = await self._run(self._executable, "--version")
        if returncode != 0:
            raise ExecutionError(f"{self._executable} --version exited with status {returncode}")
        return output.strip()

    async def reload(self) -> None:
        """No-op: every clamscan run loads the databases from disk."""

    async def _run(self, *cmd: str) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ExecutionError(f"cannot run {cmd[0]}: {exc}") from exc

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError as exc:
            await _kill(proc)
            raise ScanTimeoutError(f"{cmd[0]} exceeded {self._timeout}s") from exc
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        assert proc.returncode is not None
        return proc.returncode, stdout.decode("utf-8", "replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        proc.kill()
    await proc.wait()


async def _read_pending(reader: asyncio.StreamReader, timeout: float) -> bytes:
    try:
        return await asyncio.wait_for(reader.read(), timeout)
    except (OSError, asyncio.TimeoutError):
        return b""


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as exc:
        logger.debug("error closing clamd connection: %s", exc)
