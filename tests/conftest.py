"""Shared test fixtures: payloads, an in-process fake clamd and fake executables."""

from __future__ import annotations

import socketserver
import stat
import struct
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

EICAR = b"X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"
VERSION_REPLY = "ClamAV 1.0.2/27000/Tue Aug 22 07:53:13 2023"


@pytest.fixture()
def sample_bytes() -> bytes:
    return b"Hello, ClamAV!"


@pytest.fixture()
def eicar_bytes() -> bytes:
    """EICAR anti-malware test string (safe; every AV recognises it)."""
    return EICAR


# ------------------------------------------------------------------ #
# Fake clamd
# ------------------------------------------------------------------ #


def default_reply(data: bytes) -> str:
    if b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE" in data:
        return "stream: Eicar-Test-Signature FOUND\n"
    return "stream: OK\n"


class FakeClamd(socketserver.ThreadingTCPServer):
    """In-process server speaking enough of the clamd protocol for tests."""

    daemon_threads = True
    allow_reuse_address = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _ClamdHandler)
        self.reply: Callable[[bytes], str] = default_reply
        self.commands: list[bytes] = []
        self.streams: list[bytes] = []
        self.frames: list[list[int]] = []
        self.delay = 0.0
        self.max_stream: int | None = None
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self.server_address[1]


class _ClamdHandler(socketserver.StreamRequestHandler):
    server: FakeClamd

    def handle(self) -> None:
        command = self.rfile.readline()
        with self.server._lock:
            self.server.commands.append(command)
        if command == b"nPING\n":
            self.wfile.write(b"PONG\n")
        elif command == b"nVERSION\n":
            self.wfile.write(VERSION_REPLY.encode() + b"\n")
        elif command == b"nRELOAD\n":
            self.wfile.write(b"RELOADING\n")
        elif command == b"nINSTREAM\n":
            self._instream()
        else:
            self.wfile.write(b"UNKNOWN COMMAND\n")

    def _instream(self) -> None:
        data = bytearray()
        sizes: list[int] = []
        while True:
            header = self.rfile.read(4)
            if len(header) < 4:
                return
            (size,) = struct.unpack("!I", header)
            sizes.append(size)
            if size == 0:
                break
            data.extend(self.rfile.read(size))
        if self.server.max_stream is not None and len(data) > self.server.max_stream:
            self.wfile.write(b"INSTREAM size limit exceeded. ERROR\n")
            return
        with self.server._lock:
            self.server.streams.append(bytes(data))
            self.server.frames.append(sizes)
        if self.server.delay:
            threading.Event().wait(self.server.delay)
        self.wfile.write(self.server.reply(bytes(data)).encode())


@pytest.fixture()
def fake_clamd() -> Iterator[FakeClamd]:
    server = FakeClamd()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield server
    finally:
        server.shutdown()
        server.server_close()


@pytest.fixture()
def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    server = socketserver.TCPServer(("127.0.0.1", 0), socketserver.BaseRequestHandler)
    port = server.server_address[1]
    server.server_close()
    return port


# ------------------------------------------------------------------ #
# Fake executables
# ------------------------------------------------------------------ #


@pytest.fixture()
def make_script(tmp_path: Path) -> Callable[[str, str], str]:
    """Write an executable ``/bin/sh`` script and return its path."""

    def _make(name: str, body: str) -> str:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture()
def fake_clamscan(make_script: Callable[[str, str], str]) -> str:
    """A clamscan stand-in: exit 1 with FOUND for EICAR, exit 0 with OK otherwise."""
    return make_script(
        "clamscan",
        'if [ "$1" = "--version" ]; then echo "' + VERSION_REPLY + '"; exit 0; fi\n'
        'for last; do :; done\n'
        'if grep -q "EICAR-STANDARD-ANTIVIRUS-TEST-FILE" "$last"; then\n'
        '  echo "$last: Eicar-Test-Signature FOUND"; exit 1\n'
        "fi\n"
        'echo "$last: OK"; exit 0',
    )
