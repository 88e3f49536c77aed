"""Scoped temporary on-disk copy of an upload."""

from __future__ import annotations

import asyncio
import io
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

from clamav_gateway.exceptions import InputError, PayloadTooLargeError

logger = logging.getLogger(__name__)

ByteSource = Union[bytes, BinaryIO]


@dataclass(frozen=True, slots=True)
class Spool:
    """A spooled upload.

    Attributes:
        path: Location of the uniquely named temporary file.
        size: Number of bytes written.
    """

    path: Path
    size: int


@contextmanager
def spooled(
    source: ByteSource,
    *,
    max_bytes: int,
    directory: Union[str, Path, None] = None,
    chunk_size: int = 64 * 1024,
) -> Iterator[Spool]:
    """Copy *source* into a temporary file and remove it on exit.

    The file is deleted on every exit path, including exceptions raised while
    copying or inside the ``with`` block.

    Args:
        source: Raw bytes or a readable binary stream (consumed once).
        max_bytes: Hard cap on bytes copied, independent of any declared size.
        directory: Spool directory; the system temp dir when *None*.
        chunk_size: Copy buffer size.

    Raises:
        PayloadTooLargeError: If *source* yields more than *max_bytes*.
        InputError: If *source* cannot be read.
    """
    fd, path = _create(directory)
    try:
        size = _copy(source, fd, max_bytes, chunk_size)
        logger.debug("spooled %d bytes to %s", size, path)
        yield Spool(path=path, size=size)
    finally:
        path.unlink(missing_ok=True)


@asynccontextmanager
async def async_spooled(
    source: ByteSource,
    *,
    max_bytes: int,
    directory: Union[str, Path, None] = None,
    chunk_size: int = 64 * 1024,
) -> AsyncIterator[Spool]:
    """Async variant of :func:`spooled`; the copy runs in a worker thread."""
    fd, path = _create(directory)
    try:
        size = await asyncio.to_thread(_copy, source, fd, max_bytes, chunk_size)
        logger.debug("spooled %d bytes to %s", size, path)
        yield Spool(path=path, size=size)
    finally:
        path.unlink(missing_ok=True)


def _create(directory: Union[str, Path, None]) -> tuple[int, Path]:
    fd, name = tempfile.mkstemp(prefix="scan-", suffix=".spool", dir=directory)
    return fd, Path(name)


def _copy(source: ByteSource, fd: int, max_bytes: int, chunk_size: int) -> int:
    """Copy *source* into the open descriptor *fd* (which this closes)."""
    stream: BinaryIO = io.BytesIO(source) if isinstance(source, bytes) else source
    size = 0
    with os.fdopen(fd, "wb") as out:
        while True:
            try:
                chunk = stream.read(chunk_size)
            except OSError as exc:
                raise InputError(f"cannot read upload: {exc}") from exc
            if not chunk:
                break
            size += len(chunk)
            if size > max_bytes:
                raise PayloadTooLargeError(f"upload exceeds the {max_bytes} byte limit")
            out.write(chunk)
    return size
