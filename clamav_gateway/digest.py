"""Single-pass multi-algorithm content digests."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO, Union

from clamav_gateway.cancellation import CancelToken
from clamav_gateway.models import Digests

DEFAULT_CHUNK_SIZE = 64 * 1024


def compute_digests(
    stream: BinaryIO,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    token: CancelToken | None = None,
) -> Digests:
    """Hash *stream* with MD5, SHA-1 and SHA-256 in one pass.

    Every chunk is fed to all three accumulators before the next read, so a
    short read or truncated stream shows up identically in each digest.

    Args:
        stream: Readable binary stream; consumed to EOF.
        chunk_size: Read size in bytes.
        token: Optional cancellation token checked between chunks.

    Returns:
        The :class:`Digests` of the bytes read.

    Raises:
        OSError: If the stream cannot be read to the end.
        ScanCancelledError: If *token* is cancelled mid-read.
    """
    md5 = hashlib.md5()
    sha1 = hashlib.sha1()
    sha256 = hashlib.sha256()
    while True:
        if token is not None:
            token.raise_if_cancelled()
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        for acc in (md5, sha1, sha256):
            acc.update(chunk)
    return Digests(md5=md5.hexdigest(), sha1=sha1.hexdigest(), sha256=sha256.hexdigest())


def digest_file(
    path: Union[str, Path],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    token: CancelToken | None = None,
) -> Digests:
    """Open an independent read handle on *path* and digest it."""
    with open(path, "rb") as fh:
        return compute_digests(fh, chunk_size=chunk_size, token=token)
