"""Tests for single-pass digest computation."""

from __future__ import annotations

import hashlib
import io

import pytest

from clamav_gateway.cancellation import CancelToken
from clamav_gateway.digest import compute_digests, digest_file
from clamav_gateway.exceptions import ScanCancelledError


def _reference(data: bytes) -> dict[str, str]:
    return {
        "md5": hashlib.md5(data).hexdigest(),
        "sha1": hashlib.sha1(data).hexdigest(),
        "sha256": hashlib.sha256(data).hexdigest(),
    }


class TestComputeDigests:
    @pytest.mark.parametrize("data", [b"", b"a", b"Hello, ClamAV!", bytes(range(256)) * 1000])
    def test_matches_reference(self, data: bytes):
        assert compute_digests(io.BytesIO(data), chunk_size=1024).as_dict() == _reference(data)

    def test_chunk_size_irrelevant(self, sample_bytes: bytes):
        a = compute_digests(io.BytesIO(sample_bytes), chunk_size=1)
        b = compute_digests(io.BytesIO(sample_bytes), chunk_size=1 << 20)
        assert a == b

    def test_cancelled(self, sample_bytes: bytes):
        token = CancelToken()
        token.cancel()
        with pytest.raises(ScanCancelledError):
            compute_digests(io.BytesIO(sample_bytes), token=token)

    def test_read_error_propagates(self):
        class Broken(io.RawIOBase):
            def readable(self) -> bool:
                return True

            def read(self, size: int = -1) -> bytes:
                raise OSError("disk gone")

        with pytest.raises(OSError, match="disk gone"):
            compute_digests(Broken())  # type: ignore[arg-type]


class TestDigestFile:
    def test_file(self, tmp_path, eicar_bytes: bytes):
        f = tmp_path / "eicar.com"
        f.write_bytes(eicar_bytes)
        assert digest_file(f).as_dict() == _reference(eicar_bytes)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            digest_file(tmp_path / "nope")
