"""
Unit tests for archive digests (sbackup/backup/hashing.py).
"""

import hashlib
from concurrent.futures import ThreadPoolExecutor

import pytest

from sbackup.backup import hashing
from sbackup.backup.hashing import calc_hash, compute_digest, HashError


class TestCalcHash:
    """Test calc_hash function."""

    def test_matches_sha256(self, tmp_path):
        path = tmp_path / 'archive.tar.zst'
        data = b'backup archive bytes' * 1000
        path.write_bytes(data)

        assert calc_hash(str(path)) == hashlib.sha256(data).hexdigest()

    def test_spans_several_read_chunks(self, tmp_path, monkeypatch):
        monkeypatch.setattr(hashing, 'READ_CHUNK_SIZE', 7)
        path = tmp_path / 'archive.tar.zst'
        data = bytes(range(256)) * 3
        path.write_bytes(data)

        assert calc_hash(str(path)) == hashlib.sha256(data).hexdigest()

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'empty.tar.zst'
        path.write_bytes(b'')

        assert calc_hash(str(path)) == hashlib.sha256(b'').hexdigest()

    def test_missing_file(self, tmp_path):
        with pytest.raises(HashError, match="Failed to hash"):
            calc_hash(str(tmp_path / 'missing.tar.zst'))

    def test_digest_is_lowercase_hex(self, tmp_path):
        path = tmp_path / 'archive.tar.zst'
        path.write_bytes(b'data')

        digest = calc_hash(str(path))

        assert len(digest) == 64
        assert digest == digest.lower()


class TestComputeDigest:
    """Test compute_digest coroutine."""

    @pytest.mark.asyncio
    async def test_default_executor(self, tmp_path):
        path = tmp_path / 'archive.tar.zst'
        path.write_bytes(b'data')

        assert await compute_digest(str(path)) == hashlib.sha256(b'data').hexdigest()

    @pytest.mark.asyncio
    async def test_explicit_executor(self, tmp_path):
        path = tmp_path / 'archive.tar.zst'
        path.write_bytes(b'data')

        with ThreadPoolExecutor(max_workers=1) as executor:
            digest = await compute_digest(str(path), executor)

        assert digest == hashlib.sha256(b'data').hexdigest()

    @pytest.mark.asyncio
    async def test_errors_propagate(self, tmp_path):
        with pytest.raises(HashError):
            await compute_digest(str(tmp_path / 'missing.tar.zst'))
