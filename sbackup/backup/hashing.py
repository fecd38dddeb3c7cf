"""
Content digests for archives.

Digests only name artifacts; nothing reads them back for verification.
Hashing is CPU-bound, so compute_digest() runs it on a worker thread and
keeps the event loop free.
"""

import asyncio
import hashlib
import mmap
import os
from concurrent.futures import Executor
from typing import Optional


READ_CHUNK_SIZE = 1024 * 1024


class HashError(Exception):
    """Raised when an archive digest cannot be computed."""
    pass


def calc_hash(path: str) -> str:
    """
    Compute the SHA-256 hex digest of a file.

    Large files are memory-mapped; empty files (which cannot be mapped)
    hash to the digest of no data.

    Args:
        path: File to hash

    Returns:
        Lowercase hex digest

    Raises:
        HashError: If the file cannot be read
    """
    hasher = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            if os.fstat(f.fileno()).st_size == 0:
                return hasher.hexdigest()
            with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mapped:
                for offset in range(0, len(mapped), READ_CHUNK_SIZE):
                    hasher.update(mapped[offset:offset + READ_CHUNK_SIZE])
    except (OSError, ValueError) as e:
        raise HashError(f"Failed to hash {path}: {e}")
    return hasher.hexdigest()


async def compute_digest(path: str, executor: Optional[Executor] = None) -> str:
    """
    Compute a file digest off the event loop.

    Args:
        path: File to hash
        executor: Executor to run on (default: the loop's thread pool)

    Returns:
        Lowercase hex digest

    Raises:
        HashError: If hashing fails
    """
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, calc_hash, path)
