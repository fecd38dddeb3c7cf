"""
Backup executor - orchestrates one backup cycle of a job.

Workflow:
1. Create a scoped temporary directory
2. Compress the source directory with tar + zstd
3. Hash the archive on a worker thread
4. Rename the archive to its canonical name
5. Stream the archive to the object store (commit, or abort on error)
6. Prune old generations of the job
7. Remove the temporary directory (always)

A failing stage ends the cycle; later stages do not run. Every failure is
returned as a BackupCycleResult and never raised to the caller.
"""

import asyncio
import enum
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from sbackup.config import JobConfig
from .compression import TarArchiver, get_archive_size, format_size
from .hashing import compute_digest
from .naming import generate_archive_filename
from .retention import RetentionManager
from .storage import StorageError, DEFAULT_BUFFER_SIZE


TEMP_ARCHIVE_NAME = 'sbackup_tmp.tar.zst'


class UploadError(StorageError):
    """Raised when an archive upload fails (nothing is left visible)."""
    pass


class PruneError(StorageError):
    """Raised when old generations could not be removed."""
    pass


class Stage(enum.Enum):
    COMPRESSING = 'compressing'
    HASHING = 'hashing'
    RENAMING = 'renaming'
    UPLOADING = 'uploading'
    PRUNING = 'pruning'
    DONE = 'done'


@dataclass
class BackupCycleResult:
    """Outcome of one backup cycle."""

    job_name: str
    success: bool
    stage: Stage
    uploaded_path: Optional[str] = None
    error: Optional[BaseException] = None
    archive_size: Optional[int] = None
    deleted_paths: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    duration: float = 0.0
    logs: List[str] = field(default_factory=list)


class BackupExecutor:
    """
    Runs backup cycles of one job against a shared object store.

    The store handle is shared by all jobs; its blocking calls run on worker
    threads so concurrent jobs keep progressing.
    """

    def __init__(
        self,
        job: JobConfig,
        storage,
        archiver: Optional[TarArchiver] = None,
        logger: Optional[logging.Logger] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE
    ):
        """
        Initialize backup executor.

        Args:
            job: Job to back up
            storage: Object store (S3Storage or LocalStorage)
            archiver: Archiver producing the compressed tarball
            logger: Logger (default: module logger)
            buffer_size: Upload chunk size in bytes
        """
        self.job = job
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)
        self.archiver = archiver or TarArchiver(logger=self.logger)
        self.retention = RetentionManager(storage, logger=self.logger)
        self.buffer_size = buffer_size
        self.stage = None
        self.logs = []

    async def execute(self) -> BackupCycleResult:
        """
        Run one backup cycle.

        Returns:
            BackupCycleResult; failures are reported in it, not raised.
            Cancellation is not a failure and propagates.
        """
        self.stage = Stage.COMPRESSING
        self.logs = []
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        result = BackupCycleResult(
            job_name=self.job.name,
            success=False,
            stage=Stage.COMPRESSING,
            started_at=started_at,
        )

        self._log(logging.INFO, f"Starting backup job: {self.job.name}")

        try:
            with tempfile.TemporaryDirectory(prefix='sbackup_') as temp_dir:
                await self._execute_workflow(temp_dir, result)
            result.success = True
            self._log(
                logging.INFO,
                f"Backup completed successfully in {time.monotonic() - start:.1f}s"
            )
        except Exception as e:
            result.error = e
            self._log(
                logging.ERROR,
                f"Backup failed at stage {self.stage.value}: {type(e).__name__}: {e}"
            )

        result.stage = self.stage
        result.duration = time.monotonic() - start
        result.logs = list(self.logs)
        return result

    async def _execute_workflow(self, temp_dir: str, result: BackupCycleResult):
        """Execute the backup stages in order."""
        self.stage = Stage.COMPRESSING
        temp_archive = os.path.join(temp_dir, TEMP_ARCHIVE_NAME)
        await self.archiver.create_archive(
            self.job.source_path,
            temp_archive,
            self.job.exclude_patterns
        )
        result.archive_size = get_archive_size(temp_archive)
        self._log(logging.INFO, f"Compressed {self.job.source_path} ({format_size(result.archive_size)})")

        self.stage = Stage.HASHING
        digest = await compute_digest(temp_archive)
        self._log(logging.DEBUG, f"Archive hash: {digest}")

        self.stage = Stage.RENAMING
        filename = generate_archive_filename(self.job.name, digest)
        archive_path = os.path.join(temp_dir, filename)
        os.rename(temp_archive, archive_path)

        self.stage = Stage.UPLOADING
        await self._upload(archive_path, filename)
        result.uploaded_path = filename
        self._log(logging.INFO, f"Uploaded {filename}")

        self.stage = Stage.PRUNING
        result.deleted_paths = await self._prune(filename)

        self.stage = Stage.DONE

    async def _upload(self, archive_path: str, remote_path: str):
        """
        Stream the archive to the store.

        Raises:
            UploadError: If any write or the commit fails; the upload is
                aborted first
        """
        try:
            writer = self.storage.writer(remote_path, self.buffer_size)
        except StorageError as e:
            raise UploadError(f"Failed to open upload for {remote_path}: {e}")

        try:
            with open(archive_path, 'rb') as f:
                while True:
                    chunk = await self._settled(f.read, self.buffer_size)
                    if not chunk:
                        break
                    await self._settled(writer.write, chunk)
            await self._settled(writer.commit)
        except BaseException as e:
            await self._discard_upload(writer, remote_path)
            if isinstance(e, Exception) and not isinstance(e, UploadError):
                raise UploadError(f"Upload of {remote_path} failed: {e}") from e
            raise

    async def _settled(self, func, *args):
        """
        Run a blocking call on a worker thread.

        Cancelling the caller does not stop the thread, so on cancellation
        the call is waited for before CancelledError propagates. Nothing
        touches the sink while a call on it is still running.
        """
        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                self._log(logging.DEBUG, f"Interrupted call failed: {future.exception()}")
            raise

    async def _discard_upload(self, writer, remote_path: str):
        """Abort an unfinished upload, or delete the object if its commit already went through."""
        try:
            if writer.committed:
                await asyncio.to_thread(self.storage.delete, [remote_path])
                self._log(logging.WARNING, f"Removed {remote_path} committed by an aborted cycle")
            else:
                await asyncio.to_thread(writer.abort)
        except Exception as e:
            self._log(logging.WARNING, f"Failed to discard upload of {remote_path}: {e}")

    async def _prune(self, uploaded_path: str) -> List[str]:
        """
        Remove generations beyond the keep count.

        Raises:
            PruneError: If listing or deleting fails
        """
        try:
            deleted = await asyncio.to_thread(
                self.retention.enforce_job_policy,
                self.job.name,
                self.job.keep_count,
                (uploaded_path,)
            )
        except StorageError as e:
            raise PruneError(f"Failed to prune old backups of {self.job.name}: {e}") from e

        if deleted:
            self._log(logging.INFO, f"Removed {len(deleted)} old backups")
        return deleted

    def _log(self, level: int, message: str):
        """
        Log a message and keep a timestamped copy for the cycle result.

        Args:
            level: logging level
            message: Log message
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        self.logger.log(level, "[%s] %s", self.job.name, message)
