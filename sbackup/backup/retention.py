"""
Retention policy enforcement for backups.

Keeps at most `keep` generations of each job in the object store. The
store lists paths lexicographically, and artifact names of one job share a
stable prefix followed by a fixed-width timestamp, so listing order is
chronological order (oldest first).
"""

import logging
from typing import Iterable, List, Optional

from .naming import ArtifactName, DecodeError, PREFIX, job_listing_prefix
from .storage import RemoteEntry


def select_for_removal(entries: Iterable[RemoteEntry], job_name: str, keep_count: int) -> List[str]:
    """
    Choose which artifacts of a job to delete.

    The artifact uploaded in the current cycle is the implicit survivor and
    must not be part of entries; the newest keep_count - 1 listed artifacts
    are kept beside it and everything older is returned.

    Args:
        entries: Listing in store order (oldest first)
        job_name: Job whose artifacts are considered
        keep_count: Generations to keep, including the new upload

    Returns:
        Paths to delete, newest first

    Raises:
        ValueError: If keep_count is less than 1
    """
    if keep_count < 1:
        raise ValueError(f"keep_count must be at least 1, got {keep_count}")

    matching = []
    for entry in entries:
        if not entry.is_file:
            continue
        filename = entry.path.rsplit('/', 1)[-1]
        try:
            name = ArtifactName.from_filename(filename)
        except DecodeError:
            continue
        if name.prefix == PREFIX and name.job_name == job_name:
            matching.append(entry.path)

    newest_first = list(reversed(matching))
    return newest_first[keep_count - 1:]


class RetentionManager:
    """
    Manages retention policy enforcement for backup jobs.

    Lists the job's artifacts fresh on every call and deletes the ones
    beyond the configured keep count in a single batch.
    """

    def __init__(self, storage, logger: Optional[logging.Logger] = None):
        """
        Initialize retention manager.

        Args:
            storage: Object store (S3Storage or LocalStorage)
            logger: Logger (default: module logger)
        """
        self.storage = storage
        self.logger = logger or logging.getLogger(__name__)

    def find_expired(self, job_name: str, keep_count: int, exclude: Iterable[str] = ()) -> List[str]:
        """
        List the job's artifacts and select the expired ones.

        Args:
            job_name: Name of the backup job
            keep_count: Generations to keep
            exclude: Paths that survive regardless (the artifact just uploaded)

        Returns:
            Paths to delete

        Raises:
            StorageError: If listing fails
        """
        excluded = set(exclude)
        entries = [
            entry for entry in self.storage.list(job_listing_prefix(job_name))
            if entry.path not in excluded
        ]
        return select_for_removal(entries, job_name, keep_count)

    def enforce_job_policy(self, job_name: str, keep_count: int, exclude: Iterable[str] = ()) -> List[str]:
        """
        Enforce retention policy for a specific job.

        Args:
            job_name: Name of the backup job
            keep_count: Generations to keep
            exclude: Paths that survive regardless (the artifact just uploaded)

        Returns:
            Paths that were deleted

        Raises:
            StorageError: If listing or deletion fails
        """
        to_remove = self.find_expired(job_name, keep_count, exclude)

        if not to_remove:
            self.logger.debug("Retention for %s: nothing to remove (keep=%d)", job_name, keep_count)
            return []

        self.storage.delete(to_remove)
        self.logger.info("Removed %d old backups of %s: %s", len(to_remove), job_name, to_remove)
        return to_remove
