"""
Archive creation with an external tar process.

Archives are zstd-compressed tarballs of a source directory, with entries
stored relative to the source directory itself.

Exit status policy:
- 0: success
- 1: success (tar reports "file changed as we read it" this way, the
  archive is still usable)
- anything else: CompressionError
"""

import asyncio
import logging
import os
from typing import List, Optional, Sequence


TOLERATED_EXIT_CODES = (0, 1)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


class TarArchiver:
    """
    Produces a compressed archive of a directory tree by running tar.

    The child's stderr is drained line by line while the process runs, so
    a chatty tar can never block on a full pipe.
    """

    def __init__(self, executable: str = 'tar', logger: Optional[logging.Logger] = None):
        """
        Initialize archiver.

        Args:
            executable: tar binary to run (must support --zstd)
            logger: Logger for diagnostics (default: module logger)
        """
        self.executable = executable
        self.logger = logger or logging.getLogger(__name__)

    def build_command(self, source_path: str, output_path: str, exclude_patterns: Sequence[str]) -> List[str]:
        """
        Build the argument vector for one archive run.

        The process is started with source_path as its working directory.

        Args:
            source_path: Directory to archive
            output_path: Archive file to write
            exclude_patterns: tar --exclude patterns, in order

        Returns:
            Command argument list
        """
        args = [self.executable, '--zstd', '-cf', output_path]
        args.extend(f"--exclude={pattern}" for pattern in exclude_patterns)
        args.append('.')
        return args

    async def create_archive(
        self,
        source_path: str,
        output_path: str,
        exclude_patterns: Sequence[str] = ()
    ) -> str:
        """
        Create a compressed archive of source_path at output_path.

        Args:
            source_path: Directory to archive
            output_path: Archive file to write
            exclude_patterns: Patterns to exclude

        Returns:
            output_path

        Raises:
            CompressionError: If the archiver cannot run or exits with an
                untolerated status
        """
        if not os.path.isdir(source_path):
            raise CompressionError(f"Source path is not a directory: {source_path}")

        command = self.build_command(source_path, output_path, exclude_patterns)
        self.logger.debug("Running archiver: %s (cwd=%s)", ' '.join(command), source_path)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=source_path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CompressionError(f"Failed to start archiver {command[0]!r}: {e}")

        try:
            _, returncode = await asyncio.gather(
                self._drain_diagnostics(process.stderr),
                process.wait(),
            )
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if returncode not in TOLERATED_EXIT_CODES:
            raise CompressionError(f"Archiver exited with status {returncode}")

        if returncode != 0:
            self.logger.warning(
                "Archiver exited with status %d, treating archive as complete", returncode
            )

        if not os.path.exists(output_path):
            raise CompressionError(f"Archiver did not produce {output_path}")

        return output_path

    async def _drain_diagnostics(self, stream: asyncio.StreamReader):
        """Forward every stderr line from the archiver to the logger."""
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors='replace').rstrip()
            if text:
                self.logger.warning("archiver: %s", text)


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def format_size(size_bytes: int) -> str:
    """Format a byte count with decimal units, e.g. '1.50 MB'."""
    size = float(size_bytes)
    for unit in ('B', 'kB', 'MB', 'GB', 'TB'):
        if size < 1000 or unit == 'TB':
            break
        size /= 1000
    if unit == 'B':
        return f"{int(size)} B"
    return f"{size:.2f} {unit}"
