"""
Archive naming for uploaded backups.

Every artifact carries its own identity in its filename:

    backup-{job_name}-{timestamp}-{hash_suffix}.tar.zst

The timestamp uses the ISO-8601 basic format (YYYYMMDDTHHMMSSZ), which is
fixed width and free of the field delimiter, so names of one job sort
chronologically and always split into exactly four fields.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


PREFIX = 'backup'
EXTENSION = '.tar.zst'
DELIMITER = '-'
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'
HASH_SUFFIX_LENGTH = 7
TIMESTAMP_LENGTH = 16  # e.g. 20240115T120000Z

_FIELD_COUNT = 4


class DecodeError(ValueError):
    """Raised when a filename is not a valid artifact name."""
    pass


class BadExtensionError(DecodeError):
    """Raised when a filename lacks the archive extension."""
    pass


class MalformedFieldsError(DecodeError):
    """Raised when a filename does not split into the expected fields."""
    pass


def format_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Format a moment as a fixed-width UTC timestamp.

    Args:
        moment: Time to format (default: now). Naive values are taken as UTC.

    Returns:
        Timestamp string such as '20240115T120000Z'
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse a timestamp produced by format_timestamp().

    Raises:
        ValueError: If value is not a fixed-width UTC timestamp
    """
    if len(value) != TIMESTAMP_LENGTH:
        raise ValueError(f"Timestamp must be {TIMESTAMP_LENGTH} characters: {value!r}")
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def hash_suffix(digest: str) -> str:
    """
    Derive the short name suffix from a hex content digest.

    Args:
        digest: Hex digest string

    Returns:
        The trailing HASH_SUFFIX_LENGTH characters of the digest

    Raises:
        ValueError: If the digest is shorter than the suffix
    """
    if len(digest) < HASH_SUFFIX_LENGTH:
        raise ValueError(f"Digest too short for hash suffix: {digest!r}")
    return digest[-HASH_SUFFIX_LENGTH:].lower()


@dataclass(frozen=True)
class ArtifactName:
    """Decoded form of an artifact filename."""

    job_name: str
    timestamp: str = field(default_factory=format_timestamp)
    hash_suffix: str = '0' * HASH_SUFFIX_LENGTH
    prefix: str = PREFIX
    extension: str = EXTENSION

    def to_filename(self) -> str:
        return (
            f"{self.prefix}{DELIMITER}{self.job_name}{DELIMITER}"
            f"{self.timestamp}{DELIMITER}{self.hash_suffix}{self.extension}"
        )

    def __str__(self) -> str:
        return self.to_filename()

    @classmethod
    def from_filename(cls, filename: str) -> 'ArtifactName':
        """
        Decode an artifact filename.

        Args:
            filename: Bare filename (no directory part)

        Returns:
            ArtifactName with the decoded fields

        Raises:
            BadExtensionError: If the filename does not end with EXTENSION
            MalformedFieldsError: If the stem does not have exactly four fields
                or the timestamp field does not parse
        """
        if not filename.endswith(EXTENSION):
            raise BadExtensionError(f"Not an archive filename: {filename}")

        stem = filename[:-len(EXTENSION)]
        fields = stem.split(DELIMITER)
        if len(fields) != _FIELD_COUNT:
            raise MalformedFieldsError(
                f"Expected {_FIELD_COUNT} fields in {filename!r}, got {len(fields)}"
            )

        prefix, job_name, timestamp, suffix = fields
        try:
            parse_timestamp(timestamp)
        except ValueError:
            raise MalformedFieldsError(f"Invalid timestamp {timestamp!r} in {filename!r}")

        return cls(
            job_name=job_name,
            timestamp=timestamp,
            hash_suffix=suffix,
            prefix=prefix,
        )


def generate_archive_filename(job_name: str, digest: str, moment: Optional[datetime] = None) -> str:
    """
    Build the canonical filename for a freshly produced archive.

    Args:
        job_name: Name of the backup job
        digest: Hex content digest of the archive
        moment: Creation time (default: now)

    Returns:
        Encoded filename
    """
    name = ArtifactName(
        job_name=job_name,
        timestamp=format_timestamp(moment),
        hash_suffix=hash_suffix(digest),
    )
    return name.to_filename()


def job_listing_prefix(job_name: str) -> str:
    """Filename prefix shared by every artifact of one job."""
    return f"{PREFIX}{DELIMITER}{job_name}{DELIMITER}"
