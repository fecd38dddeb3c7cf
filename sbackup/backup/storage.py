"""
Object store backends for backup archives.

Supports:
- S3Storage: AWS S3 or any S3-compatible endpoint
- LocalStorage: a directory on the local filesystem

Both expose the same operations: list(), writer(), delete() and
test_connection(). Every path is relative to the configured root prefix,
which is applied the same way for listing and writing.

Writers are streaming sinks with an explicit commit()/abort(). Nothing is
visible at the destination path until commit() succeeds, and abort()
guarantees nothing is left there.
"""

import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import boto3
from botocore.exceptions import ClientError, BotoCoreError


DEFAULT_ROOT = '/backup'
DEFAULT_BUFFER_SIZE = 8 * 1024 * 1024

# S3 rejects multipart parts smaller than this, except the last one
MIN_PART_SIZE = 5 * 1024 * 1024

# delete_objects accepts at most this many keys per request
DELETE_BATCH_SIZE = 1000


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


@dataclass(frozen=True)
class RemoteEntry:
    """One listed object, with its path relative to the storage root."""

    path: str
    size_bytes: int = 0
    is_file: bool = True


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3UploadSink:
    """
    Streaming writer for one S3 object.

    Data is buffered up to buffer_size and shipped as multipart upload
    parts. An object smaller than one buffer is sent with a single
    put_object on commit, so no upload is ever started for it.

    Calls are serialized, so abort() issued from another thread waits for
    an in-flight part upload and then discards it.
    """

    def __init__(self, client, bucket_name: str, key: str, buffer_size: int):
        self.client = client
        self.bucket_name = bucket_name
        self.key = key
        self.buffer_size = buffer_size
        self.upload_id = None
        self.parts = []
        self.closed = False
        self.committed = False
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise StorageError(f"Writer for {self.key} is already closed")

            self._buffer.extend(data)
            while len(self._buffer) >= self.buffer_size:
                chunk = bytes(self._buffer[:self.buffer_size])
                del self._buffer[:self.buffer_size]
                self._upload_part(chunk)
            return len(data)

    def _upload_part(self, data: bytes):
        try:
            if self.upload_id is None:
                response = self.client.create_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=self.key
                )
                self.upload_id = response['UploadId']

            part_number = len(self.parts) + 1
            response = self.client.upload_part(
                Bucket=self.bucket_name,
                Key=self.key,
                PartNumber=part_number,
                UploadId=self.upload_id,
                Body=data
            )
            self.parts.append({
                'PartNumber': part_number,
                'ETag': response['ETag']
            })
        except ClientError as e:
            raise StorageError(f"S3 part upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 part upload failed: {e}")

    def commit(self):
        """Finalize the object and make it visible."""
        with self._lock:
            if self.closed:
                raise StorageError(f"Writer for {self.key} is already closed")

            try:
                if self.upload_id is None:
                    self.client.put_object(
                        Bucket=self.bucket_name,
                        Key=self.key,
                        Body=bytes(self._buffer)
                    )
                else:
                    if self._buffer:
                        self._upload_part(bytes(self._buffer))
                    self.client.complete_multipart_upload(
                        Bucket=self.bucket_name,
                        Key=self.key,
                        UploadId=self.upload_id,
                        MultipartUpload={'Parts': self.parts}
                    )
            except ClientError as e:
                raise StorageError(f"S3 upload commit failed ({_client_error_code(e)}): {e}")
            except BotoCoreError as e:
                raise StorageError(f"S3 upload commit failed: {e}")

            self._buffer.clear()
            self.closed = True
            self.committed = True

    def abort(self):
        """Discard everything written so far. A committed object is left alone."""
        with self._lock:
            self._buffer.clear()
            self.closed = True

            if self.upload_id is None or self.committed:
                return

            try:
                self.client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=self.key,
                    UploadId=self.upload_id
                )
            except ClientError as e:
                raise StorageError(f"S3 upload abort failed ({_client_error_code(e)}): {e}")
            except BotoCoreError as e:
                raise StorageError(f"S3 upload abort failed: {e}")
            finally:
                self.upload_id = None


class S3Storage:
    """
    Handler for storing backups in an S3 bucket.

    Objects live directly under the root prefix:
    {root}/{filename}

    The boto3 client is safe to share between concurrently running jobs.
    """

    def __init__(
        self,
        access_key: Optional[str],
        secret_key: Optional[str],
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        root: str = DEFAULT_ROOT
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: AWS access key ID (None: boto3 credential chain)
            secret_key: AWS secret access key (None: boto3 credential chain)
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible services
            root: Root prefix for every path (default: /backup)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.root = root
        self._key_prefix = root.strip('/') + '/' if root.strip('/') else ''

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url or None
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, path: str) -> str:
        return self._key_prefix + path.lstrip('/')

    def _relative(self, key: str) -> str:
        return key[len(self._key_prefix):]

    def list(self, prefix: str = '') -> List[RemoteEntry]:
        """
        List entries directly under the root whose names start with prefix.

        Args:
            prefix: Name prefix to filter by

        Returns:
            RemoteEntry list in lexicographic path order

        Raises:
            StorageError: If listing fails
        """
        try:
            entries = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(
                Bucket=self.bucket_name,
                Prefix=self._key(prefix),
                Delimiter='/'
            ):
                for obj in page.get('Contents', []):
                    entries.append(RemoteEntry(
                        path=self._relative(obj['Key']),
                        size_bytes=obj['Size'],
                        is_file=True
                    ))
                for common in page.get('CommonPrefixes', []):
                    entries.append(RemoteEntry(
                        path=self._relative(common['Prefix']),
                        is_file=False
                    ))

            entries.sort(key=lambda entry: entry.path)
            return entries

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 list failed: {e}")

    def writer(self, path: str, buffer_size: int = DEFAULT_BUFFER_SIZE) -> S3UploadSink:
        """
        Open a streaming writer for path.

        Args:
            path: Destination path relative to the root
            buffer_size: Part size in bytes (at least 5 MiB)

        Returns:
            S3UploadSink to write(), then commit() or abort()
        """
        if buffer_size < MIN_PART_SIZE:
            raise ValueError(f"buffer_size must be at least {MIN_PART_SIZE} bytes for S3")
        return S3UploadSink(self.s3_client, self.bucket_name, self._key(path), buffer_size)

    def delete(self, paths: Sequence[str]):
        """
        Delete objects in batches.

        Args:
            paths: Paths relative to the root

        Raises:
            StorageError: If any object could not be deleted
        """
        keys = [self._key(path) for path in paths]
        failed = []

        try:
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                batch = keys[start:start + DELETE_BATCH_SIZE]
                response = self.s3_client.delete_objects(
                    Bucket=self.bucket_name,
                    Delete={
                        'Objects': [{'Key': key} for key in batch],
                        'Quiet': True
                    }
                )
                for error in response.get('Errors', []):
                    failed.append(f"{error.get('Key')} ({error.get('Code', 'Unknown')})")
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 delete failed: {e}")

        if failed:
            raise StorageError(f"S3 delete failed for {len(failed)} objects: {', '.join(failed)}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalUploadSink:
    """
    Streaming writer for one local file.

    Writes go to a hidden temporary file next to the destination, which is
    renamed into place on commit.
    """

    def __init__(self, dest_path: Path):
        self.dest_path = dest_path
        self.closed = False
        self.committed = False
        self._lock = threading.Lock()

        try:
            fd, temp_name = tempfile.mkstemp(
                dir=dest_path.parent,
                prefix=f".{dest_path.name}.",
                suffix='.part'
            )
        except OSError as e:
            raise StorageError(f"Failed to open writer for {dest_path}: {e}")

        self.temp_path = Path(temp_name)
        self._file = os.fdopen(fd, 'wb')

    def write(self, data: bytes) -> int:
        with self._lock:
            if self.closed:
                raise StorageError(f"Writer for {self.dest_path} is already closed")
            try:
                return self._file.write(data)
            except OSError as e:
                raise StorageError(f"Failed to write {self.dest_path}: {e}")

    def commit(self):
        with self._lock:
            if self.closed:
                raise StorageError(f"Writer for {self.dest_path} is already closed")
            try:
                self._file.close()
                os.replace(self.temp_path, self.dest_path)
            except OSError as e:
                raise StorageError(f"Failed to commit {self.dest_path}: {e}")
            self.closed = True
            self.committed = True

    def abort(self):
        with self._lock:
            self.closed = True
            if self.committed:
                return
            try:
                self._file.close()
                self.temp_path.unlink(missing_ok=True)
            except OSError as e:
                raise StorageError(f"Failed to abort write of {self.dest_path}: {e}")


class LocalStorage:
    """
    Handler for storing backups in local filesystem.

    Stores archives in a flat directory with the same layout as S3:
    {base_path}/{root}/{filename}
    """

    def __init__(self, base_path: str, root: str = DEFAULT_ROOT):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
            root: Root prefix below base_path (default: /backup)
        """
        self.base_path = Path(base_path)
        self.root = root
        self.root_path = self.base_path / root.strip('/')

        try:
            self.root_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def list(self, prefix: str = '') -> List[RemoteEntry]:
        """
        List entries directly under the root whose names start with prefix.

        In-progress writes (hidden files) are never listed.

        Returns:
            RemoteEntry list in lexicographic path order

        Raises:
            StorageError: If listing fails
        """
        try:
            entries = []
            for item in self.root_path.iterdir():
                if item.name.startswith('.') or not item.name.startswith(prefix):
                    continue
                if item.is_dir():
                    entries.append(RemoteEntry(path=f"{item.name}/", is_file=False))
                else:
                    entries.append(RemoteEntry(
                        path=item.name,
                        size_bytes=item.stat().st_size,
                        is_file=True
                    ))
            entries.sort(key=lambda entry: entry.path)
            return entries

        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def writer(self, path: str, buffer_size: int = DEFAULT_BUFFER_SIZE) -> LocalUploadSink:
        """Open a streaming writer for path (buffer_size is unused locally)."""
        return LocalUploadSink(self.get_full_path(path))

    def delete(self, paths: Sequence[str]):
        """
        Delete files from local storage.

        Args:
            paths: Paths relative to the root

        Raises:
            StorageError: If any file could not be deleted
        """
        failed = []
        for path in paths:
            try:
                self.get_full_path(path).unlink(missing_ok=True)
            except OSError as e:
                failed.append(f"{path} ({e})")

        if failed:
            raise StorageError(f"Failed to delete {len(failed)} local files: {', '.join(failed)}")

    def test_connection(self) -> bool:
        """
        Check that the storage directory exists and is writable.

        Raises:
            StorageError: If the directory is unusable
        """
        if not self.root_path.is_dir():
            raise StorageError(f"Local storage directory does not exist: {self.root_path}")
        if not os.access(self.root_path, os.W_OK):
            raise StorageError(f"Local storage directory is not writable: {self.root_path}")
        return True

    def get_full_path(self, path: str) -> Path:
        """
        Get full filesystem path from a root-relative path.

        Args:
            path: Path relative to the root

        Returns:
            Full filesystem path
        """
        return self.root_path / path.lstrip('/')


def create_storage(storage_config):
    """
    Create the storage handler for a storage config.

    Args:
        storage_config: S3Config or LocalConfig

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ValueError: If the config type is unknown
    """
    from sbackup.config import S3Config, LocalConfig

    if isinstance(storage_config, S3Config):
        return S3Storage(
            access_key=storage_config.access_key_id,
            secret_key=storage_config.secret_access_key,
            bucket_name=storage_config.bucket,
            region=storage_config.region,
            endpoint_url=storage_config.endpoint,
            root=storage_config.root
        )
    elif isinstance(storage_config, LocalConfig):
        return LocalStorage(storage_config.path, root=storage_config.root)
    else:
        raise ValueError(f"Unknown storage config: {storage_config!r}")
