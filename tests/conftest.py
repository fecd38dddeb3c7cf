"""
Shared pytest fixtures for sbackup tests.

This module provides fixtures for:
- Job configurations
- Source directories with test files
- Object stores (local directory and moto-mocked S3)
- A scriptable archiver that stands in for tar
"""

import sys

import pytest
import boto3
from moto import mock_aws

from sbackup.backup.compression import TarArchiver
from sbackup.backup.storage import LocalStorage, S3Storage
from sbackup.config import JobConfig


# Writes argv[1] (the output path) with argv[3] as content, prints two
# diagnostic lines and exits with status argv[2]
FAKE_ARCHIVER_SCRIPT = """
import sys
output, status, content = sys.argv[1], int(sys.argv[2]), sys.argv[3]
if status < 2:
    with open(output, 'w') as f:
        f.write(content)
sys.stderr.write('fake-tar: reading files\\n')
sys.stderr.write('fake-tar: done\\n')
sys.exit(status)
"""


class FakeArchiver(TarArchiver):
    """Archiver running a small Python script instead of tar."""

    def __init__(self, exit_code=0, content='archive-content', **kwargs):
        super().__init__(**kwargs)
        self.exit_code = exit_code
        self.content = content
        self.calls = []

    def build_command(self, source_path, output_path, exclude_patterns):
        self.calls.append((source_path, output_path, tuple(exclude_patterns)))
        return [
            sys.executable, '-c', FAKE_ARCHIVER_SCRIPT,
            output_path, str(self.exit_code), self.content
        ]


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a source directory with test files.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return source


@pytest.fixture
def web_job(temp_files):
    """Backup job 'web' over the temp_files directory, keeping 3 generations."""
    return JobConfig(
        name='web',
        source_path=str(temp_files),
        exclude_patterns=('*.log',),
        interval_seconds=60,
        keep_count=3
    )


@pytest.fixture
def local_storage(tmp_path):
    """LocalStorage under a fresh directory with the default root."""
    return LocalStorage(str(tmp_path / 'store'))


@pytest.fixture
def fake_archiver():
    return FakeArchiver()


@pytest.fixture
def make_archiver():
    """Return the FakeArchiver class for tests that need a specific exit status."""
    return FakeArchiver


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def s3_storage(mock_s3):
    """S3Storage against the mocked 'test-bucket' with the default root."""
    return S3Storage(
        access_key='test_access_key',
        secret_key='test_secret_key',
        bucket_name='test-bucket',
        region='us-east-1'
    )


@pytest.fixture
def store_artifact():
    """Return a helper that stores one committed object through a storage's writer."""
    def _store(storage, filename, content=b'data'):
        writer = storage.writer(filename)
        writer.write(content)
        writer.commit()
        return filename
    return _store
