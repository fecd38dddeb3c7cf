"""
Unit tests for the command line interface (sbackup/cli.py).
"""

import asyncio
import logging
import os
import signal
import sys
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from sbackup.cli import cli, serve
from sbackup.config import load_config


def write_config(tmp_path, storage_table):
    source = tmp_path / 'source'
    source.mkdir(exist_ok=True)
    path = tmp_path / 'config.toml'
    path.write_text(
        "[[backup]]\n"
        "name = \"web\"\n"
        f"path = \"{source}\"\n"
        "interval = 3600\n"
        "keep = 2\n\n"
        f"{storage_table}\n"
    )
    return str(path)


@pytest.fixture
def local_config(tmp_path):
    return write_config(tmp_path, f"[local]\npath = \"{tmp_path / 'store'}\"")


class TestTestCommand:
    """Test the `test` command."""

    def test_valid_local_config(self, local_config):
        result = CliRunner().invoke(cli, ['test', '--config', local_config])

        assert result.exit_code == 0
        assert "Configuration valid (1 jobs)" in result.output
        assert "Storage reachable" in result.output

    def test_config_from_environment(self, local_config, monkeypatch):
        monkeypatch.setenv('SB_CONFIG_PATH', local_config)

        result = CliRunner().invoke(cli, ['test'])

        assert result.exit_code == 0

    def test_invalid_config(self, tmp_path):
        path = write_config(tmp_path, "")

        result = CliRunner().invoke(cli, ['test', '-c', path])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_s3_bucket_reachable(self, tmp_path, mock_s3):
        path = write_config(tmp_path, "[s3]\nbucket = \"test-bucket\"")

        result = CliRunner().invoke(cli, ['test', '-c', path])

        assert result.exit_code == 0
        assert "Storage reachable" in result.output

    def test_s3_bucket_missing(self, tmp_path, mock_s3):
        path = write_config(tmp_path, "[s3]\nbucket = \"missing-bucket\"")

        result = CliRunner().invoke(cli, ['test', '-c', path])

        assert result.exit_code == 1
        assert "Storage check failed" in result.output


class TestRunCommand:
    """Test the `run` command wiring."""

    @patch('sbackup.cli.serve', new_callable=AsyncMock)
    @patch('sbackup.cli.configure_logging')
    def test_run_serves_loaded_config(self, mock_logging, mock_serve, local_config):
        mock_logging.return_value = logging.getLogger('sbackup.test')

        result = CliRunner().invoke(cli, ['run', '-c', local_config, '--verbose'])

        assert result.exit_code == 0
        mock_logging.assert_called_once_with('DEBUG')
        mock_serve.assert_awaited_once()
        config = mock_serve.await_args[0][0]
        assert [job.name for job in config.jobs] == ['web']

    @patch('sbackup.cli.serve', new_callable=AsyncMock)
    @patch('sbackup.cli.configure_logging')
    def test_run_invalid_config(self, mock_logging, mock_serve, tmp_path):
        mock_logging.return_value = logging.getLogger('sbackup.test')
        path = write_config(tmp_path, "")

        result = CliRunner().invoke(cli, ['run', '-c', path])

        assert result.exit_code == 1
        mock_serve.assert_not_awaited()


class TestServe:
    """Test the long-running serve loop."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == 'win32', reason="POSIX signals only")
    async def test_sigterm_stops_scheduler(self, local_config):
        config = load_config(local_config)
        loop = asyncio.get_running_loop()
        loop.call_later(0.2, os.kill, os.getpid(), signal.SIGTERM)

        with patch('sbackup.cli.JobScheduler') as mock_scheduler_class:
            mock_scheduler = mock_scheduler_class.return_value
            mock_scheduler.stop = AsyncMock()

            await asyncio.wait_for(serve(config, None, logging.getLogger('sbackup.test')), timeout=5)

        mock_scheduler.start.assert_called_once()
        mock_scheduler.stop.assert_awaited_once()
