"""CLI interface for sbackup."""

import asyncio
import signal
import sys
from typing import Optional

import click

from sbackup import configure_logging
from sbackup.backup.storage import create_storage, StorageError
from sbackup.config import Config, ConfigurationError, load_config
from sbackup.scheduler import JobScheduler


def _load_or_exit(config_path: Optional[str]) -> Config:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"✗ Invalid configuration: {e}", err=True)
        sys.exit(1)


async def serve(config: Config, storage, logger):
    """Run the scheduler until SIGINT or SIGTERM arrives."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_stop(signame: str):
        logger.warning(f"signal {signame} received")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, request_stop, signum.name)
        except NotImplementedError:
            # Windows event loops lack add_signal_handler; Ctrl+C still
            # raises KeyboardInterrupt there
            pass

    scheduler = JobScheduler(config.jobs, storage, logger=logger)
    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()


@click.group()
@click.version_option(package_name='sbackup')
def cli():
    """sbackup - periodic directory backups to object storage"""
    pass


@cli.command()
@click.option('--config', '-c', 'config_path', default=None,
              help='Config file path (default: $SB_CONFIG_PATH or ./config.toml)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def run(config_path: Optional[str], verbose: bool):
    """Run backups on schedule until interrupted."""
    logger = configure_logging('DEBUG' if verbose else None)
    config = _load_or_exit(config_path)

    try:
        storage = create_storage(config.storage)
    except StorageError as e:
        click.echo(f"✗ Failed to initialize storage: {e}", err=True)
        sys.exit(1)

    for job in config.jobs:
        logger.info(
            f"Job {job.name}: {job.source_path} every {job.interval_seconds}s, keep {job.keep_count}"
        )

    asyncio.run(serve(config, storage, logger))


@cli.command()
@click.option('--config', '-c', 'config_path', default=None,
              help='Config file path (default: $SB_CONFIG_PATH or ./config.toml)')
def test(config_path: Optional[str]):
    """Validate the config and check object store connectivity."""
    config = _load_or_exit(config_path)
    click.echo(f"✓ Configuration valid ({len(config.jobs)} jobs)")

    try:
        storage = create_storage(config.storage)
        storage.test_connection()
    except StorageError as e:
        click.echo(f"✗ Storage check failed: {e}", err=True)
        sys.exit(1)

    click.echo("✓ Storage reachable")


if __name__ == '__main__':
    cli()
