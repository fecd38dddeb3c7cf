#!/usr/bin/env python3
"""Development runner"""
import os
from sbackup.cli import cli

if __name__ == '__main__':
    # Use the example config for local testing unless one is given
    os.environ.setdefault('SB_CONFIG_PATH', './config.example.toml')

    cli()
