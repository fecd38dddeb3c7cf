"""
Backup module for sbackup.

This module handles the core backup functionality including:
- Artifact naming
- Compression
- Hashing
- Storage (S3 and local)
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupCycleResult, Stage
from .compression import TarArchiver
from .naming import ArtifactName
from .storage import S3Storage, LocalStorage, RemoteEntry, create_storage
from .retention import RetentionManager, select_for_removal

__all__ = [
    'BackupExecutor',
    'BackupCycleResult',
    'Stage',
    'TarArchiver',
    'ArtifactName',
    'S3Storage',
    'LocalStorage',
    'RemoteEntry',
    'create_storage',
    'RetentionManager',
    'select_for_removal'
]
