"""
Backup module for cloudsnap.

This module handles the core backup functionality including:
- Source scanning and cloud placeholder materialization
- B2 object storage access
- Snapshot manifests and change detection
- Backup, restore and retention orchestration
"""

from .executor import BackupExecutor, BackupResult
from .sources import Materializer, collect_files
from .storage import B2Storage, StorageError
from .snapshots import SnapshotStore, needs_backup
from .retention import RetentionManager
from .restore import RestoreExecutor, RestoreOptions, RestoreError
from .checks import ConfigChecker

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'Materializer',
    'collect_files',
    'B2Storage',
    'StorageError',
    'SnapshotStore',
    'needs_backup',
    'RetentionManager',
    'RestoreExecutor',
    'RestoreOptions',
    'RestoreError',
    'ConfigChecker'
]
