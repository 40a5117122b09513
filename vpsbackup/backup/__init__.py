"""
Backup module for vpsbackup.

This module handles the backup pipeline and its restore counterpart:
- Locking (one run per host)
- Archiving and encryption
- Checksums
- Remote storage (rclone, S3, SFTP, local)
- Upload with verification
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, run_backup
from .compression import create_archive
from .lock import LockManager
from .storage import RcloneStorage, S3Storage, SFTPStorage, LocalStorage, create_storage
from .upload import UploadController
from .retention import RetentionManager
from .restore import RestoreManager

__all__ = [
    'BackupExecutor',
    'run_backup',
    'create_archive',
    'LockManager',
    'RcloneStorage',
    'S3Storage',
    'SFTPStorage',
    'LocalStorage',
    'create_storage',
    'UploadController',
    'RetentionManager',
    'RestoreManager'
]
