"""
Backup module for keepsafe.

This module handles the core backup functionality including:
- Source collection and database dumps
- Archiving with an embedded manifest
- Storage (local directory and SFTP)
- Backup and restore orchestration
- Retention policy enforcement
- Scheduled jobs
"""

from .executor import BackupEngine, BackupResult
from .restore import RestoreEngine, RestoreResult, resolve_restore_chain
from .storage import BackupStorage, LocalStorage, SftpStorage, create_storage
from .retention import apply_retention
from .jobs import BackupJob, RestoreJob

__all__ = [
    'BackupEngine',
    'BackupResult',
    'RestoreEngine',
    'RestoreResult',
    'resolve_restore_chain',
    'BackupStorage',
    'LocalStorage',
    'SftpStorage',
    'create_storage',
    'apply_retention',
    'BackupJob',
    'RestoreJob'
]
