"""
Backup module for streamback.

This module handles the zero-disk streaming backup pipeline:
- Source access (SFTP and local)
- Bounded pipe between archive and upload
- Streaming archive construction
- Storage (S3 and local)
- Directory walking and run orchestration
"""

from .executor import BackupExecutor, BackupBusyError
from .sources import SSHSource, LocalSource, create_source
from .compression import ArchiveBuilder, generate_archive_filename
from .pipe import StreamPipe
from .storage import S3Storage, LocalStorage, create_storage
from .walker import DirectoryWalker

__all__ = [
    'BackupExecutor',
    'BackupBusyError',
    'SSHSource',
    'LocalSource',
    'create_source',
    'ArchiveBuilder',
    'generate_archive_filename',
    'StreamPipe',
    'S3Storage',
    'LocalStorage',
    'create_storage',
    'DirectoryWalker'
]
