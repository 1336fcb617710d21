"""
Backup module for the agent.

This module handles the per-site backup pipeline including:
- Site discovery (.env scanning)
- Database dumps
- Encryption
- Upload (rsync, S3 and SFTP)
- Execution orchestration
"""

from .executor import BackupExecutor
from .dumper import DatabaseDumper, DumpError
from .encryption import BackupEncryptor, EncryptionError
from .scanner import SiteScanner, ScanError
from .storage import RsyncUploader, S3Uploader, SFTPUploader, UploadError, create_uploader

__all__ = [
    'BackupExecutor',
    'DatabaseDumper',
    'DumpError',
    'BackupEncryptor',
    'EncryptionError',
    'SiteScanner',
    'ScanError',
    'RsyncUploader',
    'S3Uploader',
    'SFTPUploader',
    'UploadError',
    'create_uploader'
]
