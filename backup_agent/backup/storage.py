"""
Upload handlers for encrypted backups.

Supports:
- RsyncUploader: rsync over SSH (parses rsync's --progress output)
- S3Uploader: Upload to AWS S3
- SFTPUploader: Upload over SFTP

All handlers share one contract: ``upload(local_path, remote_path, on_progress)``
returns True or False, calls ``on_progress(percent)`` whenever the percentage
changes and once more with 100 after a successful transfer. Transfer failures
are reported through the return value; configuration problems raise UploadError.
"""

import logging
import os
import posixpath
import queue
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import boto3
import paramiko
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

PROGRESS_PATTERN = re.compile(r'(\d{1,3})%')


class UploadError(Exception):
    """Raised when an uploader is misconfigured."""
    pass


class ProgressTracker:
    """Forwards progress percentages, dropping repeats."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.last = None

    def report(self, percent: int):
        percent = max(0, min(100, int(percent)))
        if percent == self.last:
            return
        self.last = percent
        if self.callback:
            self.callback(percent)

    def finish(self):
        # The final 100 is always sent, even if a transfer already reported it
        self.last = 100
        if self.callback:
            self.callback(100)


def parse_rsync_progress(output: str) -> Optional[int]:
    """
    Extract the latest percentage from rsync --progress output.

    rsync prints lines like ``  1,234,567  50%  1.23MB/s  0:00:10``.
    """
    matches = PROGRESS_PATTERN.findall(output)
    if not matches:
        return None
    return int(matches[-1])


def _pump_output(stream, output: 'queue.Queue'):
    """Move a pipe's output onto a queue; None marks end of stream."""
    try:
        for chunk in iter(lambda: stream.read1(4096), b''):
            output.put(chunk)
    except (OSError, ValueError) as e:
        # The pipe is closed under us once a timed out rsync is killed
        logger.debug(f"rsync output closed: {e}")
    finally:
        output.put(None)


class RsyncUploader:
    """
    Handler for uploading backups with rsync.

    Files land at ``{destination}/{remote_path}``.
    """

    def __init__(self, destination: str, timeout: int = 7200):
        """
        Initialize rsync uploader.

        Args:
            destination: rsync destination, e.g. ``user@host:/srv/backups``
            timeout: Maximum transfer time in seconds
        """
        if not destination:
            raise UploadError("rsync destination not configured")
        self.destination = destination.rstrip('/')
        self.timeout = timeout

    def upload(self, local_path: str, remote_path: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        if not os.path.exists(local_path):
            logger.error(f"Local file not found: {local_path}")
            return False

        target = f"{self.destination}/{remote_path.lstrip('/')}"
        cmd = ['rsync', '-avz', '--progress', local_path, target]
        tracker = ProgressTracker(on_progress)

        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except OSError as e:
            logger.error(f"Failed to start rsync: {e}")
            return False

        deadline = time.monotonic() + self.timeout
        output = queue.Queue()
        reader = threading.Thread(target=_pump_output, args=(process.stdout, output), daemon=True)
        reader.start()
        tail = ''
        try:
            while True:
                # A silent rsync (hung ssh session) must still hit the deadline
                try:
                    chunk = output.get(timeout=max(0, deadline - time.monotonic()))
                except queue.Empty:
                    raise subprocess.TimeoutExpired(cmd, self.timeout)
                if chunk is None:
                    break
                tail = (tail + chunk.decode(errors='replace'))[-512:]
                progress = parse_rsync_progress(tail)
                if progress is not None:
                    tracker.report(progress)
            returncode = process.wait(timeout=max(1, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            logger.error(f"rsync timed out after {self.timeout}s")
            return False
        finally:
            reader.join(timeout=1)
            process.stdout.close()

        if returncode != 0:
            logger.error(f"rsync failed (exit {returncode}): {tail.strip()}")
            return False

        tracker.finish()
        logger.info(f"Uploaded {os.path.basename(local_path)} to {target}")
        return True


class S3Uploader:
    """
    Handler for uploading backups to AWS S3.

    Objects are stored at ``{prefix}/{remote_path}``.
    """

    def __init__(self, bucket_name: str, region: str = 'us-east-1', access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, prefix: str = ''):
        """
        Initialize S3 uploader.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (falls back to the default credential chain)
            secret_key: AWS secret access key
            prefix: Optional key prefix
        """
        if not bucket_name:
            raise UploadError("S3 bucket not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

        # Callbacks must run on the calling thread
        self.transfer_config = TransferConfig(use_threads=False)

    def key_for(self, remote_path: str) -> str:
        remote_path = remote_path.lstrip('/')
        return f"{self.prefix}/{remote_path}" if self.prefix else remote_path

    def upload(self, local_path: str, remote_path: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        if not os.path.exists(local_path):
            logger.error(f"Local file not found: {local_path}")
            return False

        s3_key = self.key_for(remote_path)
        file_size = os.path.getsize(local_path)
        tracker = ProgressTracker(on_progress)
        sent = [0]

        def callback(bytes_transferred):
            sent[0] += bytes_transferred
            if file_size:
                tracker.report(sent[0] * 100 // file_size)

        try:
            self.s3_client.upload_file(
                local_path,
                self.bucket_name,
                s3_key,
                Callback=callback,
                Config=self.transfer_config
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            logger.error(f"S3 upload failed ({error_code}): {e}")
            return False
        except (S3UploadFailedError, BotoCoreError, OSError) as e:
            logger.error(f"S3 upload failed: {e}")
            return False

        tracker.finish()
        logger.info(f"Uploaded {os.path.basename(local_path)} to s3://{self.bucket_name}/{s3_key}")
        return True


class SFTPUploader:
    """
    Handler for uploading backups over SFTP.

    Files land at ``{remote_root}/{remote_path}``; missing directories are created.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SFTP uploader.

        Args:
            config: SFTP configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - remote_root: Base directory on the remote host
        """
        self.host = config.get('host')
        self.port = config.get('port') or 22
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')
        self.remote_root = (config.get('remote_root') or '/').rstrip('/') or '/'

        if not self.host:
            raise UploadError("SFTP host not configured")

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            UploadError: If credentials are missing
            paramiko.SSHException: If the connection fails
        """
        self.ssh_client = SSHClient()
        self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise UploadError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise UploadError("Either password or private_key must be provided")

        self.ssh_client.connect(**connect_kwargs)
        self.sftp_client = self.ssh_client.open_sftp()

    def _ensure_remote_directory(self, directory: str):
        current = ''
        for segment in [part for part in directory.split('/') if part]:
            current = f"{current}/{segment}"
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def upload(self, local_path: str, remote_path: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        if not os.path.exists(local_path):
            logger.error(f"Local file not found: {local_path}")
            return False

        target = posixpath.join(self.remote_root, remote_path.lstrip('/'))
        tracker = ProgressTracker(on_progress)

        def callback(transferred, total):
            if total:
                tracker.report(transferred * 100 // total)

        try:
            self._connect()
            self._ensure_remote_directory(posixpath.dirname(target))
            self.sftp_client.put(local_path, target, callback=callback)
        except paramiko.AuthenticationException as e:
            logger.error(f"SFTP authentication failed: {e}")
            return False
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"SFTP upload to {self.host} failed: {e}")
            return False
        finally:
            self.cleanup()

        tracker.finish()
        logger.info(f"Uploaded {os.path.basename(local_path)} to {self.host}:{target}")
        return True

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP client: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH client: {e}")
            self.ssh_client = None


def create_uploader(config: Dict[str, Any]):
    """
    Factory function to create the configured upload handler.

    Args:
        config: Agent configuration dict

    Returns:
        RsyncUploader, S3Uploader or SFTPUploader instance

    Raises:
        UploadError: If the backend is unknown or incompletely configured
    """
    backend = (config.get('UPLOAD_BACKEND') or 'rsync').lower()

    if backend == 'rsync':
        return RsyncUploader(config.get('RSYNC_DESTINATION'), timeout=config.get('UPLOAD_TIMEOUT', 7200))
    elif backend == 's3':
        return S3Uploader(
            bucket_name=config.get('S3_BUCKET'),
            region=config.get('S3_REGION') or 'us-east-1',
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            prefix=config.get('S3_PREFIX') or ''
        )
    elif backend == 'sftp':
        return SFTPUploader({
            'host': config.get('SFTP_HOST'),
            'port': config.get('SFTP_PORT'),
            'username': config.get('SFTP_USERNAME'),
            'password': config.get('SFTP_PASSWORD'),
            'private_key': config.get('SFTP_PRIVATE_KEY'),
            'remote_root': config.get('SFTP_REMOTE_ROOT'),
        })
    else:
        raise UploadError(f"Invalid upload backend: {backend}")
