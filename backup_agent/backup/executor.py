"""
Backup executor - runs the complete pipeline for one site.

Workflow:
1. Generate a per-backup encryption key
2. Open a backup record on the panel (queued for retry if the panel is down)
3. Dump the database
4. Encrypt the dump
5. Upload the encrypted file, reporting progress to the panel
6. Report completion to the panel (queued for retry on failure)
7. Remove local files

The local outcome depends only on steps 3-5. Panel failures never fail a job;
they turn into retry queue entries.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional

from ..models import BackupJob, Outcome, SiteTarget
from ..panel import PanelClient
from ..retry_queue import RetryQueue, RetryQueueError
from .dumper import DatabaseDumper
from .encryption import BackupEncryptor
from .storage import UploadError


logger = logging.getLogger(__name__)


def generate_artifact_name(database: str, now: Optional[datetime] = None) -> str:
    """
    Generate the base name shared by a backup's dump and encrypted files.

    Format: {database}_{YYYY-MM-DD_HH-MM-SS}
    """
    timestamp = (now or datetime.now()).strftime('%Y-%m-%d_%H-%M-%S')

    # Sanitize database name (replace special chars with underscores)
    safe_name = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in database
    )

    return f"{safe_name}_{timestamp}"


class BackupExecutor:
    """
    Orchestrates the backup workflow for one site at a time.
    """

    def __init__(
        self,
        panel: PanelClient,
        retry_queue: RetryQueue,
        dumper: DatabaseDumper,
        encryptor: BackupEncryptor,
        uploader,
        storage_path: str,
        queue_failure_reports: bool = True
    ):
        """
        Initialize backup executor.

        Args:
            panel: Panel API client
            retry_queue: Queue receiving panel calls that could not be delivered
            dumper: Dump capability
            encryptor: Encrypt capability
            uploader: Upload capability (see backup_agent.backup.storage)
            storage_path: Directory holding the dumps/ and encrypted/ work areas
            queue_failure_reports: Queue failure reports that could not be delivered
        """
        self.panel = panel
        self.retry_queue = retry_queue
        self.dumper = dumper
        self.encryptor = encryptor
        self.uploader = uploader
        self.storage_path = storage_path
        self.queue_failure_reports = queue_failure_reports

    def run_one(self, target: SiteTarget) -> Outcome:
        """
        Back up one site.

        Returns:
            Outcome of the job; capability and panel errors never propagate

        Raises:
            RetryQueueError: If the retry queue cannot be written
        """
        job = BackupJob(
            target=target,
            encryption_key=self.encryptor.generate_key(),
            artifact_name=generate_artifact_name(target.database),
        )
        self._log(job, f"Processing: {target.database} (site: {target.site})")

        try:
            self._start_remote(job)
            self._execute_workflow(job)
            self._complete_remote(job)
            self._log(job, f"Completed: {target.database}")
            return Outcome.succeeded(job)

        except RetryQueueError:
            raise

        except Exception as e:
            message = str(e) or e.__class__.__name__
            self._log(job, f"Failed: {message}", level=logging.ERROR)
            self._report_failure(job, message)
            return Outcome.failed(job, message)

        finally:
            self._cleanup(job)

    def _execute_workflow(self, job: BackupJob):
        """Dump, encrypt and upload. Any exception fails the job."""
        # Step 1: Dump database
        dump_path = os.path.join(self.storage_path, 'dumps', f"{job.artifact_name}.sql")
        job.dump_path = dump_path
        self._log(job, "Dumping database")
        job.dump_path, job.table_count = self.dumper.dump(job.target.connection, dump_path)
        self._log(job, f"Dumped {job.table_count} tables")

        # Step 2: Encrypt
        encrypted_path = os.path.join(self.storage_path, 'encrypted', job.filename)
        job.encrypted_path = encrypted_path
        self._log(job, "Encrypting backup")
        job.encrypted_path, job.checksum = self.encryptor.encrypt(
            job.dump_path, encrypted_path, job.encryption_key
        )

        job.size = os.path.getsize(job.encrypted_path)
        self._log(job, f"Encrypted backup: {job.filename} ({job.size / 1024 / 1024:.2f} MB)")

        # Step 3: Upload
        if self.uploader is None:
            raise UploadError("No upload destination configured")
        self._log(job, f"Uploading to {job.remote_path}")
        uploaded = self.uploader.upload(
            job.encrypted_path,
            job.remote_path,
            lambda percent: self._on_progress(job, percent)
        )
        if job.queue_error is not None:
            raise job.queue_error
        if not uploaded:
            raise UploadError("Upload failed")
        self._log(job, "Upload finished")

    def _start_remote(self, job: BackupJob):
        """Open the panel's backup record, or queue the start call."""
        payload = {
            'database_name': job.target.database,
            'encryption_key': job.encryption_key,
        }

        if self.panel.is_available():
            response = self.panel.start_backup(job.target.database, job.encryption_key)
            backup_id = response.get('backup_id') if response.ok else None
            if backup_id is not None:
                job.backup_id = backup_id
                self._log(job, f"Panel backup id: {backup_id}")
                return
            self._log(job, f"Panel did not start backup: {response.message or 'no backup_id'}", level=logging.WARNING)
        else:
            self._log(job, "Panel unavailable, start call queued for retry", level=logging.WARNING)

        self.retry_queue.add('/backups/start', 'POST', payload)

    def _on_progress(self, job: BackupJob, percent: int):
        """
        Upload progress hook. Never raises into the uploader.

        A retry queue write failure is kept on the job and raised by
        _execute_workflow once the upload returns.
        """
        logger.debug(f"{job.target.database}: upload {percent}%")

        if job.backup_id is None or job.queue_error is not None:
            return

        try:
            if not self.panel.is_available():
                return

            response = self.panel.update_progress(job.backup_id, percent)
            if not response.ok:
                self.retry_queue.add(f"/backups/{job.backup_id}/progress", 'POST', {'progress': percent})
        except RetryQueueError as e:
            logger.error(f"Could not queue progress report for {job.target.database}: {e}")
            job.queue_error = e
        except Exception as e:
            logger.error(f"Progress report for {job.target.database} failed: {e}")

    def _complete_remote(self, job: BackupJob):
        if job.backup_id is None:
            return

        payload = self._completion_payload(job)
        response = None
        if self.panel.is_available():
            response = self.panel.complete_backup(job.backup_id, **payload)

        if response is None or not response.ok:
            reason = response.message if response is not None else 'panel unavailable'
            self._log(job, f"Completion report queued for retry: {reason}", level=logging.WARNING)
            self.retry_queue.add(f"/backups/{job.backup_id}/complete", 'POST', payload)

    def _completion_payload(self, job: BackupJob) -> Dict[str, Any]:
        return {
            'filename': job.filename,
            'size': job.size,
            'table_count': job.table_count,
            'checksum': job.checksum,
        }

    def _report_failure(self, job: BackupJob, message: str):
        """Tell the panel a job failed. Queued only if queue_failure_reports is set."""
        if job.backup_id is None:
            return

        try:
            if self.panel.is_available():
                response = self.panel.fail_backup(job.backup_id, message)
                if response.ok:
                    return

            if self.queue_failure_reports:
                self.retry_queue.add(f"/backups/{job.backup_id}/failed", 'POST', {'error_message': message})
            else:
                self._log(job, "Failure report not delivered, dropping", level=logging.WARNING)
        except RetryQueueError as e:
            # The job has already failed; keep its outcome and surface the queue problem in the log
            logger.error(f"Could not queue failure report for {job.target.database}: {e}")

    def _cleanup(self, job: BackupJob):
        """Remove local dump and encrypted files."""
        for path in (job.dump_path, job.encrypted_path):
            if not path or not os.path.exists(path):
                continue
            try:
                os.remove(path)
                logger.debug(f"Removed {path}")
            except OSError as e:
                self._log(job, f"Warning: Failed to remove {path}: {e}", level=logging.WARNING)

    def _log(self, job: BackupJob, message: str, level: int = logging.INFO):
        """
        Log a message and keep it on the job.

        Args:
            job: Job the message belongs to
            message: Log message
            level: logging level
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        job.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
