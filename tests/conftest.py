"""
Shared pytest fixtures for backup agent tests.

This module provides fixtures for:
- Agent configuration pointing at temporary storage
- A fake panel client and a controllable clock for the retry queue
- Fake dump and upload capabilities
- Sample site directories with .env files
- Mock fixtures for external services (S3, SSH)
"""

import logging
import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backup_agent import create_agent
from backup_agent.backup.dumper import DatabaseDumper
from backup_agent.backup.encryption import BackupEncryptor
from backup_agent.backup.executor import BackupExecutor
from backup_agent.backup.scanner import SiteScanner
from backup_agent.panel import PanelClient, PanelResponse
from backup_agent.retry_queue import RetryQueue
from backup_agent.runner import BackupRunner


class FakeClock:
    """Manually advanced clock for the retry queue."""

    def __init__(self, now=1700000000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingUploader:
    """Upload capability that reports a few progress steps and records calls."""

    def __init__(self, result=True, steps=(25, 50, 75)):
        self.result = result
        self.steps = steps
        self.calls = []

    def upload(self, local_path, remote_path, on_progress=None):
        self.calls.append((local_path, remote_path))
        if on_progress:
            for percent in self.steps:
                on_progress(percent)
            if self.result:
                on_progress(100)
        return self.result


def write_site(base, name, database, **extra):
    """Create a site directory with a Laravel style .env file."""
    site_dir = Path(base) / name
    site_dir.mkdir(parents=True, exist_ok=True)
    lines = [
        'APP_NAME=Example',
        '# database',
        'DB_CONNECTION=mysql',
        f"DB_DATABASE={database}",
        'DB_USERNAME=forge',
        'DB_PASSWORD="s3cret pass"',
    ]
    lines.extend(f"{key}={value}" for key, value in extra.items())
    (site_dir / '.env').write_text('\n'.join(lines) + '\n')
    return site_dir


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage_path(tmp_path):
    path = tmp_path / 'storage'
    (path / 'dumps').mkdir(parents=True)
    (path / 'encrypted').mkdir(parents=True)
    return path


@pytest.fixture
def retry_queue(storage_path, clock):
    """Retry queue in temporary storage with the default backoff settings."""
    return RetryQueue(str(storage_path / 'retry-queue.json'), max_attempts=5, base_delay=60, clock=clock)


@pytest.fixture
def fake_panel():
    """
    PanelClient double: reachable, hands out backup id 42, accepts every call.
    """
    panel = MagicMock(spec=PanelClient)
    panel.is_available.return_value = True
    panel.start_backup.return_value = PanelResponse(status_code=201, data={'backup_id': 42})
    panel.update_progress.return_value = PanelResponse(status_code=200, data={})
    panel.complete_backup.return_value = PanelResponse(status_code=200, data={})
    panel.fail_backup.return_value = PanelResponse(status_code=200, data={})
    panel.send.return_value = PanelResponse(status_code=200, data={})
    return panel


@pytest.fixture
def fake_dumper():
    """Dump capability writing a small SQL file."""
    dumper = MagicMock(spec=DatabaseDumper)

    def dump(connection, output_path):
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, 'w') as f:
            f.write(f"-- dump of {connection.database}\nCREATE TABLE users (id INT);\n")
        return output_path, 3

    dumper.dump.side_effect = dump
    return dumper


@pytest.fixture
def uploader():
    return RecordingUploader()


@pytest.fixture
def executor(fake_panel, retry_queue, fake_dumper, uploader, storage_path):
    """Executor with fake panel, dumper and uploader and the real encryptor."""
    return BackupExecutor(
        panel=fake_panel,
        retry_queue=retry_queue,
        dumper=fake_dumper,
        encryptor=BackupEncryptor(),
        uploader=uploader,
        storage_path=str(storage_path)
    )


@pytest.fixture
def sites_dir(tmp_path):
    """
    Create three sites:
    - alpha.test (alpha_db)
    - beta.test (beta_db)
    - gamma.test (gamma_db)
    plus a directory without .env and a site using PostgreSQL.
    """
    base = tmp_path / 'sites'
    write_site(base, 'alpha.test', 'alpha_db')
    write_site(base, 'beta.test', 'beta_db', DB_HOST='10.0.0.5', DB_PORT='3307')
    write_site(base, 'gamma.test', 'gamma_db')
    (base / 'no-env').mkdir()
    pg_dir = base / 'postgres.test'
    pg_dir.mkdir()
    (pg_dir / '.env').write_text('DB_CONNECTION=pgsql\nDB_DATABASE=pg_db\n')
    return base


@pytest.fixture
def runner(sites_dir, executor, fake_panel, retry_queue):
    return BackupRunner(SiteScanner([str(sites_dir)]), executor, fake_panel, retry_queue)


def make_http_response(status_code=200, json_data=None):
    """requests.Response double."""
    response = MagicMock()
    response.status_code = status_code
    if json_data is None:
        response.json.side_effect = ValueError('No JSON')
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def panel_session():
    """
    requests.Session double for the panel client.

    The health check fails by default so nothing reaches the network.
    """
    session = MagicMock()
    session.headers = {}
    session.get.return_value = make_http_response(503)
    session.request.return_value = make_http_response(500)
    return session


@pytest.fixture
def agent(tmp_path, sites_dir, uploader, panel_session):
    """
    Agent built by create_agent() with the testing configuration.

    Storage, logs and the scan path all live in tmp_path; the panel client
    talks to panel_session.
    """
    storage = tmp_path / 'agent'
    agent = create_agent('testing', overrides={
        'STORAGE_PATH': str(storage),
        'LOG_DIR': str(storage / 'logs'),
        'SITES_PATHS': str(sites_dir),
    }, uploader=uploader, panel_session=panel_session)
    yield agent

    # configure_logging() detaches the package logger from the root logger caplog uses
    for handler in list(agent.logger.handlers):
        agent.logger.removeHandler(handler)
        handler.close()
    agent.logger.propagate = True
    agent.logger.setLevel(logging.NOTSET)


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        # Create mock S3 resource
        s3 = boto3.resource('s3', region_name='us-east-1')

        # Create test bucket
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('backup_agent.backup.storage.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def sample_file(tmp_path):
    """A 3 MB file spanning several encryption chunks."""
    path = tmp_path / 'sample.sql'
    path.write_bytes(os.urandom(3 * 1024 * 1024 + 123))
    return path
