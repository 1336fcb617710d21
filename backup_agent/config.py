import os
import socket
import tempfile


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    DEBUG = False

    # Panel
    PANEL_URL = os.environ.get('BACKUP_PANEL_URL') or 'https://backups.example.com/api'
    API_TOKEN = os.environ.get('BACKUP_API_TOKEN')
    PANEL_TIMEOUT = int(os.environ.get('BACKUP_PANEL_TIMEOUT', 30))
    PANEL_HEALTH_TIMEOUT = int(os.environ.get('BACKUP_PANEL_HEALTH_TIMEOUT', 5))

    # Site discovery (comma-separated list of directories)
    SITES_PATHS = (
        os.environ.get('BACKUP_SITES_PATHS')
        or os.environ.get('BACKUP_SITES_PATH')
        or '/home/forge'
    )

    # Local working storage: dumps, encrypted artifacts, retry queue, agent state
    STORAGE_PATH = os.environ.get('BACKUP_STORAGE_PATH') or '/tmp/backups'
    LOG_DIR = os.environ.get('BACKUP_LOG_DIR') or os.path.join(STORAGE_PATH, 'logs')

    # Upload
    UPLOAD_BACKEND = os.environ.get('BACKUP_UPLOAD_BACKEND') or 'rsync'  # rsync, s3 or sftp
    RSYNC_DESTINATION = os.environ.get('BACKUP_RSYNC_DESTINATION')

    S3_BUCKET = os.environ.get('BACKUP_S3_BUCKET')
    S3_REGION = os.environ.get('BACKUP_S3_REGION') or 'us-east-1'
    S3_PREFIX = os.environ.get('BACKUP_S3_PREFIX') or ''
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    SFTP_HOST = os.environ.get('BACKUP_SFTP_HOST')
    SFTP_PORT = int(os.environ.get('BACKUP_SFTP_PORT', 22))
    SFTP_USERNAME = os.environ.get('BACKUP_SFTP_USERNAME')
    SFTP_PASSWORD = os.environ.get('BACKUP_SFTP_PASSWORD')
    SFTP_PRIVATE_KEY = os.environ.get('BACKUP_SFTP_PRIVATE_KEY')
    SFTP_REMOTE_ROOT = os.environ.get('BACKUP_SFTP_REMOTE_ROOT') or '/backups'

    # Retry queue
    RETRY_MAX_ATTEMPTS = int(os.environ.get('BACKUP_RETRY_MAX_ATTEMPTS', 5))
    RETRY_BASE_DELAY = int(os.environ.get('BACKUP_RETRY_BASE_DELAY', 60))  # seconds
    QUEUE_FAILURE_REPORTS = _env_bool('BACKUP_QUEUE_FAILURE_REPORTS', True)

    # External process timeouts (seconds)
    DUMP_TIMEOUT = 3600
    TABLE_COUNT_TIMEOUT = 30
    UPLOAD_TIMEOUT = 7200

    # Scheduler
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE') or '0 2 * * *'
    RETRY_INTERVAL_MINUTES = int(os.environ.get('BACKUP_RETRY_INTERVAL_MINUTES', 5))
    SCHEDULER_TIMEZONE = 'UTC'

    SERVER_NAME = os.environ.get('BACKUP_SERVER_NAME') or socket.gethostname()

    @classmethod
    def sites_paths(cls):
        return [path.strip() for path in cls.SITES_PATHS.split(',') if path.strip()]


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    STORAGE_PATH = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Configuration used by the test suite"""
    DEBUG = True
    TESTING = True

    STORAGE_PATH = os.path.join(tempfile.gettempdir(), 'backup_agent_test')
    LOG_DIR = os.path.join(STORAGE_PATH, 'logs')
    PANEL_URL = 'http://panel.test/api'
    API_TOKEN = 'test-token'
    UPLOAD_BACKEND = 'rsync'
    RSYNC_DESTINATION = 'backup@storage.test:/srv/backups'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
