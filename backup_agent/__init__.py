import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


class Agent:
    """
    Container for the configured collaborators of one agent process.

    Built by create_agent(); the CLI and the scheduler only talk to this object.
    """

    def __init__(self, config, panel, retry_queue, scanner, executor, runner, identity, upload_error=None):
        self.config = config
        self.panel = panel
        self.retry_queue = retry_queue
        self.scanner = scanner
        self.executor = executor
        self.runner = runner
        self.identity = identity
        self.upload_error = upload_error
        self.logger = logging.getLogger('backup_agent')


def load_config(config_name=None, overrides=None):
    """Build the settings dict from the uppercase attributes of a config class."""
    if config_name is None:
        config_name = os.environ.get('BACKUP_AGENT_ENV', 'production')

    from backup_agent.config import config as config_classes
    config_class = config_classes[config_name]

    settings = {key: getattr(config_class, key) for key in dir(config_class) if key.isupper()}
    settings['SITES_PATHS_LIST'] = config_class.sites_paths()
    if overrides:
        settings.update(overrides)
        if 'SITES_PATHS' in overrides and 'SITES_PATHS_LIST' not in overrides:
            settings['SITES_PATHS_LIST'] = [
                path.strip() for path in overrides['SITES_PATHS'].split(',') if path.strip()
            ]
        # Logs follow an overridden storage path unless placed explicitly
        if 'STORAGE_PATH' in overrides and 'LOG_DIR' not in overrides and not os.environ.get('BACKUP_LOG_DIR'):
            settings['LOG_DIR'] = os.path.join(overrides['STORAGE_PATH'], 'logs')
    return settings


def configure_logging(config):
    """Configure agent logging"""

    log_dir = config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backup-agent.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure package logger (not the root logger, so libraries stay quiet)
    agent_logger = logging.getLogger('backup_agent')
    for handler in list(agent_logger.handlers):
        agent_logger.removeHandler(handler)
        handler.close()
    agent_logger.setLevel(log_level)
    agent_logger.addHandler(console_handler)
    agent_logger.addHandler(file_handler)
    agent_logger.propagate = False

    agent_logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_agent(config_name=None, overrides=None, uploader=None, panel_session=None):
    """
    Backup agent factory.

    Args:
        config_name: Key into backup_agent.config.config (defaults to $BACKUP_AGENT_ENV)
        overrides: Settings replacing values from the config class
        uploader: Upload handler to use instead of the configured one
        panel_session: requests.Session for the panel client

    Returns:
        Agent with every collaborator wired up
    """
    config = load_config(config_name, overrides)

    # Configure logging
    configure_logging(config)

    # Ensure required directories exist
    storage_path = config['STORAGE_PATH']
    for subdir in ('dumps', 'encrypted'):
        os.makedirs(os.path.join(storage_path, subdir), exist_ok=True)

    from backup_agent.identity import ServerIdentity
    from backup_agent.panel import PanelClient
    from backup_agent.retry_queue import RetryQueue
    from backup_agent.runner import BackupRunner
    from backup_agent.backup.dumper import DatabaseDumper
    from backup_agent.backup.encryption import BackupEncryptor
    from backup_agent.backup.executor import BackupExecutor
    from backup_agent.backup.scanner import SiteScanner
    from backup_agent.backup.storage import UploadError, create_uploader

    identity = ServerIdentity(storage_path)

    # Token saved by `verify` is used when none is configured
    token = config.get('API_TOKEN') or identity.api_token()

    panel = PanelClient(
        config['PANEL_URL'],
        token=token,
        timeout=config['PANEL_TIMEOUT'],
        health_timeout=config['PANEL_HEALTH_TIMEOUT'],
        session=panel_session
    )

    retry_queue = RetryQueue(
        os.path.join(storage_path, 'retry-queue.json'),
        max_attempts=config['RETRY_MAX_ATTEMPTS'],
        base_delay=config['RETRY_BASE_DELAY']
    )

    scanner = SiteScanner(config['SITES_PATHS_LIST'])

    upload_error = None
    if uploader is None:
        try:
            uploader = create_uploader(config)
        except UploadError as e:
            # scan, retry and the identity commands still work without an upload target
            upload_error = str(e)
            logging.getLogger('backup_agent').warning(f"Uploads disabled: {e}")

    executor = BackupExecutor(
        panel=panel,
        retry_queue=retry_queue,
        dumper=DatabaseDumper(
            timeout=config['DUMP_TIMEOUT'],
            table_count_timeout=config['TABLE_COUNT_TIMEOUT']
        ),
        encryptor=BackupEncryptor(),
        uploader=uploader,
        storage_path=storage_path,
        queue_failure_reports=config['QUEUE_FAILURE_REPORTS']
    )

    runner = BackupRunner(scanner, executor, panel, retry_queue)

    return Agent(config, panel, retry_queue, scanner, executor, runner, identity, upload_error)
