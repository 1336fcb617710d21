"""
Discovery of locally hosted sites and their database credentials.

Each immediate subdirectory of a scan path that holds a ``.env`` file with a
MySQL connection becomes one SiteTarget.
"""

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from dotenv import dotenv_values

from ..models import Connection, SiteTarget

logger = logging.getLogger(__name__)

class ScanError(Exception):
    """Raised when a site's environment file cannot be read."""
    pass

def parse_env_file(path: Path) -> Dict[str, str]:
    """
    Parse a dotenv file into a dict.

    Keys declared without a value are left out.
    """
    if not path.is_file():
        raise ScanError(f"Failed to read {path}: no such file")

    try:
        values = dotenv_values(path, encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ScanError(f"Failed to read {path}: {e}")

    return {key: value for key, value in values.items() if value is not None}

class SiteScanner:
    """Finds sites with MySQL databases under the configured paths."""

    def __init__(self, paths: Iterable[str]):
        self.paths = [str(path) for path in paths]

    def get_paths(self) -> List[str]:
        return list(self.paths)

    def scan(self) -> List[SiteTarget]:
        """
        Scan all configured paths.

        Returns:
            Sites in path order, then directory name order
        """
        sites = []

        for base in self.paths:
            base_path = Path(base).expanduser()
            if not base_path.is_dir():
                logger.debug(f"Scan path does not exist: {base}")
                continue

            for directory in sorted(p for p in base_path.iterdir() if p.is_dir()):
                env_path = directory / '.env'
                if not env_path.is_file():
                    continue

                try:
                    connection = self._parse_database_config(env_path)
                except ScanError as e:
                    logger.warning(str(e))
                    continue

                if connection:
                    sites.append(SiteTarget(
                        site=directory.name,
                        database=connection.database,
                        connection=connection,
                        path=str(directory),
                    ))

        logger.info(f"Found {len(sites)} site(s) with MySQL databases")
        return sites

    def _parse_database_config(self, env_path: Path) -> Optional[Connection]:
        env = parse_env_file(env_path)

        driver = env.get('DB_CONNECTION') or 'mysql'
        # Only MySQL is supported
        if driver != 'mysql':
            return None

        database = env.get('DB_DATABASE')
        if not database:
            return None

        try:
            port = int(env.get('DB_PORT') or 3306)
        except ValueError:
            port = 3306

        return Connection(
            database=database,
            host=env.get('DB_HOST') or '127.0.0.1',
            port=port,
            username=env.get('DB_USERNAME') or 'forge',
            password=env.get('DB_PASSWORD', ''),
            driver=driver,
        )
