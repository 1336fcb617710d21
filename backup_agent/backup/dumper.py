"""
MySQL dump capability.

Runs ``mysqldump`` for one database and asks ``mysql`` for the table count.
A failed dump never leaves a file behind.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Tuple

from ..models import Connection


logger = logging.getLogger(__name__)


class DumpError(Exception):
    """Raised when a database dump fails."""
    pass


class DatabaseDumper:
    """
    Produces consistent point-in-time SQL dumps.

    ``--single-transaction`` gives a consistent snapshot of InnoDB tables without
    locking them.
    """

    def __init__(self, timeout: int = 3600, table_count_timeout: int = 30):
        self.timeout = timeout
        self.table_count_timeout = table_count_timeout

    def dump(self, connection: Connection, output_path: str) -> Tuple[str, int]:
        """
        Dump a database to a file.

        Args:
            connection: Connection descriptor of the database
            output_path: Destination of the SQL dump

        Returns:
            (path of the dump, number of tables)

        Raises:
            DumpError: If mysqldump fails, times out or cannot be started
        """
        output = Path(output_path)
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DumpError(f"Cannot create dump directory {output.parent}: {e}")

        table_count = self.get_table_count(connection)

        cmd = self._build_dump_command(connection)
        logger.info(f"Dumping database {connection.database} from {connection.host}:{connection.port}")

        try:
            with open(output, 'wb') as f:
                result = subprocess.run(
                    cmd,
                    stdout=f,
                    stderr=subprocess.PIPE,
                    env=self._env(connection),
                    timeout=self.timeout,
                )
        except subprocess.TimeoutExpired:
            self._remove_partial(output)
            raise DumpError(f"mysqldump timed out after {self.timeout}s for {connection.database}")
        except OSError as e:
            self._remove_partial(output)
            raise DumpError(f"Failed to run mysqldump for {connection.database}: {e}")

        if result.returncode != 0:
            self._remove_partial(output)
            stderr = result.stderr.decode(errors='replace').strip() if result.stderr else ''
            raise DumpError(
                f"mysqldump failed for {connection.database} (exit {result.returncode}): {stderr}"
            )

        return str(output), table_count

    def get_table_count(self, connection: Connection) -> int:
        """
        Count the tables of a database through information_schema.

        Returns 0 when the query cannot be run.
        """
        query = (
            "SELECT COUNT(*) FROM information_schema.tables "
            f"WHERE table_schema = '{self._quote(connection.database)}'"
        )
        cmd = [
            'mysql',
            f"--host={connection.host}",
            f"--port={connection.port}",
            f"--user={connection.username}",
            '-N',
            '-e', query,
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=self._env(connection),
                timeout=self.table_count_timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Could not count tables for {connection.database}: {e}")
            return 0

        if result.returncode != 0:
            logger.warning(f"Could not count tables for {connection.database}: {result.stderr.strip()}")
            return 0

        try:
            return int(result.stdout.strip())
        except ValueError:
            return 0

    def _build_dump_command(self, connection: Connection) -> List[str]:
        return [
            'mysqldump',
            f"--host={connection.host}",
            f"--port={connection.port}",
            f"--user={connection.username}",
            '--single-transaction',
            '--routines',
            '--triggers',
            '--quick',
            '--lock-tables=false',
            connection.database,
        ]

    def _env(self, connection: Connection) -> Dict[str, str]:
        # Keep the password off the command line (visible in ps)
        env = os.environ.copy()
        if connection.password:
            env['MYSQL_PWD'] = connection.password
        return env

    @staticmethod
    def _quote(value: str) -> str:
        return value.replace('\\', '\\\\').replace("'", "\\'")

    @staticmethod
    def _remove_partial(path: Path):
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove partial dump {path}: {e}")
