"""
Unit tests for the database dumper (backup_agent/backup/dumper.py).

mysqldump and mysql are never run; subprocess.run is patched.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from backup_agent.backup.dumper import DatabaseDumper, DumpError
from backup_agent.models import Connection


@pytest.fixture
def connection():
    return Connection(database='alpha_db', host='10.0.0.5', port=3307, username='forge', password='p@ss')


def completed(returncode=0, stdout='', stderr=''):
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


class TestDatabaseDumper:
    """Test DatabaseDumper.dump()."""

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_successful_dump(self, mock_run, connection, tmp_path):
        def run(cmd, **kwargs):
            if cmd[0] == 'mysql':
                return completed(stdout='12\n')
            kwargs['stdout'].write(b'-- MySQL dump\n')
            return completed(stderr=b'')

        mock_run.side_effect = run
        output = tmp_path / 'dumps' / 'alpha.sql'

        path, table_count = DatabaseDumper().dump(connection, str(output))

        assert path == str(output)
        assert table_count == 12
        assert output.read_bytes() == b'-- MySQL dump\n'

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_dump_command(self, mock_run, connection, tmp_path):
        mock_run.side_effect = [completed(stdout='3'), completed(stderr=b'')]

        DatabaseDumper(timeout=60).dump(connection, str(tmp_path / 'a.sql'))

        cmd = mock_run.call_args_list[1][0][0]
        kwargs = mock_run.call_args_list[1][1]
        assert cmd[0] == 'mysqldump'
        assert '--host=10.0.0.5' in cmd
        assert '--port=3307' in cmd
        assert '--user=forge' in cmd
        assert '--single-transaction' in cmd
        assert '--routines' in cmd
        assert '--triggers' in cmd
        assert cmd[-1] == 'alpha_db'
        assert kwargs['timeout'] == 60

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_password_not_on_command_line(self, mock_run, connection, tmp_path):
        mock_run.side_effect = [completed(stdout='3'), completed(stderr=b'')]

        DatabaseDumper().dump(connection, str(tmp_path / 'a.sql'))

        for call in mock_run.call_args_list:
            assert not any('p@ss' in part for part in call[0][0])
            assert call[1]['env']['MYSQL_PWD'] == 'p@ss'

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_failed_dump_removes_file(self, mock_run, connection, tmp_path):
        def run(cmd, **kwargs):
            if cmd[0] == 'mysql':
                return completed(stdout='3')
            kwargs['stdout'].write(b'partial')
            return completed(returncode=2, stderr=b'Access denied for user')

        mock_run.side_effect = run
        output = tmp_path / 'a.sql'

        with pytest.raises(DumpError, match='Access denied'):
            DatabaseDumper().dump(connection, str(output))

        assert not output.exists()

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_timeout(self, mock_run, connection, tmp_path):
        mock_run.side_effect = [completed(stdout='3'), subprocess.TimeoutExpired('mysqldump', 10)]
        output = tmp_path / 'a.sql'

        with pytest.raises(DumpError, match='timed out'):
            DatabaseDumper(timeout=10).dump(connection, str(output))

        assert not output.exists()

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_mysqldump_missing(self, mock_run, connection, tmp_path):
        mock_run.side_effect = [completed(stdout='3'), FileNotFoundError('mysqldump')]

        with pytest.raises(DumpError):
            DatabaseDumper().dump(connection, str(tmp_path / 'a.sql'))


class TestTableCount:
    """Test DatabaseDumper.get_table_count()."""

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_query(self, mock_run, connection):
        mock_run.return_value = completed(stdout='7\n')

        assert DatabaseDumper().get_table_count(connection) == 7

        cmd = mock_run.call_args[0][0]
        assert cmd[0] == 'mysql'
        assert "table_schema = 'alpha_db'" in cmd[-1]

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_failure_returns_zero(self, mock_run, connection):
        mock_run.return_value = completed(returncode=1, stderr='ERROR 1045')

        assert DatabaseDumper().get_table_count(connection) == 0

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_timeout_returns_zero(self, mock_run, connection):
        mock_run.side_effect = subprocess.TimeoutExpired('mysql', 30)

        assert DatabaseDumper().get_table_count(connection) == 0

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_garbage_output_returns_zero(self, mock_run, connection):
        mock_run.return_value = completed(stdout='n/a')

        assert DatabaseDumper().get_table_count(connection) == 0

    @patch('backup_agent.backup.dumper.subprocess.run')
    def test_database_name_quoted(self, mock_run):
        mock_run.return_value = completed(stdout='0')

        DatabaseDumper().get_table_count(Connection(database="we'ird"))

        assert "table_schema = 'we\\'ird'" in mock_run.call_args[0][0][-1]
