"""
Unit tests for backup encryption (backup_agent/backup/encryption.py).

Tests key generation, the OpenSSL compatible file format and checksums.
"""

import hashlib
import shutil
import subprocess

import pytest

from backup_agent.backup.encryption import (
    BackupEncryptor,
    EncryptionError,
    MAGIC,
    file_checksum
)


@pytest.fixture
def encryptor():
    return BackupEncryptor()


class TestGenerateKey:
    """Test passphrase generation."""

    def test_default_length(self, encryptor):
        key = encryptor.generate_key()

        assert len(key) == 48

    def test_keys_are_unique(self, encryptor):
        keys = {encryptor.generate_key() for _ in range(20)}

        assert len(keys) == 20

    def test_minimum_length(self, encryptor):
        assert len(encryptor.generate_key(32)) == 32

        with pytest.raises(ValueError):
            encryptor.generate_key(16)


class TestEncryptDecrypt:
    """Test encrypt() and decrypt()."""

    def test_roundtrip(self, encryptor, sample_file, tmp_path):
        key = encryptor.generate_key()
        encrypted = tmp_path / 'out' / 'sample.sql.enc'

        path, checksum = encryptor.encrypt(str(sample_file), str(encrypted), key)
        restored = encryptor.decrypt(path, str(tmp_path / 'restored.sql'), key)

        assert path == str(encrypted)
        with open(restored, 'rb') as f:
            assert f.read() == sample_file.read_bytes()

    def test_openssl_header(self, encryptor, tmp_path):
        plain = tmp_path / 'dump.sql'
        plain.write_text('CREATE TABLE users (id INT);\n')

        path, _ = encryptor.encrypt(str(plain), str(tmp_path / 'dump.sql.enc'), 'k' * 48)

        data = open(path, 'rb').read()
        assert data.startswith(MAGIC)
        # 16 bytes header, ciphertext padded to the AES block size
        assert (len(data) - 16) % 16 == 0
        assert b'CREATE TABLE' not in data

    def test_checksum_is_sha256_of_ciphertext(self, encryptor, sample_file, tmp_path):
        path, checksum = encryptor.encrypt(str(sample_file), str(tmp_path / 'x.enc'), 'k' * 48)

        with open(path, 'rb') as f:
            assert checksum == hashlib.sha256(f.read()).hexdigest()
        assert file_checksum(path) == checksum

    def test_same_input_encrypts_differently(self, encryptor, tmp_path):
        plain = tmp_path / 'dump.sql'
        plain.write_text('data')

        _, first = encryptor.encrypt(str(plain), str(tmp_path / 'a.enc'), 'k' * 48)
        _, second = encryptor.encrypt(str(plain), str(tmp_path / 'b.enc'), 'k' * 48)

        assert first != second

    def test_empty_file(self, encryptor, tmp_path):
        plain = tmp_path / 'empty.sql'
        plain.write_bytes(b'')

        path, _ = encryptor.encrypt(str(plain), str(tmp_path / 'empty.enc'), 'k' * 48)
        restored = encryptor.decrypt(path, str(tmp_path / 'restored'), 'k' * 48)

        assert open(restored, 'rb').read() == b''

    def test_wrong_key_does_not_restore(self, encryptor, tmp_path):
        plain = tmp_path / 'dump.sql'
        plain.write_text('secret rows')
        path, _ = encryptor.encrypt(str(plain), str(tmp_path / 'dump.enc'), 'a' * 48)
        output = tmp_path / 'restored.sql'

        # A wrong key almost always fails the padding check
        try:
            encryptor.decrypt(path, str(output), 'b' * 48)
        except EncryptionError:
            assert not output.exists()
        else:
            assert output.read_bytes() != b'secret rows'

    def test_decrypt_rejects_plain_file(self, encryptor, tmp_path):
        plain = tmp_path / 'dump.sql'
        plain.write_text('not encrypted at all')

        with pytest.raises(EncryptionError, match='Not an encrypted backup'):
            encryptor.decrypt(str(plain), str(tmp_path / 'out'), 'k' * 48)

    def test_missing_input_raises(self, encryptor, tmp_path):
        output = tmp_path / 'out.enc'

        with pytest.raises(EncryptionError):
            encryptor.encrypt(str(tmp_path / 'missing.sql'), str(output), 'k' * 48)

        assert not output.exists()

    @pytest.mark.skipif(shutil.which('openssl') is None, reason='openssl not installed')
    def test_openssl_can_decrypt(self, encryptor, sample_file, tmp_path):
        key = encryptor.generate_key()
        path, _ = encryptor.encrypt(str(sample_file), str(tmp_path / 'sample.enc'), key)
        restored = tmp_path / 'openssl.sql'

        result = subprocess.run(
            ['openssl', 'enc', '-d', '-aes-256-cbc', '-pbkdf2', '-md', 'sha256',
             '-in', path, '-out', str(restored), '-pass', f"pass:{key}"],
            capture_output=True
        )

        assert result.returncode == 0, result.stderr
        assert restored.read_bytes() == sample_file.read_bytes()
