"""
Encryption of backup artifacts.

Files are written in the format of ``openssl enc -aes-256-cbc -salt -pbkdf2``,
so an operator can restore a backup with nothing but the key and openssl:

    openssl enc -d -aes-256-cbc -pbkdf2 -in backup.sql.enc -out backup.sql -pass pass:KEY
"""

import hashlib
import logging
import os
import secrets
from pathlib import Path
from typing import Tuple

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


logger = logging.getLogger(__name__)

MAGIC = b'Salted__'
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10000  # openssl enc -pbkdf2 default
CHUNK_SIZE = 1024 * 1024


class EncryptionError(Exception):
    """Raised when encrypting or decrypting an artifact fails."""
    pass


def file_checksum(path: str) -> str:
    """SHA-256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _derive(passphrase: str, salt: bytes) -> Tuple[bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase.encode())
    return material[:KEY_SIZE], material[KEY_SIZE:]


class BackupEncryptor:
    """Encrypts dumps with a per-backup passphrase."""

    def generate_key(self, length: int = 48) -> str:
        """
        Generate a random passphrase.

        Args:
            length: Number of characters (at least 32)

        Returns:
            URL-safe random string
        """
        if length < 32:
            raise ValueError("Encryption keys must be at least 32 characters")
        return secrets.token_urlsafe(length)[:length]

    def encrypt(self, input_path: str, output_path: str, key: str) -> Tuple[str, str]:
        """
        Encrypt a file with AES-256-CBC.

        Args:
            input_path: Plaintext file
            output_path: Destination of the ciphertext
            key: Passphrase

        Returns:
            (output path, SHA-256 checksum of the ciphertext)

        Raises:
            EncryptionError: If the input cannot be read or the output written
        """
        output = Path(output_path)
        salt = os.urandom(SALT_SIZE)
        aes_key, iv = _derive(key, salt)

        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).encryptor()
        padder = padding.PKCS7(algorithms.AES.block_size).padder()

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            with open(input_path, 'rb') as src, open(output, 'wb') as dst:
                dst.write(MAGIC + salt)
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                    dst.write(encryptor.update(padder.update(chunk)))
                dst.write(encryptor.update(padder.finalize()) + encryptor.finalize())
            checksum = file_checksum(str(output))
        except OSError as e:
            self._remove_partial(output)
            raise EncryptionError(f"Failed to encrypt {input_path}: {e}")

        logger.info(f"Encrypted {os.path.basename(input_path)} -> {output.name}")
        return str(output), checksum

    def decrypt(self, input_path: str, output_path: str, key: str) -> str:
        """
        Decrypt a file produced by encrypt() or by openssl.

        Returns:
            Path of the plaintext

        Raises:
            EncryptionError: On a malformed file or wrong key
        """
        output = Path(output_path)

        try:
            with open(input_path, 'rb') as src:
                header = src.read(len(MAGIC) + SALT_SIZE)
                if len(header) != len(MAGIC) + SALT_SIZE or not header.startswith(MAGIC):
                    raise EncryptionError(f"Not an encrypted backup: {input_path}")

                aes_key, iv = _derive(key, header[len(MAGIC):])
                decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(iv)).decryptor()
                unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()

                output.parent.mkdir(parents=True, exist_ok=True)
                with open(output, 'wb') as dst:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                        dst.write(unpadder.update(decryptor.update(chunk)))
                    dst.write(unpadder.update(decryptor.finalize()) + unpadder.finalize())
        except ValueError as e:
            # Bad padding: wrong key or truncated file
            self._remove_partial(output)
            raise EncryptionError(f"Failed to decrypt {input_path}: {e}")
        except OSError as e:
            self._remove_partial(output)
            raise EncryptionError(f"Failed to decrypt {input_path}: {e}")

        return str(output)

    @staticmethod
    def _remove_partial(path: Path):
        try:
            if path.exists():
                path.unlink()
        except OSError:
            logger.warning(f"Failed to remove partial file {path}")
