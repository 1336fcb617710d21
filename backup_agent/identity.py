"""
Server identity: the RSA keypair registered with the panel and the local
agent state file written by install/status/verify.
"""

import base64
import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Raised when keys or agent state cannot be read or written."""
    pass


def fingerprint_for(public_key_openssh: str) -> str:
    """
    ssh-keygen style SHA256 fingerprint (base64, no padding) of an OpenSSH public key.
    """
    parts = public_key_openssh.strip().split()
    if len(parts) < 2:
        raise IdentityError("Malformed OpenSSH public key")
    blob = base64.b64decode(parts[1])
    return base64.b64encode(hashlib.sha256(blob).digest()).decode().rstrip('=')


class ServerIdentity:
    """
    Keys live in ``{storage}/keys`` and state in ``{storage}/config.json``.
    """

    def __init__(self, storage_path: str, key_size: int = 4096):
        self.storage_path = Path(storage_path)
        self.key_dir = self.storage_path / 'keys'
        self.private_key_path = self.key_dir / 'id_rsa'
        self.public_key_path = self.key_dir / 'id_rsa.pub'
        self.state_path = self.storage_path / 'config.json'
        self.key_size = key_size

    # Keys

    def has_keypair(self) -> bool:
        return self.private_key_path.exists() and self.public_key_path.exists()

    def generate_keypair(self) -> Dict[str, str]:
        """
        Create a new RSA keypair, replacing any existing one.

        Returns:
            Dict with 'public' (OpenSSH format) and 'fingerprint'
        """
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)

        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )
        public_openssh = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH
        ).decode()

        try:
            self.key_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.key_dir, 0o700)
            fd = os.open(str(self.private_key_path), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'wb') as f:
                f.write(private_pem)
            self.public_key_path.write_text(public_openssh + '\n')
        except OSError as e:
            raise IdentityError(f"Failed to write keypair to {self.key_dir}: {e}")

        fingerprint = fingerprint_for(public_openssh)
        logger.info(f"Generated RSA-{self.key_size} keypair (SHA256:{fingerprint})")
        return {'public': public_openssh, 'fingerprint': fingerprint}

    def public_key(self) -> str:
        try:
            return self.public_key_path.read_text().strip()
        except OSError as e:
            raise IdentityError(f"Failed to read public key: {e}")

    def fingerprint(self) -> str:
        return fingerprint_for(self.public_key())

    def sign_challenge(self, challenge: str) -> str:
        """
        Sign a panel challenge with the private key.

        Returns:
            Base64 RSA PKCS#1 v1.5 / SHA-256 signature
        """
        try:
            private_key = serialization.load_pem_private_key(
                self.private_key_path.read_bytes(), password=None
            )
        except (OSError, ValueError) as e:
            raise IdentityError(f"Failed to load private key: {e}")

        signature = private_key.sign(challenge.encode(), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode()

    # Agent state

    def is_installed(self) -> bool:
        return self.state_path.exists()

    def load_state(self) -> Dict[str, Any]:
        try:
            with open(self.state_path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise IdentityError(f"Failed to read agent state {self.state_path}: {e}")

    def save_state(self, state: Dict[str, Any]):
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.state_path), os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w') as f:
                json.dump(state, f, indent=4)
        except OSError as e:
            raise IdentityError(f"Failed to write agent state {self.state_path}: {e}")

    def update_state(self, **changes) -> Dict[str, Any]:
        state = self.load_state()
        state.update(changes)
        self.save_state(state)
        return state

    def api_token(self) -> Optional[str]:
        if not self.is_installed():
            return None
        return self.load_state().get('api_token')


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
