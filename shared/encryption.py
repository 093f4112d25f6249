"""Encryption utilities for tokens stored at rest."""

import base64
import logging
import os
from pathlib import Path
from typing import Optional, Union

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


class EncryptionService:
    """Handles symmetric encryption and decryption of notesync tokens."""

    def __init__(
        self,
        encryption_key: Optional[str] = None,
        key_file: Optional[Union[str, Path]] = None
    ):
        """
        Initialize encryption service.

        Args:
            encryption_key: Base64-encoded Fernet key. If not provided,
                          TIMELINE_ENCRYPTION_KEY is used, then the key file
            key_file: Path of a key file to read, or create with a fresh
                      key, when no explicit key is configured. Without it
                      a throwaway key is generated (tests only)
        """
        if encryption_key:
            self.key = encryption_key.encode()
        else:
            env_key = os.getenv('TIMELINE_ENCRYPTION_KEY')
            if env_key:
                self.key = env_key.encode()
            elif key_file is not None:
                self.key = self._load_or_create_key_file(Path(key_file))
            else:
                self.key = Fernet.generate_key()

        self.cipher = Fernet(self.key)

    @staticmethod
    def _load_or_create_key_file(path: Path) -> bytes:
        if path.exists():
            return path.read_bytes().strip()

        path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(key)
        logger.info(f"Generated new token encryption key at {path}")
        return key

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Args:
            plaintext: The string to encrypt

        Returns:
            Base64-encoded encrypted string
        """
        if not plaintext:
            return ""

        encrypted_bytes = self.cipher.encrypt(plaintext.encode())
        return base64.b64encode(encrypted_bytes).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Raises:
            cryptography.fernet.InvalidToken: If the ciphertext was produced
                with a different key or has been tampered with
        """
        if not ciphertext:
            return ""

        encrypted_bytes = base64.b64decode(ciphertext.encode())
        decrypted_bytes = self.cipher.decrypt(encrypted_bytes)
        return decrypted_bytes.decode()

    @staticmethod
    def generate_key() -> str:
        """Generate a new base64-encoded encryption key."""
        return Fernet.generate_key().decode()
