"""Storage for the notesync access/refresh token pair."""

import logging
from typing import Optional

from cryptography.fernet import InvalidToken

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import Credentials

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT = "user"


class CredentialStore:
    """Interface for persisting the token pair; both tokens change together."""

    def save(self, access_token: str, refresh_token: Optional[str]) -> None:
        raise NotImplementedError

    def load(self) -> Optional[Credentials]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def load_access(self) -> Optional[str]:
        credentials = self.load()
        return credentials.access_token if credentials else None

    def load_refresh(self) -> Optional[str]:
        credentials = self.load()
        return credentials.refresh_token if credentials else None


class InMemoryCredentialStore(CredentialStore):
    """Keeps tokens in process memory only."""

    def __init__(self, credentials: Optional[Credentials] = None):
        self._credentials = credentials

    def save(self, access_token: str, refresh_token: Optional[str]) -> None:
        self._credentials = Credentials(access_token=access_token, refresh_token=refresh_token)

    def load(self) -> Optional[Credentials]:
        return self._credentials

    def clear(self) -> None:
        self._credentials = None


class DatabaseCredentialStore(CredentialStore):
    """Keeps tokens encrypted in the local database."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        account: str = DEFAULT_ACCOUNT
    ):
        """
        Initialize database-backed credential store.

        Args:
            db_ops: Database operations instance
            encryption_service: Encrypts tokens before they are written
            account: Row key the token pair is stored under
        """
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.account = account

    def save(self, access_token: str, refresh_token: Optional[str]) -> None:
        self.db_ops.store_credentials(
            account=self.account,
            access_token=access_token,
            refresh_token=refresh_token,
            encryption_service=self.encryption_service
        )
        logger.info(f"Stored notesync credentials for account {self.account}")

    def load(self) -> Optional[Credentials]:
        try:
            stored = self.db_ops.get_credentials(self.account, self.encryption_service)
        except InvalidToken:
            # Key rotated or lost; the stored pair is unusable
            logger.warning(f"Stored credentials for account {self.account} cannot be decrypted")
            return None

        if not stored:
            return None
        return Credentials(
            access_token=stored['access_token'],
            refresh_token=stored['refresh_token']
        )

    def clear(self) -> None:
        if self.db_ops.delete_credentials(self.account):
            logger.info(f"Cleared notesync credentials for account {self.account}")
