"""Database operations for the local Timeline notes store."""

from datetime import datetime
from pathlib import Path
from typing import List, Optional
from sqlalchemy import create_engine, select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker

from shared.db_models import Base, NoteRecord, NoteTag, Credential
from shared.config import get_database_url
from shared.models import Note


class DatabaseOperations:
    """Handles all local persistence: notes keyed by id and stored credentials."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        url = make_url(self.database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # Note Operations

    @staticmethod
    def _to_note(record: NoteRecord) -> Note:
        return Note(
            id=record.id,
            text=record.text,
            created_at=record.created_at,
            updated_at=record.updated_at,
            is_pinned=record.is_pinned,
            tags={tag.name for tag in record.tags},
            image_paths=list(record.image_paths or []),
            audio_paths=list(record.audio_paths or []),
        )

    @staticmethod
    def _apply_note(record: NoteRecord, note: Note) -> None:
        record.text = note.text
        record.is_pinned = note.is_pinned
        record.created_at = note.created_at
        record.updated_at = note.updated_at
        record.image_paths = list(note.image_paths)
        record.audio_paths = list(note.audio_paths)

        # Diff tags by name so unchanged rows are kept in place
        wanted = set(note.tags)
        for tag in list(record.tags):
            if tag.name not in wanted:
                record.tags.remove(tag)
        existing = {tag.name for tag in record.tags}
        for name in sorted(wanted - existing):
            record.tags.append(NoteTag(name=name))

    def create_note(self, note: Note) -> Note:
        """
        Insert a new note.

        Args:
            note: The note to persist; its id must not exist yet

        Returns:
            The persisted note
        """
        with self.get_session() as session:
            record = NoteRecord(id=note.id)
            self._apply_note(record, note)
            session.add(record)
            session.commit()
            return self._to_note(record)

    def upsert_note(self, note: Note) -> Note:
        """
        Insert the note if its id is unknown, otherwise overwrite its fields.

        Args:
            note: Note carrying the authoritative field values

        Returns:
            The created or updated note
        """
        with self.get_session() as session:
            record = session.get(NoteRecord, note.id)
            if not record:
                record = NoteRecord(id=note.id)
                session.add(record)

            self._apply_note(record, note)
            session.commit()
            return self._to_note(record)

    def delete_note(self, note_id: str) -> bool:
        """
        Delete a note and its tag rows.

        Returns:
            True if the note was deleted, False if not found
        """
        with self.get_session() as session:
            record = session.get(NoteRecord, note_id)
            if not record:
                return False

            session.delete(record)
            session.commit()
            return True

    def get_note(self, note_id: str) -> Optional[Note]:
        """Get a note by id, or None if not found."""
        with self.get_session() as session:
            record = session.get(NoteRecord, note_id)
            return self._to_note(record) if record else None

    def fetch_all_notes(self) -> List[Note]:
        """
        Get every note, pinned notes first, then newest first.

        Returns:
            List of notes
        """
        with self.get_session() as session:
            stmt = select(NoteRecord).order_by(
                NoteRecord.is_pinned.desc(),
                NoteRecord.created_at.desc()
            )
            result = session.execute(stmt)
            return [self._to_note(record) for record in result.scalars().all()]

    # Credential Management Operations

    def store_credentials(
        self,
        account: str,
        access_token: str,
        refresh_token: Optional[str],
        encryption_service: 'EncryptionService'
    ) -> Credential:
        """
        Store or replace the token pair for an account with encryption.

        Args:
            account: Account key the tokens belong to
            access_token: Notesync access token (will be encrypted)
            refresh_token: Notesync refresh token (will be encrypted), may be None
            encryption_service: Encryption service for encrypting tokens

        Returns:
            The created or updated Credential record
        """
        with self.get_session() as session:
            encrypted_access = encryption_service.encrypt(access_token)
            encrypted_refresh = encryption_service.encrypt(refresh_token) if refresh_token else None

            credential = session.get(Credential, account)

            if credential:
                credential.access_token = encrypted_access
                credential.refresh_token = encrypted_refresh
                credential.updated_at = datetime.utcnow()
            else:
                credential = Credential(
                    account=account,
                    access_token=encrypted_access,
                    refresh_token=encrypted_refresh
                )
                session.add(credential)

            session.commit()
            session.refresh(credential)
            return credential

    def get_credentials(
        self,
        account: str,
        encryption_service: 'EncryptionService'
    ) -> Optional[dict]:
        """
        Retrieve and decrypt the token pair for an account.

        Args:
            account: Account key
            encryption_service: Encryption service for decrypting tokens

        Returns:
            Dictionary with decrypted tokens or None if not found
        """
        with self.get_session() as session:
            credential = session.get(Credential, account)

            if not credential:
                return None

            return {
                'account': credential.account,
                'access_token': encryption_service.decrypt(credential.access_token),
                'refresh_token': (
                    encryption_service.decrypt(credential.refresh_token)
                    if credential.refresh_token else None
                ),
                'updated_at': credential.updated_at
            }

    def delete_credentials(self, account: str) -> bool:
        """
        Delete stored credentials.

        Returns:
            True if credentials were deleted, False if not found
        """
        with self.get_session() as session:
            credential = session.get(Credential, account)

            if credential:
                session.delete(credential)
                session.commit()
                return True

            return False
