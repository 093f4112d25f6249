"""Tests for token pair storage."""

import pytest

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import Credentials
from services.notesync.credentials import DatabaseCredentialStore, InMemoryCredentialStore


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    return EncryptionService(encryption_key=EncryptionService.generate_key())


def test_in_memory_store_round_trip():
    store = InMemoryCredentialStore()
    assert store.load() is None
    assert store.load_access() is None

    store.save("a", "r")

    assert store.load() == Credentials(access_token="a", refresh_token="r")
    assert store.load_refresh() == "r"

    store.clear()
    assert store.load_refresh() is None


def test_database_store_persists_encrypted_pair(db_ops, encryption_service):
    store = DatabaseCredentialStore(db_ops, encryption_service)

    store.save("access-1", "refresh-1")

    # A second store over the same database sees the pair
    reloaded = DatabaseCredentialStore(db_ops, encryption_service)
    assert reloaded.load_access() == "access-1"
    assert reloaded.load_refresh() == "refresh-1"


def test_database_store_replaces_pair(db_ops, encryption_service):
    store = DatabaseCredentialStore(db_ops, encryption_service)
    store.save("access-1", "refresh-1")

    store.save("access-2", "refresh-2")

    assert store.load() == Credentials(access_token="access-2", refresh_token="refresh-2")


def test_database_store_accounts_are_separate(db_ops, encryption_service):
    DatabaseCredentialStore(db_ops, encryption_service, account="alice").save("a", "r")

    assert DatabaseCredentialStore(db_ops, encryption_service, account="bob").load() is None


def test_database_store_clear(db_ops, encryption_service):
    store = DatabaseCredentialStore(db_ops, encryption_service)
    store.save("access-1", "refresh-1")

    store.clear()
    store.clear()

    assert store.load() is None


def test_database_store_wrong_key_reads_as_signed_out(db_ops, encryption_service):
    DatabaseCredentialStore(db_ops, encryption_service).save("access-1", "refresh-1")
    other_key = EncryptionService(encryption_key=EncryptionService.generate_key())

    assert DatabaseCredentialStore(db_ops, other_key).load() is None
