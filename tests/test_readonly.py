"""
Unit tests for read-only subscription accounts.
"""

import pytest

from carddav_sync.auth.htpasswd import CredentialStore
from carddav_sync.auth.readonly import readonly_username, sync_readonly_accounts
from carddav_sync.storage.db import ContactDatabase


@pytest.fixture
def db():
    database = ContactDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore(tmp_path / "users", bcrypt_rounds=4)


class TestSyncReadonlyAccounts:
    """Tests for sync_readonly_accounts."""

    def test_creates_accounts_for_subscriptions(self, credentials, db):
        """Test each subscription gets an ro- account with its hash."""
        book = db.create_book("Public")
        password_hash = credentials.hash_password("viewer")
        db.set_readonly_subscription(book.id, password_hash)

        result = sync_readonly_accounts(credentials, db)

        username = readonly_username(book.id)
        assert result.succeeded == [username]
        assert credentials.get_hash(username) == password_hash
        assert credentials.verify(username, "viewer")

    def test_unchanged_hash_is_skipped(self, credentials, db):
        """Test a second run with no changes touches nothing."""
        book = db.create_book("Public")
        db.set_readonly_subscription(book.id, "h1")
        sync_readonly_accounts(credentials, db)

        assert sync_readonly_accounts(credentials, db).succeeded == []

    def test_changed_hash_is_updated(self, credentials, db):
        """Test a rotated subscription password replaces the hash."""
        book = db.create_book("Public")
        db.set_readonly_subscription(book.id, "h1")
        sync_readonly_accounts(credentials, db)
        db.set_readonly_subscription(book.id, "h2")

        sync_readonly_accounts(credentials, db)
        assert credentials.get_hash(readonly_username(book.id)) == "h2"

    def test_removes_stale_accounts(self, credentials, db):
        """Test accounts without a subscription are deleted."""
        book = db.create_book("Public")
        credentials.create("alice", "a")
        credentials.set_hash(readonly_username(book.id), "h1")

        result = sync_readonly_accounts(credentials, db)

        assert result.succeeded == [readonly_username(book.id)]
        assert credentials.list_users() == ["alice"]
