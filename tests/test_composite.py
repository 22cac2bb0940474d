"""
Unit tests for composite account management.

Tests composite name handling, provisioning and retirement of composite
accounts, and fan-out target selection.
"""

import uuid
from unittest.mock import patch

import pytest

from carddav_sync.auth.composite import (
    CompositeAccountManager,
    derive_name,
    is_base_username,
    is_composite_username,
    parse_composite_name,
)
from carddav_sync.auth.errors import FileSystemError, NotFoundError
from carddav_sync.auth.htpasswd import CredentialStore
from carddav_sync.storage.db import ContactDatabase
from carddav_sync.storage.filesystem import MARKER_FILE, ContactFileStore
from carddav_sync.sync.address_book import LEGACY_BOOK

BOOK_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"


@pytest.fixture
def db():
    database = ContactDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def credentials(tmp_path):
    return CredentialStore(tmp_path / "users", bcrypt_rounds=4)


@pytest.fixture
def files(tmp_path):
    return ContactFileStore(tmp_path / "collections")


@pytest.fixture
def manager(credentials, files, db):
    return CompositeAccountManager(credentials, files, db)


class TestNames:
    """Tests for composite name helpers."""

    def test_derive_and_parse(self):
        """Test derived names parse back to their parts."""
        name = derive_name("alice", BOOK_ID)
        assert name == f"alice-{BOOK_ID}"
        assert parse_composite_name(name) == ("alice", BOOK_ID)

    def test_hyphenated_base(self):
        """Test a base name containing hyphens survives parsing."""
        assert parse_composite_name(derive_name("mary-jane", BOOK_ID)) == (
            "mary-jane",
            BOOK_ID,
        )

    @pytest.mark.parametrize("name", ["alice", "mary-jane", "a-b-c-d-e", f"-{BOOK_ID}"])
    def test_non_composite_names(self, name):
        """Test names without a trailing UUID are not composite."""
        assert not is_composite_username(name)

    def test_uppercase_uuid(self):
        """Test UUID matching ignores case."""
        assert is_composite_username(f"alice-{BOOK_ID.upper()}")

    def test_is_base_username(self):
        """Test base users exclude composite and read-only accounts."""
        assert is_base_username("alice")
        assert not is_base_username(derive_name("alice", BOOK_ID))
        assert not is_base_username(f"ro-{BOOK_ID}")


class TestEnsure:
    """Tests for provisioning composite accounts."""

    def test_creates_account(self, manager, credentials, files, db):
        """Test a new composite copies the hash, creates the directory and seeds it."""
        book = db.create_book("Team")
        credentials.create("alice", "secret")
        master = files.master_dir(book)
        master.mkdir(parents=True)
        (master / "c1.vcf").write_text("BEGIN:VCARD\r\nUID:c1\r\nEND:VCARD")

        assert manager.ensure("alice", book.id)

        name = derive_name("alice", book.id)
        assert credentials.get_hash(name) == credentials.get_hash("alice")
        assert credentials.verify(name, "secret")
        directory = files.account_dir(name)
        assert (directory / MARKER_FILE).exists()
        assert (directory / "c1.vcf").read_text() == (master / "c1.vcf").read_text()

    def test_existing_account_is_left_alone(self, manager, credentials, files, db):
        """Test ensure on an existing composite only restores the marker."""
        book = db.create_book("Team")
        name = derive_name("alice", book.id)
        credentials.create("alice", "secret")
        credentials.set_hash(name, "custom-hash")

        assert not manager.ensure("alice", book.id)
        assert credentials.get_hash(name) == "custom-hash"
        assert (files.account_dir(name) / MARKER_FILE).exists()

    def test_missing_base_user(self, manager, db):
        """Test ensure fails when the base user is unknown."""
        book = db.create_book("Team")
        with pytest.raises(NotFoundError):
            manager.ensure("ghost", book.id)

    def test_unknown_book_uses_id_as_name(self, manager, credentials, files):
        """Test a book missing from the database still gets an account."""
        credentials.create("alice", "secret")
        book_id = str(uuid.uuid4())
        assert manager.ensure("alice", book_id)
        marker = files.account_dir(derive_name("alice", book_id)) / MARKER_FILE
        assert book_id in marker.read_text()


class TestRetire:
    """Tests for retiring composite accounts."""

    def test_retire_keeps_files(self, manager, credentials, files, db):
        """Test retiring removes the credential but not the directory."""
        book = db.create_book("Team")
        credentials.create("alice", "secret")
        manager.ensure("alice", book.id)
        name = derive_name("alice", book.id)

        manager.retire("alice", book.id)
        assert credentials.get_hash(name) is None
        assert files.account_dir(name).is_dir()

    def test_retire_missing_is_quiet(self, manager, db):
        """Test retiring an absent account does not raise."""
        book = db.create_book("Team")
        manager.retire("alice", book.id)


class TestReconcile:
    """Tests for reconcile and ensure_all."""

    def test_reconcile_adds_and_removes(self, manager, credentials, db):
        """Test added books are ensured and removed books retired."""
        keep = db.create_book("Keep")
        drop = db.create_book("Drop")
        add = db.create_book("Add")
        credentials.create("alice", "secret")
        manager.ensure("alice", keep.id)
        manager.ensure("alice", drop.id)

        result = manager.reconcile("alice", [keep.id, add.id], [keep.id, drop.id])

        assert result.ok
        assert credentials.exists(derive_name("alice", add.id))
        assert not credentials.exists(derive_name("alice", drop.id))
        assert credentials.exists(derive_name("alice", keep.id))

    def test_reconcile_continues_after_failure(self, manager, credentials, db):
        """Test one failing book does not stop the others."""
        first = db.create_book("First")
        second = db.create_book("Second")
        credentials.create("alice", "secret")
        original = manager.ensure

        def flaky(base, book_id):
            if book_id == first.id:
                raise FileSystemError("disk full", "ENOSPC")
            return original(base, book_id)

        with patch.object(manager, "ensure", side_effect=flaky):
            result = manager.reconcile("alice", [first.id, second.id], [])

        assert len(result.failures) == 1
        assert result.failures[0].item == derive_name("alice", first.id)
        assert credentials.exists(derive_name("alice", second.id))

    def test_ensure_all(self, manager, credentials, db):
        """Test every base user gets composites for the books they can see."""
        public = db.create_book("Public")
        private = db.create_book("Private", is_public=False)
        credentials.create("alice", "a")
        credentials.create("bob", "b")
        db.assign_user("bob", private.id)

        result = manager.ensure_all()

        assert result.ok
        users = set(credentials.list_users())
        assert derive_name("alice", public.id) in users
        assert derive_name("bob", public.id) in users
        assert derive_name("bob", private.id) in users
        assert derive_name("alice", private.id) not in users

    def test_ensure_all_legacy_mode_is_noop(self, manager, credentials):
        """Test nothing is provisioned without configured books."""
        credentials.create("alice", "a")
        assert manager.ensure_all().succeeded == []
        assert credentials.list_users() == ["alice"]


class TestFanout:
    """Tests for fan-out target selection and hash propagation."""

    def test_public_book(self, manager, credentials, db):
        """Test every base user receives a public book."""
        book = db.create_book("Public")
        credentials.create("alice", "a")
        credentials.create("bob", "b")
        credentials.set_hash(f"ro-{book.id}", "h")
        assert manager.fanout_usernames(book) == [
            derive_name("alice", book.id),
            derive_name("bob", book.id),
        ]

    def test_private_book(self, manager, credentials, db):
        """Test only assigned users receive a private book."""
        book = db.create_book("Private", is_public=False)
        credentials.create("alice", "a")
        credentials.create("bob", "b")
        db.assign_user("bob", book.id)
        assert manager.fanout_usernames(book) == [derive_name("bob", book.id)]

    def test_legacy_book(self, manager, credentials):
        """Test legacy mode fans out to the base user directories."""
        credentials.create("alice", "a")
        credentials.set_hash(derive_name("alice", BOOK_ID), "h")
        assert manager.fanout_usernames(LEGACY_BOOK) == ["alice"]

    def test_update_password_hash(self, manager, credentials, db):
        """Test a new base hash is copied to every composite."""
        first = db.create_book("First")
        second = db.create_book("Second")
        credentials.create("alice", "old")
        manager.ensure_all()
        new_hash = credentials.update("alice", "new")

        result = manager.update_password_hash("alice", new_hash)

        assert len(result.succeeded) == 2
        for book in (first, second):
            assert credentials.verify(derive_name("alice", book.id), "new")
