"""
Unit tests for the storage module.

Tests the ContactDatabase class for contacts, sync watermarks, memberships,
address books, user assignments and read-only subscriptions.
"""

import time
from datetime import date, datetime, timedelta, timezone

import pytest

from carddav_sync.storage.db import (
    DEFAULT_BOOK_SLUG,
    ContactDatabase,
    ContactExistsError,
    ContactNotFoundError,
    DatabaseError,
    ReadonlySubscription,
    from_db_timestamp,
    to_db_timestamp,
)
from carddav_sync.sync.contact import (
    ContactField,
    ContactFields,
    SyncMetadata,
    SyncOrigin,
)
from carddav_sync.sync.vcard import CustomField


@pytest.fixture
def db():
    """Initialized in-memory database."""
    database = ContactDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


def _later(db, contact_id):
    """Push a contact's outbound watermark past its updated_at."""
    db.update_sync_metadata(
        contact_id,
        SyncMetadata(last_synced_to_file_at=datetime.now(timezone.utc)),
    )


class TestInitialization:
    """Tests for database initialization."""

    def test_create_file_database(self, tmp_path):
        """Test creating a file-based database."""
        db_path = str(tmp_path / "test.db")
        database = ContactDatabase(db_path)
        database.initialize()
        assert (tmp_path / "test.db").exists()
        assert not database.is_memory

    def test_initialize_creates_tables(self, db):
        """Test that initialize creates the required tables."""
        with db.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert {
            "contacts",
            "address_books",
            "contact_address_books",
            "user_address_books",
            "address_book_readonly",
            "migrations_done",
            "contact_removals",
        } <= names

    def test_initialize_is_idempotent(self, db):
        """Test that calling initialize twice keeps data."""
        db.create(ContactFields(vcard_id="v1"))
        db.initialize()
        assert db.get_by_external_id("v1") is not None

    def test_rollback_on_error(self, db):
        """Test a failing block is rolled back."""
        with pytest.raises(RuntimeError):
            with db.connection() as conn:
                conn.execute(
                    "INSERT INTO migrations_done (name, done_at) VALUES ('x', 'now')"
                )
                raise RuntimeError("boom")
        assert not db.is_migration_done("x")


class TestTimestamps:
    """Tests for timestamp serialization."""

    def test_round_trip_keeps_microseconds(self):
        """Test stored timestamps keep full precision."""
        value = datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc)
        assert from_db_timestamp(to_db_timestamp(value)) == value

    def test_naive_is_utc(self):
        """Test naive datetimes are stored as UTC."""
        assert to_db_timestamp(datetime(2024, 1, 1)).endswith("+00:00")

    def test_lexical_order_matches_time_order(self):
        """Test fixed-width text sorts chronologically."""
        a = datetime(2024, 1, 1, 9, 59, 59, 999999, tzinfo=timezone.utc)
        b = a + timedelta(microseconds=1)
        assert to_db_timestamp(a) < to_db_timestamp(b)


class TestContacts:
    """Tests for contact CRUD."""

    def test_create_and_get(self, db):
        """Test a created contact keeps its content."""
        fields = ContactFields(
            vcard_id="v1",
            full_name="Jane",
            emails=[ContactField("j@example.com", "WORK")],
            categories=["a", "b"],
            birthday=date(1990, 4, 1),
            custom_fields=[CustomField("X-A", "1", ["TYPE=Z"])],
            photo_blob=b"\x00\x01",
        )
        contact = db.create(fields)
        assert contact.id
        assert contact.origin == SyncOrigin.DATABASE
        assert contact.created_at is not None
        assert contact.updated_at is not None
        assert contact.photo_updated_at is not None

        loaded = db.get_by_external_id("v1")
        assert loaded.emails == [ContactField("j@example.com", "WORK")]
        assert loaded.categories == ["a", "b"]
        assert loaded.birthday == date(1990, 4, 1)
        assert loaded.custom_fields == [CustomField("X-A", "1", ["TYPE=Z"])]
        assert loaded.photo_blob == b"\x00\x01"

    def test_duplicate_vcard_id(self, db):
        """Test a second contact with the same UID is rejected."""
        db.create(ContactFields(vcard_id="v1"))
        with pytest.raises(ContactExistsError):
            db.create(ContactFields(vcard_id="v1"))

    def test_get_missing(self, db):
        """Test lookups of unknown ids return None."""
        assert db.get_by_id("nope") is None
        assert db.get_by_external_id("nope") is None

    def test_update_bumps_updated_at(self, db):
        """Test update replaces content and bumps updated_at."""
        contact = db.create(ContactFields(vcard_id="v1", full_name="Old"))
        time.sleep(0.001)
        updated = db.update(contact.id, ContactFields(vcard_id="v1", full_name="New"))
        assert updated.full_name == "New"
        assert updated.updated_at > contact.updated_at

    def test_update_sets_origin(self, db):
        """Test update records the writer."""
        contact = db.create(ContactFields(vcard_id="v1"))
        updated = db.update(contact.id, ContactFields(vcard_id="v1"), SyncOrigin.FILE)
        assert updated.origin == SyncOrigin.FILE

    def test_update_clears_raw_text_on_content_change(self, db):
        """Test stale raw vCard text is dropped when fields change."""
        contact = db.create(
            ContactFields(vcard_id="v1", full_name="A", vcard_data="BEGIN:VCARD")
        )
        updated = db.update(contact.id, ContactFields(vcard_id="v1", full_name="B"))
        assert updated.vcard_data is None

    def test_update_keeps_raw_text_when_unchanged(self, db):
        """Test raw text survives an update with identical fields."""
        contact = db.create(
            ContactFields(vcard_id="v1", full_name="A", vcard_data="BEGIN:VCARD")
        )
        updated = db.update(contact.id, ContactFields(vcard_id="v1", full_name="A"))
        assert updated.vcard_data == "BEGIN:VCARD"

    def test_update_photo_timestamp(self, db):
        """Test photo_updated_at changes only with the photo hash."""
        contact = db.create(ContactFields(vcard_id="v1"))
        assert contact.photo_updated_at is None
        updated = db.update(
            contact.id, ContactFields(vcard_id="v1", photo_blob=b"x", photo_hash="h")
        )
        assert updated.photo_updated_at is not None

    def test_update_missing(self, db):
        """Test updating an unknown contact fails."""
        with pytest.raises(ContactNotFoundError):
            db.update("nope", ContactFields())

    def test_delete(self, db):
        """Test delete reports whether a row was removed."""
        contact = db.create(ContactFields(vcard_id="v1"))
        assert db.delete(contact.id)
        assert not db.delete(contact.id)
        assert db.get_by_id(contact.id) is None


class TestSyncMetadata:
    """Tests for watermarks and pending selection."""

    def test_metadata_does_not_touch_updated_at(self, db):
        """Test watermark writes leave updated_at alone."""
        contact = db.create(ContactFields(vcard_id="v1"))
        mtime = datetime(2024, 1, 1, tzinfo=timezone.utc)
        db.update_sync_metadata(
            contact.id,
            SyncMetadata(content_hash="h", file_mtime=mtime, origin=SyncOrigin.FILE),
        )
        loaded = db.get_by_id(contact.id)
        assert loaded.updated_at == contact.updated_at
        assert loaded.content_hash == "h"
        assert loaded.file_mtime == mtime
        assert loaded.origin == SyncOrigin.FILE

    def test_needing_sync(self, db):
        """Test pending selection follows the outbound watermark."""
        synced = db.create(ContactFields(vcard_id="synced"))
        db.create(ContactFields(vcard_id="new"))
        db.create(ContactFields(vcard_id=None, full_name="No UID"))
        _later(db, synced.id)

        pending = {c.vcard_id for c in db.get_contacts_needing_sync()}
        assert pending == {"new"}

        time.sleep(0.001)
        db.update(synced.id, ContactFields(vcard_id="synced", full_name="changed"))
        pending = {c.vcard_id for c in db.get_contacts_needing_sync()}
        assert pending == {"new", "synced"}


class TestMemberships:
    """Tests for contact/book memberships."""

    @pytest.fixture
    def setup(self, db):
        book_a = db.create_book("A")
        book_b = db.create_book("B")
        contact = db.create(ContactFields(vcard_id="v1"))
        _later(db, contact.id)
        return db, contact, book_a, book_b

    def test_add_and_remove(self, setup):
        """Test add/remove report changes and are idempotent."""
        db, contact, book_a, _ = setup
        assert db.add_membership(contact.id, book_a.id)
        assert not db.add_membership(contact.id, book_a.id)
        assert db.get_membership(contact.id) == [book_a.id]
        assert db.remove_membership(contact.id, book_a.id)
        assert not db.remove_membership(contact.id, book_a.id)
        assert db.get_membership(contact.id) == []

    def test_membership_change_marks_pending(self, setup):
        """Test a membership change makes the contact pending outbound."""
        db, contact, book_a, _ = setup
        assert db.get_contacts_needing_sync() == []
        time.sleep(0.001)
        db.add_membership(contact.id, book_a.id)
        assert [c.id for c in db.get_contacts_needing_sync()] == [contact.id]

    def test_set_membership(self, setup):
        """Test set_membership replaces the book set."""
        db, contact, book_a, book_b = setup
        db.set_membership(contact.id, [book_a.id])
        db.set_membership(contact.id, [book_b.id, book_b.id])
        assert db.get_membership(contact.id) == [book_b.id]

    def test_set_same_membership_is_noop(self, setup):
        """Test an unchanged set does not mark the contact pending."""
        db, contact, book_a, _ = setup
        db.set_membership(contact.id, [book_a.id])
        _later(db, contact.id)
        db.set_membership(contact.id, [book_a.id])
        assert db.get_contacts_needing_sync() == []

    def test_get_all_memberships(self, setup):
        """Test the bulk membership map."""
        db, contact, book_a, book_b = setup
        db.set_membership(contact.id, [book_a.id, book_b.id])
        assert set(db.get_all_memberships()[contact.id]) == {book_a.id, book_b.id}

    def test_delete_cascades(self, setup):
        """Test deleting a contact removes its memberships."""
        db, contact, book_a, _ = setup
        db.add_membership(contact.id, book_a.id)
        db.delete(contact.id)
        assert db.get_all_memberships() == {}


class TestRemovals:
    """Tests for recorded contact deletions and membership removals."""

    @pytest.fixture
    def setup(self, db):
        book_a = db.create_book("A")
        book_b = db.create_book("B")
        contact = db.create(ContactFields(vcard_id="v1"))
        db.set_membership(contact.id, [book_a.id, book_b.id])
        return db, contact, book_a, book_b

    def test_never_removed(self, setup):
        """Test a contact without removals reports None."""
        db, _, book_a, _ = setup
        assert db.get_removed_at("v1", book_a.id) is None

    def test_membership_removal_is_scoped(self, setup):
        """Test removing one book records only that book."""
        db, contact, book_a, book_b = setup
        before = datetime.now(timezone.utc)
        db.remove_membership(contact.id, book_a.id)
        assert db.get_removed_at("v1", book_a.id) >= before
        assert db.get_removed_at("v1", book_b.id) is None

    def test_set_membership_records_dropped_books(self, setup):
        """Test books dropped by set_membership are recorded and re-adds clear them."""
        db, contact, book_a, book_b = setup
        db.set_membership(contact.id, [book_b.id])
        assert db.get_removed_at("v1", book_a.id) is not None
        db.add_membership(contact.id, book_a.id)
        assert db.get_removed_at("v1", book_a.id) is None

    def test_delete_covers_every_book(self, setup):
        """Test a deleted contact counts as removed from all books."""
        db, contact, book_a, book_b = setup
        db.delete(contact.id)
        assert db.get_removed_at("v1", book_a.id) is not None
        assert db.get_removed_at("v1", book_b.id) is not None
        assert db.get_removed_at("v1", "any-book") is not None

    def test_create_clears_removals(self, setup):
        """Test creating the same vcard_id again forgets earlier removals."""
        db, contact, book_a, _ = setup
        db.delete(contact.id)
        db.create(ContactFields(vcard_id="v1"))
        assert db.get_removed_at("v1", book_a.id) is None


class TestAddressBooks:
    """Tests for books, assignments and subscriptions."""

    def test_create_and_lookup(self, db):
        """Test books can be found by id or slug."""
        book = db.create_book("Family & Friends")
        assert book.slug == "family-friends"
        assert db.get_book(book.id) == book
        assert db.get_book("family-friends") == book
        assert db.get_book("missing") is None

    def test_duplicate_slug(self, db):
        """Test slugs are unique."""
        db.create_book("Team")
        with pytest.raises(DatabaseError):
            db.create_book("Other", slug="team")

    def test_default_book_prefers_shared_contacts(self, db):
        """Test the shared-contacts slug wins over older books."""
        assert db.get_default_book() is None
        first = db.create_book("First")
        assert db.get_default_book() == first
        shared = db.create_book("Shared", slug=DEFAULT_BOOK_SLUG)
        assert db.get_default_book() == shared

    def test_books_for_user(self, db):
        """Test users see public books plus their assignments."""
        public = db.create_book("Public")
        private = db.create_book("Private", is_public=False)
        other = db.create_book("Other", is_public=False)
        assert db.assign_user("alice", private.id)
        assert not db.assign_user("alice", private.id)

        ids = {b.id for b in db.get_books_for_user("alice")}
        assert ids == {public.id, private.id}
        assert other.id not in {b.id for b in db.get_books_for_user("bob")}

    def test_unassign(self, db):
        """Test removing an assignment."""
        book = db.create_book("Private", is_public=False)
        db.assign_user("alice", book.id)
        assert db.list_user_assignments("alice") == [("alice", book.id)]
        assert db.unassign_user("alice", book.id)
        assert db.list_user_assignments() == []

    def test_readonly_subscriptions(self, db):
        """Test subscription upsert and removal."""
        book = db.create_book("Public")
        db.set_readonly_subscription(book.id, "h1")
        db.set_readonly_subscription(book.id, "h2")
        assert db.list_readonly_subscriptions() == [ReadonlySubscription(book.id, "h2")]
        assert db.remove_readonly_subscription(book.id)
        assert not db.remove_readonly_subscription(book.id)

    def test_migration_sentinels(self, db):
        """Test migration markers."""
        assert not db.is_migration_done("m1")
        db.mark_migration_done("m1")
        db.mark_migration_done("m1")
        assert db.is_migration_done("m1")

    def test_statistics(self, db):
        """Test the status counters."""
        book = db.create_book("Public")
        db.create(ContactFields(vcard_id="v1"))
        db.assign_user("alice", book.id)
        stats = db.get_statistics()
        assert stats["contacts"] == 1
        assert stats["pending_outbound"] == 1
        assert stats["address_books"] == 1
        assert stats["assignments"] == 1
        assert stats["readonly_subscriptions"] == 0
