"""
SQLite database module for contacts, address books and sync state.

Provides persistent storage for:
- Contacts (content plus per-direction sync watermarks)
- Address books, contact memberships and user assignments
- Read-only subscription credentials
- One-time migration sentinels
"""

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Optional

from carddav_sync.sync.address_book import AddressBook, slugify
from carddav_sync.sync.contact import (
    Contact,
    ContactField,
    ContactFields,
    SyncMetadata,
    SyncOrigin,
)
from carddav_sync.sync.vcard import CustomField

logger = logging.getLogger(__name__)

DEFAULT_BOOK_SLUG = "shared-contacts"
DEFAULT_TIMEOUT = 5.0

# Book id of a removal that covers every book (the contact was deleted)
ALL_BOOKS = ""

# SQL Schema for contacts, address books and sync bookkeeping
SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    vcard_id TEXT UNIQUE,
    full_name TEXT,
    first_name TEXT,
    last_name TEXT,
    middle_name TEXT,
    name_prefix TEXT,
    name_suffix TEXT,
    nickname TEXT,
    maiden_name TEXT,
    email TEXT,
    phone TEXT,
    emails TEXT NOT NULL DEFAULT '[]',
    phones TEXT NOT NULL DEFAULT '[]',
    organization TEXT,
    org_units TEXT NOT NULL DEFAULT '[]',
    job_title TEXT,
    role TEXT,
    address TEXT,
    address_street TEXT,
    address_extended TEXT,
    address_city TEXT,
    address_state TEXT,
    address_postal TEXT,
    address_country TEXT,
    addresses TEXT NOT NULL DEFAULT '[]',
    birthday TEXT,
    homepage TEXT,
    urls TEXT NOT NULL DEFAULT '[]',
    categories TEXT NOT NULL DEFAULT '[]',
    labels TEXT NOT NULL DEFAULT '[]',
    logos TEXT NOT NULL DEFAULT '[]',
    sounds TEXT NOT NULL DEFAULT '[]',
    keys TEXT NOT NULL DEFAULT '[]',
    mailer TEXT,
    time_zone TEXT,
    geo TEXT,
    agent TEXT,
    prod_id TEXT,
    revision TEXT,
    sort_string TEXT,
    vcard_class TEXT,
    custom_fields TEXT NOT NULL DEFAULT '[]',
    notes TEXT,
    photo_blob BLOB,
    photo_mime TEXT,
    photo_width INTEGER,
    photo_height INTEGER,
    photo_hash TEXT,
    photo_updated_at TEXT,
    vcard_data TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_synced_to_file_at TEXT,
    last_synced_from_file_at TEXT,
    content_hash TEXT,
    file_mtime TEXT,
    origin TEXT
);

CREATE INDEX IF NOT EXISTS idx_contacts_origin ON contacts(origin);
CREATE INDEX IF NOT EXISTS idx_contacts_synced_to_file
    ON contacts(last_synced_to_file_at);
CREATE INDEX IF NOT EXISTS idx_contacts_synced_from_file
    ON contacts(last_synced_from_file_at);

CREATE TABLE IF NOT EXISTS address_books (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    is_public INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS contact_address_books (
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    address_book_id TEXT NOT NULL REFERENCES address_books(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (contact_id, address_book_id)
);

CREATE INDEX IF NOT EXISTS idx_contact_address_books_book
    ON contact_address_books(address_book_id);

CREATE TABLE IF NOT EXISTS user_address_books (
    username TEXT NOT NULL,
    address_book_id TEXT NOT NULL REFERENCES address_books(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (username, address_book_id)
);

CREATE INDEX IF NOT EXISTS idx_user_address_books_username
    ON user_address_books(username);

CREATE TABLE IF NOT EXISTS address_book_readonly (
    address_book_id TEXT PRIMARY KEY REFERENCES address_books(id) ON DELETE CASCADE,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS migrations_done (
    name TEXT PRIMARY KEY,
    done_at TEXT NOT NULL
);

-- Files older than a removal are leftovers and must not bring the contact back
CREATE TABLE IF NOT EXISTS contact_removals (
    vcard_id TEXT NOT NULL,
    address_book_id TEXT NOT NULL,
    removed_at TEXT NOT NULL,
    PRIMARY KEY (vcard_id, address_book_id)
);
"""

# Columns holding lists of typed values, stored as JSON
_FIELD_LIST_COLUMNS = (
    "emails",
    "phones",
    "addresses",
    "urls",
    "labels",
    "logos",
    "sounds",
    "keys",
)
# Columns holding lists of plain strings, stored as JSON
_STRING_LIST_COLUMNS = ("org_units", "categories")

_CONTENT_COLUMNS = ContactFields.field_names()

_SYNC_COLUMNS = (
    "last_synced_to_file_at",
    "last_synced_from_file_at",
    "content_hash",
    "file_mtime",
    "origin",
)

_TIMESTAMP_COLUMNS = (
    "created_at",
    "updated_at",
    "last_synced_to_file_at",
    "last_synced_from_file_at",
    "file_mtime",
    "photo_updated_at",
)


class DatabaseError(Exception):
    """Base exception for persistence failures."""

    pass


class ContactExistsError(DatabaseError):
    """Raised when a contact with the same vcard_id already exists."""

    pass


class ContactNotFoundError(DatabaseError):
    """Raised when a contact id does not exist."""

    pass


@dataclass(frozen=True)
class ReadonlySubscription:
    """Read-only subscription credential for one address book."""

    address_book_id: str
    password_hash: str


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Naive datetimes are taken as UTC. The fixed-width format keeps
    lexical and chronological order identical.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_column(name: str, value: Any) -> Any:
    if name in _FIELD_LIST_COLUMNS:
        return json.dumps([entry.to_dict() for entry in value or []])
    if name in _STRING_LIST_COLUMNS:
        return json.dumps(list(value or []))
    if name == "custom_fields":
        return json.dumps(
            [{"key": c.key, "value": c.value, "params": c.params} for c in value or []]
        )
    if name == "birthday":
        return value.isoformat() if value else None
    return value


def _decode_column(name: str, value: Any) -> Any:
    if name in _FIELD_LIST_COLUMNS:
        return [ContactField.from_dict(entry) for entry in json.loads(value or "[]")]
    if name in _STRING_LIST_COLUMNS:
        return list(json.loads(value or "[]"))
    if name == "custom_fields":
        return [
            CustomField(
                key=entry.get("key", ""),
                value=entry.get("value", ""),
                params=list(entry.get("params") or []),
            )
            for entry in json.loads(value or "[]")
        ]
    if name == "birthday":
        return date.fromisoformat(value) if value else None
    if name == "photo_blob":
        return bytes(value) if value is not None else None
    return value


class ContactDatabase:
    """
    SQLite persistence collaborator for the sync engine.

    Each public method runs in its own transaction, committed on success
    and rolled back on error.

    Usage:
        db = ContactDatabase('/path/to/contacts.db')
        db.initialize()

        # Or use in-memory for testing:
        db = ContactDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
            timeout: Seconds to wait for a locked database before failing
        """
        self.db_path = str(db_path)
        self.timeout = timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _open(self, path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.is_memory:
            if self._shared_connection is None:
                self._shared_connection = self._open(":memory:")
            return self._shared_connection
        return self._open(self.db_path)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM contacts")
        """
        if self.is_memory:
            self._shared_lock.acquire()
        try:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                # Only close if not using shared connection
                if not self.is_memory:
                    conn.close()
        finally:
            if self.is_memory:
                self._shared_lock.release()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._shared_lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _row_to_contact(self, row: sqlite3.Row) -> Contact:
        values: dict[str, Any] = {}
        for name in _CONTENT_COLUMNS:
            values[name] = _decode_column(name, row[name])
        for name in _TIMESTAMP_COLUMNS:
            values[name] = from_db_timestamp(row[name])
        values["content_hash"] = row["content_hash"]
        values["origin"] = SyncOrigin(row["origin"]) if row["origin"] else None
        return Contact(id=row["id"], **values)

    def _row_to_book(self, row: sqlite3.Row) -> AddressBook:
        return AddressBook(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            is_public=bool(row["is_public"]),
            created_at=from_db_timestamp(row["created_at"]),
        )

    # =========================================================================
    # Contact Operations
    # =========================================================================

    def get_contacts_needing_sync(self) -> list[Contact]:
        """
        Get contacts whose database content has not reached the files yet.

        A contact qualifies when it has a vcard_id and was either never
        written to the file store or changed after its outbound watermark.

        Returns:
            Contacts ordered by most recent change first
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT * FROM contacts
                WHERE vcard_id IS NOT NULL
                  AND (
                    last_synced_to_file_at IS NULL
                    OR updated_at > last_synced_to_file_at
                  )
                ORDER BY updated_at DESC
                """
            )
            return [self._row_to_contact(row) for row in cursor.fetchall()]

    def get_all(self) -> list[Contact]:
        """Get all contacts, most recently changed first."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM contacts ORDER BY updated_at DESC")
            return [self._row_to_contact(row) for row in cursor.fetchall()]

    def get_by_id(self, contact_id: str) -> Optional[Contact]:
        """Get a contact by internal id, or None."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE id = ?", (contact_id,)
            ).fetchone()
            return self._row_to_contact(row) if row else None

    def get_by_external_id(self, vcard_id: str) -> Optional[Contact]:
        """Get a contact by its vCard UID, or None."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM contacts WHERE vcard_id = ?", (vcard_id,)
            ).fetchone()
            return self._row_to_contact(row) if row else None

    def create(
        self, fields: ContactFields, origin: SyncOrigin = SyncOrigin.DATABASE
    ) -> Contact:
        """
        Insert a new contact.

        Args:
            fields: Contact content
            origin: Writer of the content

        Returns:
            The stored Contact

        Raises:
            ContactExistsError: If the vcard_id is already taken
        """
        contact_id = str(uuid.uuid4())
        now = to_db_timestamp(utc_now())
        columns = ["id", *_CONTENT_COLUMNS, "created_at", "updated_at", "origin"]
        values = [contact_id]
        values.extend(_encode_column(name, getattr(fields, name)) for name in _CONTENT_COLUMNS)
        values.extend([now, now, origin.value])
        if fields.photo_blob:
            columns.append("photo_updated_at")
            values.append(now)

        placeholders = ", ".join("?" for _ in columns)
        try:
            with self.connection() as conn:
                conn.execute(
                    f"INSERT INTO contacts ({', '.join(columns)}) "  # nosec B608
                    f"VALUES ({placeholders})",
                    values,
                )
                if fields.vcard_id:
                    conn.execute(
                        "DELETE FROM contact_removals WHERE vcard_id = ?",
                        (fields.vcard_id,),
                    )
        except sqlite3.IntegrityError as e:
            raise ContactExistsError(
                f"Contact with vcard_id {fields.vcard_id!r} already exists"
            ) from e

        created = self.get_by_id(contact_id)
        if created is None:
            raise ContactNotFoundError(f"Contact {contact_id} vanished after insert")
        logger.debug(f"Created contact {contact_id} ({fields.vcard_id})")
        return created

    def update(
        self,
        contact_id: str,
        fields: ContactFields,
        origin: SyncOrigin = SyncOrigin.DATABASE,
    ) -> Contact:
        """
        Replace a contact's content.

        When ``fields.vcard_data`` is None and the structured content changed,
        the stored raw vCard text is cleared so the file is regenerated from
        the new fields. If nothing changed the raw text is kept.

        Args:
            contact_id: Internal id
            fields: New content
            origin: Writer of the content

        Returns:
            The updated Contact

        Raises:
            ContactNotFoundError: If the contact does not exist
            ContactExistsError: If the new vcard_id belongs to another contact
        """
        existing = self.get_by_id(contact_id)
        if existing is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")

        values = {name: getattr(fields, name) for name in _CONTENT_COLUMNS}
        if fields.vcard_data is None:
            previous = {name: getattr(existing, name) for name in _CONTENT_COLUMNS}
            previous["vcard_data"] = None
            if previous == values:
                values["vcard_data"] = existing.vcard_data

        now = to_db_timestamp(utc_now())
        assignments = [f"{name} = ?" for name in _CONTENT_COLUMNS]
        params = [_encode_column(name, values[name]) for name in _CONTENT_COLUMNS]
        assignments.extend(["updated_at = ?", "origin = ?"])
        params.extend([now, origin.value])
        if fields.photo_hash != existing.photo_hash:
            assignments.append("photo_updated_at = ?")
            params.append(now)
        params.append(contact_id)

        try:
            with self.connection() as conn:
                conn.execute(
                    f"UPDATE contacts SET {', '.join(assignments)} "  # nosec B608
                    "WHERE id = ?",
                    params,
                )
        except sqlite3.IntegrityError as e:
            raise ContactExistsError(
                f"Contact with vcard_id {fields.vcard_id!r} already exists"
            ) from e

        updated = self.get_by_id(contact_id)
        if updated is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")
        return updated

    def delete(self, contact_id: str) -> bool:
        """
        Delete a contact (memberships cascade).

        The removal is recorded so leftover files of the contact are not
        imported again.

        Returns:
            True if a contact was deleted, False if not found
        """
        with self.connection() as conn:
            self._record_removal(conn, contact_id, ALL_BOOKS)
            cursor = conn.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
            return cursor.rowcount > 0

    def update_sync_metadata(self, contact_id: str, metadata: SyncMetadata) -> None:
        """
        Write sync watermarks for a contact.

        Only the attributes set on ``metadata`` change; ``updated_at`` is
        left alone so the write does not mark the contact as changed.
        """
        columns = metadata.as_columns()
        if not columns:
            return

        assignments = []
        params: list[Any] = []
        for name, value in columns.items():
            assignments.append(f"{name} = ?")
            params.append(to_db_timestamp(value) if isinstance(value, datetime) else value)
        params.append(contact_id)

        with self.connection() as conn:
            conn.execute(
                f"UPDATE contacts SET {', '.join(assignments)} WHERE id = ?",  # nosec B608
                params,
            )

    # =========================================================================
    # Membership Operations
    # =========================================================================

    def get_membership(self, contact_id: str) -> list[str]:
        """Get the ids of the address books a contact belongs to."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT address_book_id FROM contact_address_books "
                "WHERE contact_id = ? ORDER BY created_at, address_book_id",
                (contact_id,),
            )
            return [row["address_book_id"] for row in cursor.fetchall()]

    def get_all_memberships(self) -> dict[str, list[str]]:
        """Get contact id -> book ids for every contact with a membership."""
        memberships: dict[str, list[str]] = {}
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT contact_id, address_book_id FROM contact_address_books "
                "ORDER BY created_at, address_book_id"
            )
            for row in cursor.fetchall():
                memberships.setdefault(row["contact_id"], []).append(
                    row["address_book_id"]
                )
        return memberships

    def _touch(self, conn: sqlite3.Connection, contact_id: str, now: str) -> None:
        # Membership changes must reach the files on the next outbound pass
        conn.execute(
            "UPDATE contacts SET updated_at = ? WHERE id = ?", (now, contact_id)
        )

    def _record_removal(
        self, conn: sqlite3.Connection, contact_id: str, book_id: str
    ) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO contact_removals "
            "(vcard_id, address_book_id, removed_at) "
            "SELECT vcard_id, ?, ? FROM contacts "
            "WHERE id = ? AND vcard_id IS NOT NULL",
            (book_id, to_db_timestamp(utc_now()), contact_id),
        )

    def _clear_removal(
        self, conn: sqlite3.Connection, contact_id: str, book_id: str
    ) -> None:
        conn.execute(
            "DELETE FROM contact_removals WHERE address_book_id = ? "
            "AND vcard_id = (SELECT vcard_id FROM contacts WHERE id = ?)",
            (book_id, contact_id),
        )

    def get_removed_at(self, vcard_id: str, book_id: str) -> Optional[datetime]:
        """
        When a contact was last removed from a book or deleted outright.

        Returns:
            The latest removal time, or None if the contact was never removed
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT MAX(removed_at) FROM contact_removals "
                "WHERE vcard_id = ? AND address_book_id IN (?, ?)",
                (vcard_id, book_id, ALL_BOOKS),
            ).fetchone()
            return from_db_timestamp(row[0]) if row else None

    def set_membership(self, contact_id: str, book_ids: Iterable[str]) -> None:
        """
        Replace a contact's memberships with exactly ``book_ids``.

        A changed book set marks the contact as needing an outbound sync.
        """
        wanted = list(dict.fromkeys(book_ids))
        now = to_db_timestamp(utc_now())
        with self.connection() as conn:
            current = {
                row["address_book_id"]
                for row in conn.execute(
                    "SELECT address_book_id FROM contact_address_books "
                    "WHERE contact_id = ?",
                    (contact_id,),
                )
            }
            if current == set(wanted):
                return
            conn.execute(
                "DELETE FROM contact_address_books WHERE contact_id = ?", (contact_id,)
            )
            conn.executemany(
                "INSERT INTO contact_address_books "
                "(contact_id, address_book_id, created_at) VALUES (?, ?, ?)",
                [(contact_id, book_id, now) for book_id in wanted],
            )
            for book_id in current.difference(wanted):
                self._record_removal(conn, contact_id, book_id)
            for book_id in set(wanted).difference(current):
                self._clear_removal(conn, contact_id, book_id)
            self._touch(conn, contact_id, now)

    def add_membership(self, contact_id: str, book_id: str) -> bool:
        """
        Add a contact to a book.

        Returns:
            True if the membership was new
        """
        now = to_db_timestamp(utc_now())
        with self.connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO contact_address_books "
                "(contact_id, address_book_id, created_at) VALUES (?, ?, ?)",
                (contact_id, book_id, now),
            )
            if cursor.rowcount == 0:
                return False
            self._clear_removal(conn, contact_id, book_id)
            self._touch(conn, contact_id, now)
            return True

    def remove_membership(self, contact_id: str, book_id: str) -> bool:
        """
        Remove a contact from a book.

        The removal is recorded like a delete, scoped to the book.

        Returns:
            True if a membership was removed
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM contact_address_books "
                "WHERE contact_id = ? AND address_book_id = ?",
                (contact_id, book_id),
            )
            if cursor.rowcount == 0:
                return False
            self._record_removal(conn, contact_id, book_id)
            self._touch(conn, contact_id, to_db_timestamp(utc_now()))
            return True

    # =========================================================================
    # Address Book Operations
    # =========================================================================

    def list_books(self) -> list[AddressBook]:
        """Get all address books ordered by name."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM address_books ORDER BY name, id")
            return [self._row_to_book(row) for row in cursor.fetchall()]

    def get_book(self, id_or_slug: str) -> Optional[AddressBook]:
        """Get an address book by id or slug, or None."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM address_books WHERE id = ? OR slug = ? "
                "ORDER BY id = ? DESC LIMIT 1",
                (id_or_slug, id_or_slug, id_or_slug),
            ).fetchone()
            return self._row_to_book(row) if row else None

    def create_book(
        self, name: str, slug: Optional[str] = None, is_public: bool = True
    ) -> AddressBook:
        """
        Create an address book with a fresh UUID id.

        Raises:
            DatabaseError: If the slug is already taken
        """
        book_id = str(uuid.uuid4())
        slug = slug or slugify(name)
        now = to_db_timestamp(utc_now())
        try:
            with self.connection() as conn:
                conn.execute(
                    "INSERT INTO address_books "
                    "(id, name, slug, is_public, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (book_id, name, slug, int(is_public), now, now),
                )
        except sqlite3.IntegrityError as e:
            raise DatabaseError(f"Address book slug {slug!r} already exists") from e

        logger.info(f"Created address book {name} ({book_id})")
        book = self.get_book(book_id)
        if book is None:
            raise DatabaseError(f"Address book {book_id} vanished after insert")
        return book

    def get_default_book(self) -> Optional[AddressBook]:
        """Get the shared-contacts book if present, else the oldest book."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM address_books "
                "ORDER BY slug = ? DESC, created_at, id LIMIT 1",
                (DEFAULT_BOOK_SLUG,),
            ).fetchone()
            return self._row_to_book(row) if row else None

    def get_books_for_user(self, username: str) -> list[AddressBook]:
        """Get the books a user can access: explicit assignments plus public books."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT DISTINCT ab.* FROM address_books ab
                LEFT JOIN user_address_books uab
                  ON uab.address_book_id = ab.id AND uab.username = ?
                WHERE ab.is_public = 1 OR uab.username IS NOT NULL
                ORDER BY ab.name, ab.id
                """,
                (username,),
            )
            return [self._row_to_book(row) for row in cursor.fetchall()]

    def assign_user(self, username: str, book_id: str) -> bool:
        """
        Give a user explicit access to a book.

        Returns:
            True if the assignment was new
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO user_address_books "
                "(username, address_book_id, created_at) VALUES (?, ?, ?)",
                (username, book_id, to_db_timestamp(utc_now())),
            )
            return cursor.rowcount > 0

    def unassign_user(self, username: str, book_id: str) -> bool:
        """
        Remove a user's explicit access to a book.

        Returns:
            True if an assignment was removed
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM user_address_books "
                "WHERE username = ? AND address_book_id = ?",
                (username, book_id),
            )
            return cursor.rowcount > 0

    def list_user_assignments(
        self, username: Optional[str] = None
    ) -> list[tuple[str, str]]:
        """Get (username, book_id) assignment pairs, optionally for one user."""
        query = "SELECT username, address_book_id FROM user_address_books"
        params: tuple[Any, ...] = ()
        if username is not None:
            query += " WHERE username = ?"
            params = (username,)
        query += " ORDER BY username, address_book_id"
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            return [(row["username"], row["address_book_id"]) for row in cursor.fetchall()]

    # =========================================================================
    # Read-only Subscription Operations
    # =========================================================================

    def list_readonly_subscriptions(self) -> list[ReadonlySubscription]:
        """Get all read-only subscriptions."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT address_book_id, password_hash FROM address_book_readonly "
                "ORDER BY address_book_id"
            )
            return [
                ReadonlySubscription(row["address_book_id"], row["password_hash"])
                for row in cursor.fetchall()
            ]

    def set_readonly_subscription(self, book_id: str, password_hash: str) -> None:
        """Create or replace the read-only subscription of a book."""
        now = to_db_timestamp(utc_now())
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO address_book_readonly
                    (address_book_id, password_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(address_book_id) DO UPDATE SET
                    password_hash = excluded.password_hash,
                    updated_at = excluded.updated_at
                """,
                (book_id, password_hash, now, now),
            )

    def remove_readonly_subscription(self, book_id: str) -> bool:
        """
        Remove the read-only subscription of a book.

        Returns:
            True if a subscription was removed
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM address_book_readonly WHERE address_book_id = ?",
                (book_id,),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Migration Sentinels
    # =========================================================================

    def is_migration_done(self, name: str) -> bool:
        """Check whether a one-time migration has completed."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM migrations_done WHERE name = ?", (name,)
            ).fetchone()
            return row is not None

    def mark_migration_done(self, name: str) -> None:
        """Record a one-time migration as completed."""
        with self.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO migrations_done (name, done_at) VALUES (?, ?)",
                (name, to_db_timestamp(utc_now())),
            )

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self) -> dict[str, int]:
        """
        Get counts for the status command.

        Returns:
            Dictionary with contact, pending, book, assignment and
            subscription counts
        """
        with self.connection() as conn:
            def count(query: str) -> int:
                return int(conn.execute(query).fetchone()[0])

            return {
                "contacts": count("SELECT COUNT(*) FROM contacts"),
                "pending_outbound": count(
                    "SELECT COUNT(*) FROM contacts WHERE vcard_id IS NOT NULL AND "
                    "(last_synced_to_file_at IS NULL "
                    "OR updated_at > last_synced_to_file_at)"
                ),
                "address_books": count("SELECT COUNT(*) FROM address_books"),
                "assignments": count("SELECT COUNT(*) FROM user_address_books"),
                "readonly_subscriptions": count(
                    "SELECT COUNT(*) FROM address_book_readonly"
                ),
            }
