"""
Composite accounts: one physical CardDAV account per (user, address book).

A composite account ``{base}-{bookId}`` exists only as a credential entry
carrying a copy of the base user's password hash plus a directory of
fan-out files. It is created when the base user gains access to a book and
retired (credential only) when access is revoked; the directory is left
for the sync passes to reconcile.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Optional

from carddav_sync.auth.errors import NotFoundError
from carddav_sync.auth.readonly import READONLY_USERNAME_PREFIX
from carddav_sync.sync.address_book import AddressBook
from carddav_sync.sync.results import BatchResult, ItemFailure

if TYPE_CHECKING:
    from carddav_sync.auth.htpasswd import CredentialStore
    from carddav_sync.storage.db import ContactDatabase
    from carddav_sync.storage.filesystem import ContactFileStore

logger = logging.getLogger(__name__)

COMPOSITE_DELIMITER = "-"

COMPOSITE_PATTERN = re.compile(
    r"^(?P<base>.+)-"
    r"(?P<book>[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)


def derive_name(base: str, book_id: str) -> str:
    """Composite username for a base user and a book id."""
    return f"{base}{COMPOSITE_DELIMITER}{book_id}"


def parse_composite_name(name: str) -> Optional[tuple[str, str]]:
    """
    Split a composite username into ``(base, book_id)``.

    Only names ending in a canonical UUID are composite, so ordinary
    usernames containing hyphens are never misclassified.
    """
    match = COMPOSITE_PATTERN.match(name)
    if not match:
        return None
    return match.group("base"), match.group("book")


def is_composite_username(name: str) -> bool:
    return parse_composite_name(name) is not None


def is_base_username(name: str) -> bool:
    """True for accounts that belong to a person (not composite or read-only)."""
    return not is_composite_username(name) and not name.startswith(
        READONLY_USERNAME_PREFIX
    )


class CompositeAccountManager:
    """
    Provisions and retires composite accounts.

    Usage:
        manager = CompositeAccountManager(credentials, files, db)
        manager.ensure('alice', book.id)
        manager.reconcile('alice', {b1.id, b2.id}, {b1.id})
    """

    def __init__(
        self,
        credentials: CredentialStore,
        files: ContactFileStore,
        db: ContactDatabase,
    ):
        self.credentials = credentials
        self.files = files
        self.db = db

    def _book(self, book_id: str) -> AddressBook:
        book = self.db.get_book(book_id)
        if book is None:
            return AddressBook(id=book_id, name=book_id, slug=book_id)
        return book

    def ensure(self, base: str, book_id: str) -> bool:
        """
        Make sure the composite account for (base, book) exists.

        An existing account only gets its directory and marker checked.
        A new account receives the base user's hash, a directory, and a
        copy of every file already in the book's master directory.

        Returns:
            True if the account was created

        Raises:
            NotFoundError: If the base user does not exist
            CredentialError: If the credential store cannot be updated
        """
        name = derive_name(base, book_id)
        book = self._book(book_id)
        directory = self.files.account_dir(name)

        if self.credentials.get_hash(name) is not None:
            self.files.ensure_collection(directory, book.name)
            return False

        base_hash = self.credentials.get_hash(base)
        if base_hash is None:
            raise NotFoundError(base)

        self.credentials.set_hash(name, base_hash)
        self.files.ensure_collection(directory, book.name)
        self.files.seed_account(book, name)
        logger.info(f"Created composite account {name}")
        return True

    def retire(self, base: str, book_id: str) -> None:
        """Remove a composite account's credential; its files stay on disk."""
        name = derive_name(base, book_id)
        try:
            self.credentials.delete(name)
        except NotFoundError:
            logger.info(f"Composite account {name} already removed")
            return
        logger.info(f"Retired composite account {name}")

    def reconcile(
        self,
        base: str,
        current_book_ids: Iterable[str],
        previous_book_ids: Iterable[str],
    ) -> BatchResult:
        """
        Ensure composites for added books and retire those for removed ones.

        Each failure is logged and collected; the remaining books are still
        processed.
        """
        current = set(current_book_ids)
        previous = set(previous_book_ids)
        result = BatchResult()

        for book_id in sorted(current - previous):
            try:
                self.ensure(base, book_id)
            except Exception as e:
                logger.error(f"Failed to ensure {derive_name(base, book_id)}: {e}")
                result.failures.append(ItemFailure(derive_name(base, book_id), e))
            else:
                result.succeeded.append(derive_name(base, book_id))

        for book_id in sorted(previous - current):
            try:
                self.retire(base, book_id)
            except Exception as e:
                logger.error(f"Failed to retire {derive_name(base, book_id)}: {e}")
                result.failures.append(ItemFailure(derive_name(base, book_id), e))
            else:
                result.succeeded.append(derive_name(base, book_id))

        return result

    def base_users(self) -> list[str]:
        return [u for u in self.credentials.list_users() if is_base_username(u)]

    def ensure_all(self) -> BatchResult:
        """Ensure every base user has a composite for every accessible book."""
        result = BatchResult()
        if not self.db.list_books():
            return result
        for username in self.base_users():
            book_ids = [book.id for book in self.db.get_books_for_user(username)]
            result.merge(self.reconcile(username, book_ids, []))
        if result.failures:
            logger.warning(f"Composite ensure finished with {len(result.failures)} failures")
        return result

    def fanout_usernames(self, book: AddressBook) -> list[str]:
        """
        Accounts that receive a copy of the book's files.

        In legacy mode these are the base users themselves; otherwise the
        composite account of every base user with access to the book.
        """
        users = self.base_users()
        if book.legacy:
            return users

        assigned = {
            username
            for username, book_id in self.db.list_user_assignments()
            if book_id == book.id
        }
        return [
            derive_name(user, book.id)
            for user in users
            if book.is_public or user in assigned
        ]

    def composites_for(self, base: str) -> list[str]:
        """Existing composite accounts of a base user."""
        names = []
        for username in self.credentials.list_users():
            parsed = parse_composite_name(username)
            if parsed and parsed[0] == base:
                names.append(username)
        return names

    def update_password_hash(self, base: str, new_hash: str) -> BatchResult:
        """Copy a base user's new hash to all of its composite accounts."""
        result = BatchResult()
        for name in self.composites_for(base):
            try:
                self.credentials.set_hash(name, new_hash)
            except Exception as e:
                logger.error(f"Failed to update hash of {name}: {e}")
                result.failures.append(ItemFailure(name, e))
            else:
                result.succeeded.append(name)
        return result
