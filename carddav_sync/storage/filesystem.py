"""
Filesystem adapter for the CardDAV server's collection tree.

Layout under ``{storage_root}/collection-root``:
- ``{bookId}/{vcardId}.vcf``: master copy, one per book
- ``{user}-{bookId}/{vcardId}.vcf``: fan-out copy for a composite account
- ``ro-{bookId}/{vcardId}.vcf``: mirror for a read-only subscription
- ``{user}/``: per-user directory (legacy mode fan-out, or legacy
  ``{user}/{bookId}/`` collections from older installations)

Every browsable directory carries a ``.Radicale.props`` marker written once.
"""

import filecmp
import json
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from carddav_sync.auth.composite import parse_composite_name
from carddav_sync.auth.errors import FileSystemError
from carddav_sync.auth.readonly import READONLY_USERNAME_PREFIX
from carddav_sync.sync.address_book import LEGACY_BOOK, LEGACY_BOOK_ID, AddressBook
from carddav_sync.sync.contact import content_hash
from carddav_sync.sync.results import BatchResult, ItemFailure

logger = logging.getLogger(__name__)

COLLECTION_ROOT = "collection-root"
MARKER_FILE = ".Radicale.props"
VCARD_SUFFIX = ".vcf"


@dataclass
class FileSnapshot:
    """
    A contact file as read from disk.

    Attributes:
        path: Location of the file
        text: File body
        mtime: Modification time (UTC)
        hash: content_hash() of the body
    """

    path: Path
    text: str
    mtime: datetime
    hash: str


def file_name_for(vcard_id: str) -> str:
    """File name of a contact; path separators in the id are replaced."""
    return vcard_id.replace("/", "_").replace(os.sep, "_") + VCARD_SUFFIX


def is_vcard_file(path: Path) -> bool:
    """True for visible ``.vcf`` files (temp and marker files are hidden)."""
    return path.suffix.lower() == VCARD_SUFFIX and not path.name.startswith(".")


def mtime_of(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)


def marker_content(display_name: str) -> str:
    """JSON body of the collection marker file."""
    return json.dumps(
        {
            "tag": "VADDRESSBOOK",
            "D:displayname": display_name,
            "C:addressbook-description": f"Contacts for {display_name}",
        }
    )


class ContactFileStore:
    """
    Reads and writes contact files across master and fan-out directories.

    Usage:
        files = ContactFileStore('/data/collections')
        result = files.write(book, 'uid-1', text, ['alice-<book-id>'])
        for path in files.list_all(db.list_books()):
            snapshot = files.read(path)
    """

    def __init__(self, storage_root: Path | str):
        self.storage_root = Path(storage_root)
        self.collection_root = self.storage_root / COLLECTION_ROOT

    # =========================================================================
    # Paths
    # =========================================================================

    def master_dir(self, book: AddressBook) -> Path:
        return self.collection_root / book.id

    def account_dir(self, username: str) -> Path:
        return self.collection_root / username

    def legacy_user_book_dir(self, username: str, book: AddressBook) -> Path:
        """Pre-composite per-user collection ``{user}/{bookId}``."""
        return self.collection_root / username / book.id

    def ensure_collection(self, directory: Path, display_name: str) -> None:
        """
        Create a collection directory and its marker file if missing.

        Concurrent creators are tolerated; an existing marker is never
        overwritten.
        """
        directory.mkdir(parents=True, exist_ok=True)
        marker = directory / MARKER_FILE
        if marker.exists():
            return
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(marker_content(display_name))
        logger.debug(f"Created collection marker in {directory}")

    def _write_file(self, path: Path, text: str) -> None:
        # Hidden temp name so watchers and listings skip the partial file
        temp = path.with_name(f".{path.name}.tmp")
        try:
            with open(temp, "w", encoding="utf-8", newline="") as f:
                f.write(text)
            os.replace(temp, path)
        except OSError:
            if temp.exists():
                temp.unlink()
            raise

    # =========================================================================
    # Write / delete
    # =========================================================================

    def write(
        self,
        book: AddressBook,
        vcard_id: str,
        text: str,
        fanout_usernames: Sequence[str] = (),
    ) -> BatchResult:
        """
        Write a contact to its master copy and every fan-out directory.

        Args:
            book: Target address book
            vcard_id: Contact UID, used as the file name
            text: vCard body
            fanout_usernames: Accounts that receive a copy

        Returns:
            BatchResult with written paths and per-account failures

        Raises:
            FileSystemError: If the master copy cannot be written
        """
        name = file_name_for(vcard_id)
        master = self.master_dir(book)
        try:
            self.ensure_collection(master, book.name)
            self._write_file(master / name, text)
        except OSError as e:
            raise FileSystemError.from_os_error(
                f"Failed to write master copy {master / name}", e
            ) from e

        result = BatchResult(succeeded=[master / name])
        self._write_fanout(book, name, text, fanout_usernames, result)
        return result

    def refresh_fanout(
        self,
        book: AddressBook,
        vcard_id: str,
        text: str,
        fanout_usernames: Sequence[str] = (),
    ) -> BatchResult:
        """
        Rewrite fan-out copies that are missing or differ from ``text``.

        The master copy is not touched.

        Returns:
            BatchResult with rewritten paths and per-account failures
        """
        name = file_name_for(vcard_id)
        expected = content_hash(text)
        stale = []
        for username in fanout_usernames:
            path = self.account_dir(username) / name
            try:
                if path.exists() and self.read(path).hash == expected:
                    continue
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Unreadable fan-out copy {path}: {e}")
            stale.append(username)

        result = BatchResult()
        self._write_fanout(book, name, text, stale, result)
        return result

    def _write_fanout(
        self,
        book: AddressBook,
        name: str,
        text: str,
        usernames: Sequence[str],
        result: BatchResult,
    ) -> None:
        for username in usernames:
            directory = self.account_dir(username)
            try:
                self.ensure_collection(directory, book.name)
                self._write_file(directory / name, text)
            except OSError as e:
                logger.error(f"Failed to write {name} for account {username}: {e}")
                result.failures.append(ItemFailure(username, e))
            else:
                result.succeeded.append(directory / name)

    def delete(
        self,
        book: AddressBook,
        vcard_id: str,
        fanout_usernames: Sequence[str] = (),
    ) -> BatchResult:
        """
        Remove a contact's master copy and fan-out copies.

        Missing files are not errors.

        Returns:
            BatchResult with removed paths and per-path failures
        """
        name = file_name_for(vcard_id)
        targets = [self.master_dir(book) / name]
        targets.extend(self.account_dir(u) / name for u in fanout_usernames)

        result = BatchResult()
        for path in targets:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")
                result.failures.append(ItemFailure(str(path), e))
            else:
                result.succeeded.append(path)
        return result

    # =========================================================================
    # Enumeration
    # =========================================================================

    def list_vcards(self, directory: Path) -> list[Path]:
        """Contact files directly inside a directory, sorted by name."""
        if not directory.is_dir():
            return []
        return sorted(p for p in directory.iterdir() if p.is_file() and is_vcard_file(p))

    def list_master_ids(self, book: AddressBook) -> dict[str, Path]:
        """Map vcard id (file stem) to path for a book's master directory."""
        return {p.stem: p for p in self.list_vcards(self.master_dir(book))}

    def _account_names(self) -> list[str]:
        if not self.collection_root.is_dir():
            return []
        return sorted(
            p.name
            for p in self.collection_root.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def account_dirs_for_book(self, book: AddressBook) -> list[str]:
        """Composite account directories present on disk for a book."""
        usernames = []
        for name in self._account_names():
            parsed = parse_composite_name(name)
            if parsed and parsed[1].lower() == book.id.lower():
                usernames.append(name)
        return usernames

    def list_all(self, books: Sequence[AddressBook]) -> list[Path]:
        """
        Enumerate every contact file the inbound pass should consider.

        With books configured: master directories, composite account
        directories of known books, and legacy ``{user}/{bookId}``
        directories whose composite replacement does not exist yet.
        Read-only mirrors are never included.

        Without books (legacy mode): the shared master directory plus every
        per-user directory.
        """
        paths: list[Path] = []
        names = self._account_names()

        if not books:
            paths.extend(self.list_vcards(self.master_dir(LEGACY_BOOK)))
            for name in names:
                if name == LEGACY_BOOK_ID or name.startswith(READONLY_USERNAME_PREFIX):
                    continue
                paths.extend(self.list_vcards(self.account_dir(name)))
            return paths

        book_ids = {book.id.lower() for book in books}
        for book in books:
            paths.extend(self.list_vcards(self.master_dir(book)))

        existing = set(names)
        for name in names:
            if name.lower() in book_ids or name.startswith(READONLY_USERNAME_PREFIX):
                continue
            parsed = parse_composite_name(name)
            if parsed:
                if parsed[1].lower() in book_ids:
                    paths.extend(self.list_vcards(self.account_dir(name)))
                continue
            for book in books:
                if f"{name}-{book.id}" in existing:
                    continue
                paths.extend(self.list_vcards(self.legacy_user_book_dir(name, book)))
        return paths

    def resolve_book_from_path(
        self, path: Path | str, books: Sequence[AddressBook]
    ) -> Optional[AddressBook]:
        """
        Determine which address book a contact file belongs to.

        The first segment below collection-root is a book id or slug, a
        composite account name, or a plain user directory containing a
        ``{bookId}`` collection. In legacy mode every path maps to the
        implicit shared book.
        """
        if not books:
            return LEGACY_BOOK

        parts = Path(path).parts
        if COLLECTION_ROOT not in parts:
            return None
        segments = parts[parts.index(COLLECTION_ROOT) + 1 :]
        if len(segments) < 2:
            return None

        def lookup(key: str) -> Optional[AddressBook]:
            key = key.lower()
            for book in books:
                if book.id.lower() == key or book.slug.lower() == key:
                    return book
            return None

        first = segments[0]
        parsed = parse_composite_name(first)
        if parsed:
            return lookup(parsed[1])

        book = lookup(first)
        if book is None and len(segments) >= 3:
            book = lookup(segments[1])
        if book is None and first == LEGACY_BOOK_ID:
            logger.debug(f"Legacy shared directory has no matching book: {path}")
        return book

    # =========================================================================
    # Read / copy
    # =========================================================================

    def read(self, path: Path | str) -> FileSnapshot:
        """
        Read a contact file.

        Raises:
            OSError: If the file cannot be read
            UnicodeDecodeError: If the file is not UTF-8
        """
        path = Path(path)
        # newline="" keeps CRLF so the hash matches what was written
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
        return FileSnapshot(path=path, text=text, mtime=mtime_of(path), hash=content_hash(text))

    def seed_account(self, book: AddressBook, username: str) -> int:
        """
        Copy master files missing from an account directory.

        Existing files are left alone; modification times are preserved.

        Returns:
            Number of files copied
        """
        target = self.account_dir(username)
        target.mkdir(parents=True, exist_ok=True)
        copied = 0
        for source in self.list_vcards(self.master_dir(book)):
            destination = target / source.name
            if destination.exists():
                continue
            shutil.copy2(source, destination)
            copied += 1
        if copied:
            logger.info(f"Seeded {copied} contacts into {username}")
        return copied

    def mirror(self, book: AddressBook, username: str) -> int:
        """
        Copy master files that are missing or differ into an account directory.

        Nothing is ever deleted from the target.

        Returns:
            Number of files copied
        """
        target = self.account_dir(username)
        self.ensure_collection(target, book.name)
        copied = 0
        for source in self.list_vcards(self.master_dir(book)):
            destination = target / source.name
            if destination.exists() and filecmp.cmp(source, destination, shallow=False):
                continue
            shutil.copy2(source, destination)
            copied += 1
        if copied:
            logger.debug(f"Mirrored {copied} files of {book.id} into {username}")
        return copied
