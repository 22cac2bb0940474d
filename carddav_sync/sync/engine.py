"""
Sync engine for bidirectional database/file synchronization.

Orchestrates the two reconciliation passes between the contact database
and the CardDAV collection tree:
- Outbound (database -> files): writes changed contacts to every target
  book's master directory and fan-out accounts, sweeps orphaned master
  files and mirrors books into read-only subscription accounts
- Inbound (files -> database): imports new and changed files, records book
  membership, and revokes memberships whose files disappeared

Both passes are idempotent and fail open: a failing contact or file is
recorded as an ItemFailure and the loop continues.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from carddav_sync.auth.composite import CompositeAccountManager
from carddav_sync.auth.readonly import readonly_username
from carddav_sync.storage.db import ContactDatabase, ContactExistsError, utc_now
from carddav_sync.storage.filesystem import (
    ContactFileStore,
    FileSnapshot,
    file_name_for,
    mtime_of,
)
from carddav_sync.sync import vcard
from carddav_sync.sync.address_book import LEGACY_BOOK, AddressBook
from carddav_sync.sync.conflict import ConflictResolver, ConflictSide, SyncDirection
from carddav_sync.sync.contact import (
    Contact,
    SyncMetadata,
    SyncOrigin,
    content_hash,
    contact_fields_from_vcard,
    render_vcard,
)
from carddav_sync.sync.results import ItemFailure
from carddav_sync.sync.vcard import VCardData

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    """
    Counters for one pass.

    Tracks every outcome so the pass summary can be logged and shown.
    """

    considered: int = 0
    created: int = 0
    updated: int = 0
    written: int = 0
    skipped: int = 0
    conflicts: int = 0
    deleted: int = 0
    revoked: int = 0
    mirrored: int = 0
    failed: int = 0

    def summary(self) -> str:
        """One-line summary for logs."""
        return (
            f"considered={self.considered} created={self.created} "
            f"updated={self.updated} written={self.written} "
            f"skipped={self.skipped} conflicts={self.conflicts} "
            f"deleted={self.deleted} revoked={self.revoked} "
            f"mirrored={self.mirrored} failed={self.failed}"
        )


@dataclass
class PassResult:
    """
    Result of one reconciliation pass.

    Attributes:
        direction: Which pass ran
        started_at: Start of the pass (UTC)
        finished_at: End of the pass (UTC)
        stats: Outcome counters
        failures: Per-item failures collected by the fail-open loops
    """

    direction: SyncDirection
    started_at: datetime
    finished_at: Optional[datetime] = None
    stats: SyncStats = field(default_factory=SyncStats)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def fail(self, item: str, error: BaseException) -> None:
        self.failures.append(ItemFailure(item, error))
        self.stats.failed += 1

    def summary(self) -> str:
        """
        Human-readable summary of the pass.

        Returns:
            Multi-line string with counters and failures
        """
        label = "Outbound" if self.direction == SyncDirection.OUTBOUND else "Inbound"
        lines = [f"{label} pass: {self.stats.summary()}"]
        for failure in self.failures:
            lines.append(f"  failed {failure}")
        return "\n".join(lines)


class SyncEngine:
    """
    Reconciles the contact database with the CardDAV collection tree.

    Usage:
        engine = SyncEngine(database, files, composites)

        result = engine.outbound_pass()
        print(result.summary())

        result = engine.inbound_pass()

        # Watcher hook for a vanished file
        engine.remove_contact_file(path)
    """

    def __init__(
        self,
        database: ContactDatabase,
        files: ContactFileStore,
        composites: CompositeAccountManager,
        resolver: Optional[ConflictResolver] = None,
    ):
        """
        Initialize the sync engine.

        Args:
            database: Persistence collaborator
            files: Collection tree adapter
            composites: Provides the fan-out account set per book
            resolver: Conflict detector/resolver (default: ConflictResolver())
        """
        self.database = database
        self.files = files
        self.composites = composites
        self.resolver = resolver or ConflictResolver()
        self.last_inbound_started_at: Optional[datetime] = None

    # =========================================================================
    # Book resolution
    # =========================================================================

    def _books(self) -> tuple[list[AddressBook], bool]:
        """Known books and whether the installation runs in legacy mode."""
        books = self.database.list_books()
        if not books:
            return [LEGACY_BOOK], True
        return books, False

    def _target_books(
        self, contact: Contact, books_by_id: dict[str, AddressBook], legacy: bool
    ) -> list[AddressBook]:
        """
        Books a contact is written to.

        A contact without a resolvable membership is assigned to the default
        book, and that assignment is stored.
        """
        if legacy:
            return [LEGACY_BOOK]

        targets = [
            books_by_id[book_id]
            for book_id in self.database.get_membership(contact.id)
            if book_id in books_by_id
        ]
        if targets:
            return targets

        default = self.database.get_default_book()
        if default is None:
            return []
        logger.debug(f"Assigning contact {contact.id} to default book {default.id}")
        self.database.set_membership(contact.id, [default.id])
        return [default]

    def _file_accounts(
        self,
        book: AddressBook,
        legacy: bool,
        fanout: Optional[dict[str, list[str]]] = None,
    ) -> list[str]:
        """Accounts that may hold a copy of the book's files."""
        if fanout is not None:
            usernames = set(fanout.get(book.id, []))
        else:
            usernames = set(self.composites.fanout_usernames(book))
        if not legacy:
            usernames.update(self.files.account_dirs_for_book(book))
        return sorted(usernames)

    def _confirmed_file_names(
        self, books: list[AddressBook], legacy: bool
    ) -> dict[str, set[str]]:
        """Book id -> file names of every contact the database still assigns."""
        confirmed: dict[str, set[str]] = {book.id: set() for book in books}
        memberships = {} if legacy else self.database.get_all_memberships()
        default = None if legacy else self.database.get_default_book()

        for contact in self.database.get_all():
            if not contact.vcard_id:
                continue
            if legacy:
                book_ids = [LEGACY_BOOK.id]
            else:
                book_ids = memberships.get(contact.id) or (
                    [default.id] if default else []
                )
            for book_id in book_ids:
                confirmed.setdefault(book_id, set()).add(file_name_for(contact.vcard_id))
        return confirmed

    # =========================================================================
    # Outbound pass
    # =========================================================================

    def outbound_pass(self) -> PassResult:
        """
        Write changed contacts to the file store.

        Returns:
            PassResult with counters and per-contact failures

        Raises:
            DatabaseError: If the pending contacts cannot be listed
        """
        result = PassResult(direction=SyncDirection.OUTBOUND, started_at=utc_now())
        books, legacy = self._books()
        books_by_id = {book.id: book for book in books}
        fanout = {book.id: self.composites.fanout_usernames(book) for book in books}

        pending = self.database.get_contacts_needing_sync()
        result.stats.considered = len(pending)

        for contact in pending:
            try:
                self._push_contact(contact, books_by_id, legacy, fanout, result)
            except Exception as e:
                logger.error(f"Outbound sync failed for contact {contact.id}: {e}")
                result.fail(contact.id, e)

        try:
            self._sweep_orphans(books, legacy, fanout, result)
        except Exception as e:
            logger.error(f"Orphan sweep failed: {e}")
            result.fail("orphan-sweep", e)

        if not legacy:
            self._mirror_readonly(books_by_id, result)

        result.finished_at = utc_now()
        logger.info(f"Outbound pass: {result.stats.summary()}")
        return result

    def _push_contact(
        self,
        contact: Contact,
        books_by_id: dict[str, AddressBook],
        legacy: bool,
        fanout: dict[str, list[str]],
        result: PassResult,
    ) -> None:
        vcard_id = contact.vcard_id
        if vcard_id is None:
            result.stats.skipped += 1
            return
        targets = self._target_books(contact, books_by_id, legacy)
        if not targets:
            logger.warning(f"Contact {contact.id} has no address book, skipping")
            result.stats.skipped += 1
            return

        text = render_vcard(contact)
        new_hash = content_hash(text)
        name = file_name_for(vcard_id)
        mtimes: list[datetime] = []
        wrote = False
        file_won = False
        incomplete = False

        for book in targets:
            master = self.files.master_dir(book) / name
            existing = self.files.read(master) if master.exists() else None
            usernames = fanout.get(book.id, [])

            if existing is not None and existing.hash == new_hash:
                # Master is current; only missing or stale fan-out copies are written
                write = self.files.refresh_fanout(book, vcard_id, text, usernames)
                mtimes.append(existing.mtime)
            else:
                if existing is not None:
                    info = self.resolver.detect(
                        contact, existing.mtime, existing.hash, SyncDirection.OUTBOUND
                    )
                    if info.has_conflict:
                        result.stats.conflicts += 1
                        # Ties go to the database on the outbound side
                        resolution = self.resolver.resolve(
                            info, tie_winner=ConflictSide.DATABASE
                        )
                        logger.info(
                            f"Conflict on {vcard_id} in {book.id}: {resolution.reason}"
                        )
                        if resolution.winning_side == ConflictSide.FILE:
                            file_won = True
                            continue
                write = self.files.write(book, vcard_id, text, usernames)
                mtimes.append(mtime_of(master))

            for failure in write.failures:
                result.fail(f"{contact.id}@{failure.item}", failure.error)
                incomplete = True
            if write.succeeded:
                wrote = True

        if wrote:
            result.stats.written += 1
            logger.debug(f"Wrote contact {vcard_id} to {len(targets)} books")
        else:
            result.stats.skipped += 1

        if file_won:
            # Watermark stays put; the inbound pass imports the file version
            return
        if incomplete:
            # Still pending, so the failed copies are retried next pass
            logger.warning(f"Contact {vcard_id} was not written to every account")
            return

        self.database.update_sync_metadata(
            contact.id,
            SyncMetadata(
                last_synced_to_file_at=utc_now(),
                content_hash=new_hash,
                file_mtime=max(mtimes) if mtimes else None,
            ),
        )

    def _sweep_orphans(
        self,
        books: list[AddressBook],
        legacy: bool,
        fanout: dict[str, list[str]],
        result: PassResult,
    ) -> None:
        """Delete master files (and their fan-out copies) no contact claims."""
        confirmed = self._confirmed_file_names(books, legacy)
        cutoff = self.last_inbound_started_at

        for book in books:
            claimed = confirmed.get(book.id, set())
            for vcard_id, path in self.files.list_master_ids(book).items():
                if path.name in claimed:
                    continue
                try:
                    if cutoff is not None and mtime_of(path) > cutoff:
                        # Not yet seen by an inbound pass
                        logger.debug(f"Keeping unimported master file {path}")
                        continue
                    removed = self.files.delete(
                        book, vcard_id, self._file_accounts(book, legacy, fanout)
                    )
                except Exception as e:
                    logger.error(f"Failed to remove orphan {path}: {e}")
                    result.fail(str(path), e)
                    continue
                for failure in removed.failures:
                    result.fail(failure.item, failure.error)
                logger.info(f"Deleted orphaned contact file {vcard_id} from {book.id}")
                result.stats.deleted += 1

    def _mirror_readonly(
        self, books_by_id: dict[str, AddressBook], result: PassResult
    ) -> None:
        for subscription in self.database.list_readonly_subscriptions():
            book = books_by_id.get(subscription.address_book_id)
            if book is None:
                continue
            username = readonly_username(book.id)
            try:
                result.stats.mirrored += self.files.mirror(book, username)
            except Exception as e:
                logger.error(f"Failed to mirror {book.id} into {username}: {e}")
                result.fail(username, e)

    # =========================================================================
    # Inbound pass
    # =========================================================================

    def inbound_pass(self) -> PassResult:
        """
        Import new and changed contact files into the database.

        Returns:
            PassResult with counters and per-file failures

        Raises:
            DatabaseError: If books or memberships cannot be read
        """
        started = utc_now()
        self.last_inbound_started_at = started
        result = PassResult(direction=SyncDirection.INBOUND, started_at=started)
        books, legacy = self._books()
        configured = [] if legacy else books

        latest: dict[tuple[str, str], tuple[AddressBook, FileSnapshot, VCardData]] = {}
        for path in self.files.list_all(configured):
            try:
                book = self.files.resolve_book_from_path(path, configured)
                if book is None:
                    logger.debug(f"No address book for {path}, skipping")
                    continue
                snapshot = self.files.read(path)
                data = vcard.parse(snapshot.text)
            except Exception as e:
                logger.error(f"Failed to read contact file {path}: {e}")
                result.fail(str(path), e)
                continue

            vcard_id = data.uid or Path(path).stem
            key = (book.id, vcard_id)
            # Stale copies of the same contact in other directories are ignored
            if key not in latest or snapshot.mtime > latest[key][1].mtime:
                latest[key] = (book, snapshot, data)

        result.stats.considered = len(latest)
        seen: dict[str, set[str]] = {}
        for (book_id, vcard_id), (book, snapshot, data) in latest.items():
            try:
                contact_id = self._pull_file(book, vcard_id, snapshot, data, legacy, result)
            except Exception as e:
                logger.error(f"Inbound sync failed for {snapshot.path}: {e}")
                result.fail(str(snapshot.path), e)
                continue
            if contact_id is None:
                continue
            seen.setdefault(book_id, set()).add(contact_id)

        observed = {book_id for book_id, _ in latest}
        try:
            if legacy:
                self._delete_vanished_legacy(observed, seen, result)
            else:
                self._revoke_missing(observed, seen, result)
        except Exception as e:
            logger.error(f"Membership reconciliation failed: {e}")
            result.fail("membership-reconcile", e)

        result.finished_at = utc_now()
        logger.info(f"Inbound pass: {result.stats.summary()}")
        return result

    def _pull_file(
        self,
        book: AddressBook,
        vcard_id: str,
        snapshot: FileSnapshot,
        data: VCardData,
        legacy: bool,
        result: PassResult,
    ) -> Optional[str]:
        """
        Apply one file to the database.

        Returns:
            The contact id, or None if the file is a leftover of a removal
        """
        contact = self.database.get_by_external_id(vcard_id)

        if contact is None:
            if self._removed_since(vcard_id, book, snapshot):
                logger.debug(f"Ignoring leftover file {snapshot.path} of deleted {vcard_id}")
                result.stats.skipped += 1
                return None
            fields = contact_fields_from_vcard(data, snapshot.text)
            fields.vcard_id = vcard_id
            try:
                contact = self.database.create(fields, SyncOrigin.FILE)
                result.stats.created += 1
                logger.debug(f"Created contact {vcard_id} from {snapshot.path}")
            except ContactExistsError:
                # Raced with another writer; fall back to an update
                existing = self.database.get_by_external_id(vcard_id)
                if existing is None:
                    raise
                contact = self.database.update(existing.id, fields, SyncOrigin.FILE)
                result.stats.updated += 1
            self._record_inbound(contact.id, snapshot)
            if not legacy:
                self.database.add_membership(contact.id, book.id)
            return contact.id

        if not legacy and book.id not in self.database.get_membership(contact.id):
            if self._removed_since(vcard_id, book, snapshot):
                logger.debug(
                    f"Ignoring leftover file {snapshot.path}: {vcard_id} "
                    f"was removed from {book.id}"
                )
                result.stats.skipped += 1
                return None
            self.database.add_membership(contact.id, book.id)

        if snapshot.hash == contact.content_hash:
            if (
                contact.file_mtime != snapshot.mtime
                or contact.last_synced_from_file_at is None
            ):
                self.database.update_sync_metadata(
                    contact.id,
                    SyncMetadata(
                        last_synced_from_file_at=utc_now(), file_mtime=snapshot.mtime
                    ),
                )
            result.stats.skipped += 1
            return contact.id

        info = self.resolver.detect(
            contact, snapshot.mtime, snapshot.hash, SyncDirection.INBOUND
        )
        if info.has_conflict:
            result.stats.conflicts += 1
            # Ties go to the file on the inbound side
            resolution = self.resolver.resolve(info, tie_winner=ConflictSide.FILE)
            logger.info(f"Conflict on {vcard_id} in {book.id}: {resolution.reason}")
            if resolution.winning_side == ConflictSide.DATABASE:
                # Advance the watermark so this file version is not reconsidered
                self.database.update_sync_metadata(
                    contact.id,
                    SyncMetadata(
                        last_synced_from_file_at=utc_now(), file_mtime=snapshot.mtime
                    ),
                )
                result.stats.skipped += 1
                return contact.id

        fields = contact_fields_from_vcard(data, snapshot.text)
        fields.vcard_id = vcard_id
        self.database.update(contact.id, fields, SyncOrigin.FILE)
        self._record_inbound(contact.id, snapshot)
        result.stats.updated += 1
        logger.debug(f"Updated contact {vcard_id} from {snapshot.path}")
        return contact.id

    def _removed_since(
        self, vcard_id: str, book: AddressBook, snapshot: FileSnapshot
    ) -> bool:
        # Files not modified after the removal were written before it
        removed_at = self.database.get_removed_at(vcard_id, book.id)
        return removed_at is not None and snapshot.mtime <= removed_at

    def _record_inbound(self, contact_id: str, snapshot: FileSnapshot) -> None:
        self.database.update_sync_metadata(
            contact_id,
            SyncMetadata(
                last_synced_from_file_at=utc_now(),
                content_hash=snapshot.hash,
                file_mtime=snapshot.mtime,
                origin=SyncOrigin.FILE,
            ),
        )

    @staticmethod
    def _is_revocable(contact: Contact) -> bool:
        # Contacts still waiting for their first or next outbound write are
        # missing from disk for a benign reason
        if contact.origin == SyncOrigin.FILE:
            return True
        if contact.last_synced_to_file_at is None or contact.updated_at is None:
            return False
        return contact.updated_at <= contact.last_synced_to_file_at

    def _revoke_missing(
        self, observed: set[str], seen: dict[str, set[str]], result: PassResult
    ) -> None:
        """Drop memberships in observed books whose files have disappeared."""
        if not observed:
            return
        contacts = {c.id: c for c in self.database.get_all()}
        for contact_id, book_ids in self.database.get_all_memberships().items():
            contact = contacts.get(contact_id)
            if contact is None or not self._is_revocable(contact):
                continue
            revoked = False
            for book_id in book_ids:
                if book_id not in observed or contact_id in seen.get(book_id, set()):
                    continue
                if self.database.remove_membership(contact_id, book_id):
                    revoked = True
                    result.stats.revoked += 1
                    logger.info(f"Removed contact {contact.vcard_id} from book {book_id}")
            if not revoked or contact.origin != SyncOrigin.FILE:
                continue
            if not self.database.get_membership(contact_id):
                self.database.delete(contact_id)
                result.stats.deleted += 1
                logger.info(f"Deleted contact {contact.vcard_id}: no files remain")

    def _delete_vanished_legacy(
        self, observed: set[str], seen: dict[str, set[str]], result: PassResult
    ) -> None:
        """Legacy mode: delete file-born contacts that no directory holds."""
        if not observed:
            return
        present = seen.get(LEGACY_BOOK.id, set())
        for contact in self.database.get_all():
            if contact.id in present or contact.origin != SyncOrigin.FILE:
                continue
            if contact.last_synced_from_file_at is None:
                continue
            self.database.delete(contact.id)
            result.stats.deleted += 1
            logger.info(f"Deleted contact {contact.vcard_id}: no files remain")

    # =========================================================================
    # Targeted removal
    # =========================================================================

    def remove_contact_file(self, path: Path | str) -> bool:
        """
        Handle a contact file that was deleted on disk.

        Removes the contact from the file's book if it is still a member,
        deletes the book's remaining copies and deletes the contact once no
        membership remains. In legacy mode the contact and every copy are
        deleted directly.

        Returns:
            True if the database changed
        """
        path = Path(path)
        books, legacy = self._books()
        configured = [] if legacy else books
        book = self.files.resolve_book_from_path(path, configured)
        if book is None:
            return False

        contact = self.database.get_by_external_id(path.stem)
        if contact is None or contact.vcard_id is None:
            return False

        if legacy:
            self.database.delete(contact.id)
            logger.info(f"Deleted contact {contact.vcard_id} after file removal")
        else:
            if not self.database.remove_membership(contact.id, book.id):
                return False
            logger.info(f"Removed contact {contact.vcard_id} from book {book.id}")
            if not self.database.get_membership(contact.id):
                self.database.delete(contact.id)
                logger.info(f"Deleted contact {contact.vcard_id}: no books remain")

        removed = self.files.delete(
            book, contact.vcard_id, self._file_accounts(book, legacy)
        )
        for failure in removed.failures:
            logger.warning(f"Copy of {contact.vcard_id} left behind: {failure}")
        return True

    # =========================================================================
    # Convenience
    # =========================================================================

    def sync(self, direction: str = "both") -> list[PassResult]:
        """
        Run one or both passes.

        Args:
            direction: 'inbound', 'outbound' or 'both' (inbound first)

        Returns:
            PassResults in execution order
        """
        results = []
        if direction in ("inbound", "both"):
            results.append(self.inbound_pass())
        if direction in ("outbound", "both"):
            results.append(self.outbound_pass())
        return results

    def __repr__(self) -> str:
        return (
            f"SyncEngine(db={self.database.db_path}, "
            f"root={self.files.collection_root})"
        )
