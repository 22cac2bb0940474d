"""
One-time layout migrations of the collection tree.

Each migration is guarded by a sentinel row in ``migrations_done`` and is
marked done even when there is nothing to migrate, so it runs at most once
per database.
"""

from __future__ import annotations

import logging
import shutil
from typing import TYPE_CHECKING

from carddav_sync.auth.composite import derive_name, is_base_username
from carddav_sync.storage.filesystem import MARKER_FILE

if TYPE_CHECKING:
    from carddav_sync.auth.composite import CompositeAccountManager
    from carddav_sync.auth.htpasswd import CredentialStore
    from carddav_sync.storage.db import ContactDatabase
    from carddav_sync.storage.filesystem import ContactFileStore

logger = logging.getLogger(__name__)

PATH_MIGRATION = "address_book_path_migration"
COMPOSITE_USERS_MIGRATION = "composite_users_migration"


def run_path_migration(
    db: ContactDatabase, files: ContactFileStore, credentials: CredentialStore
) -> bool:
    """
    Rename slug-named directories to book ids.

    Masters move from ``collection-root/{slug}`` to ``collection-root/{id}``
    and per-user collections from ``{user}/{slug}`` to ``{user}/{id}``.
    A rename is skipped when the target already exists.

    Returns:
        True if the migration ran, False if it was already done
    """
    if db.is_migration_done(PATH_MIGRATION):
        return False

    books = db.list_books()
    root = files.collection_root
    if not books or not root.is_dir():
        logger.info("Path migration skipped (no address books or collection root)")
        db.mark_migration_done(PATH_MIGRATION)
        return True

    logger.info("Running one-time path migration (slug -> id)...")
    for book in books:
        old, new = root / book.slug, root / book.id
        if book.slug != book.id and old.is_dir() and not new.exists():
            old.rename(new)
            logger.info(f"Renamed master path: {book.slug} -> {book.id}")

    for username in credentials.list_users():
        user_dir = root / username
        if not user_dir.is_dir():
            continue
        for book in books:
            old, new = user_dir / book.slug, user_dir / book.id
            if book.slug != book.id and old.is_dir() and not new.exists():
                old.rename(new)
                logger.info(
                    f"Renamed user path: {username}/{book.slug} -> {username}/{book.id}"
                )

    db.mark_migration_done(PATH_MIGRATION)
    logger.info("Path migration completed")
    return True


def run_composite_users_migration(
    db: ContactDatabase,
    files: ContactFileStore,
    credentials: CredentialStore,
    composites: CompositeAccountManager,
) -> bool:
    """
    Create composite accounts for existing users and move their legacy files.

    For every base user and every book the user can access, the composite
    account is ensured and files from ``{user}/{bookId}/`` are copied into
    ``{user}-{bookId}/`` where missing. Per-user failures are logged and do
    not stop the migration.

    Returns:
        True if the migration ran, False if it was already done
    """
    if db.is_migration_done(COMPOSITE_USERS_MIGRATION):
        return False

    books = db.list_books()
    base_users = [u for u in credentials.list_users() if is_base_username(u)]
    if not books or not base_users:
        logger.info("Composite users migration skipped (no address books or users)")
        db.mark_migration_done(COMPOSITE_USERS_MIGRATION)
        return True

    logger.info("Running one-time composite users migration...")
    created = 0
    copied = 0
    for username in base_users:
        for book in db.get_books_for_user(username):
            name = derive_name(username, book.id)
            try:
                if composites.ensure(username, book.id):
                    created += 1
                copied += _copy_legacy_files(files, username, book.id, name)
            except Exception as e:
                logger.error(f"Failed to migrate {name}: {e}")

    db.mark_migration_done(COMPOSITE_USERS_MIGRATION)
    logger.info(
        f"Composite users migration completed. Created {created} composite "
        f"users, migrated {copied} files."
    )
    return True


def _copy_legacy_files(
    files: ContactFileStore, username: str, book_id: str, composite: str
) -> int:
    old_dir = files.collection_root / username / book_id
    new_dir = files.account_dir(composite)
    if not old_dir.is_dir() or not new_dir.is_dir():
        return 0

    count = 0
    for source in old_dir.iterdir():
        if source.name == MARKER_FILE or not source.is_file():
            continue
        target = new_dir / source.name
        if target.exists():
            continue
        shutil.copy2(source, target)
        count += 1
    if count:
        logger.info(f"Migrated {count} files from {username}/{book_id} to {composite}")
    return count
