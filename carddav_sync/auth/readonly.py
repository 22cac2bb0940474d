"""
Read-only subscription accounts.

A book with a subscription row gets an account ``ro-{bookId}`` whose hash
is the stored subscription hash. Accounts for books that lost their
subscription are removed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from carddav_sync.auth.errors import NotFoundError
from carddav_sync.sync.results import BatchResult, ItemFailure

if TYPE_CHECKING:
    from carddav_sync.auth.htpasswd import CredentialStore
    from carddav_sync.storage.db import ContactDatabase

logger = logging.getLogger(__name__)

READONLY_USERNAME_PREFIX = "ro-"


def readonly_username(book_id: str) -> str:
    return f"{READONLY_USERNAME_PREFIX}{book_id}"


def sync_readonly_accounts(
    credentials: CredentialStore, db: ContactDatabase
) -> BatchResult:
    """
    Bring the ``ro-*`` credential entries in line with the subscription table.

    Returns:
        BatchResult of usernames set or removed, with per-account failures
    """
    result = BatchResult()
    subscriptions = db.list_readonly_subscriptions()
    wanted = {readonly_username(s.address_book_id): s for s in subscriptions}
    existing = {
        u for u in credentials.list_users() if u.startswith(READONLY_USERNAME_PREFIX)
    }

    for username, subscription in sorted(wanted.items()):
        if credentials.get_hash(username) == subscription.password_hash:
            continue
        try:
            credentials.set_hash(username, subscription.password_hash)
        except Exception as e:
            logger.error(f"Failed to set read-only account {username}: {e}")
            result.failures.append(ItemFailure(username, e))
        else:
            result.succeeded.append(username)

    for username in sorted(existing - set(wanted)):
        try:
            credentials.delete(username)
        except NotFoundError:
            logger.info(f"Read-only account {username} already removed")
        except Exception as e:
            logger.error(f"Failed to remove read-only account {username}: {e}")
            result.failures.append(ItemFailure(username, e))
        else:
            logger.info(f"Removed read-only account {username}")
            result.succeeded.append(username)

    return result
