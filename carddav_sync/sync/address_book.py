"""
Address book model.

An address book is a named collection of contacts that is either public
(visible to every account) or private (visible to assigned accounts only).
Installations without any configured books run in legacy mode with a
single implicit public book.
"""

import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

LEGACY_BOOK_ID = "shared-contacts"
LEGACY_BOOK_NAME = "Shared Contacts"


@dataclass(frozen=True)
class AddressBook:
    """
    A contact collection.

    Attributes:
        id: Stable identifier (a UUID for configured books)
        name: Display name
        slug: Human-readable unique key
        is_public: True if every account can see the book
        legacy: True for the implicit book of a pre-multi-book installation
    """

    id: str
    name: str
    slug: str
    is_public: bool = True
    legacy: bool = False
    created_at: Optional[datetime] = None

    def __str__(self) -> str:
        return f"{self.name} ({self.id})"


LEGACY_BOOK = AddressBook(
    id=LEGACY_BOOK_ID,
    name=LEGACY_BOOK_NAME,
    slug=LEGACY_BOOK_ID,
    is_public=True,
    legacy=True,
)


def slugify(name: str) -> str:
    """
    Derive a slug from a book name.

    Usage:
        slugify("Family & Friends")  # 'family-friends'
    """
    normalized = unicodedata.normalize("NFKD", name)
    ascii_only = normalized.encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_only.lower()).strip("-")
    return slug or "book"
