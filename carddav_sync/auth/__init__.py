"""
carddav_sync.auth - CardDAV account management

Credential file store, composite (per user and book) accounts, read-only
subscription accounts and the shared error taxonomy.
"""

from carddav_sync.auth.errors import (
    AlreadyExistsError,
    CredentialError,
    FileSystemError,
    NotFoundError,
    ValidationError,
    http_status_for,
)

__all__ = [
    "CredentialError",
    "ValidationError",
    "AlreadyExistsError",
    "NotFoundError",
    "FileSystemError",
    "http_status_for",
]
