"""
Error taxonomy for credential store operations.

Each error carries the HTTP status analogue the façade reports for it.
"""

from __future__ import annotations

import errno as errno_module


class CredentialError(Exception):
    """Base exception for credential store failures."""

    status_code = 500


class ValidationError(CredentialError):
    """Raised when a username or password has an invalid shape."""

    status_code = 400


class AlreadyExistsError(CredentialError):
    """Raised when creating an account that already exists."""

    status_code = 409

    def __init__(self, username: str):
        super().__init__(f"User {username} already exists")
        self.username = username


class NotFoundError(CredentialError):
    """Raised when updating or deleting an account that does not exist."""

    status_code = 404

    def __init__(self, username: str):
        super().__init__(f"User {username} does not exist")
        self.username = username


class FileSystemError(CredentialError):
    """
    Raised when the credential file or its lock cannot be accessed.

    Attributes:
        code: Symbolic errno name of the underlying failure (e.g. "EACCES"),
              or None when the failure has no errno
    """

    status_code = 500

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code

    @classmethod
    def from_os_error(cls, message: str, error: OSError) -> FileSystemError:
        code = errno_module.errorcode.get(error.errno) if error.errno else None
        return cls(f"{message}: {error.strerror or error}", code)


def http_status_for(exc: BaseException) -> int:
    """Map an exception to the HTTP status the façade should report."""
    if isinstance(exc, CredentialError):
        return exc.status_code
    return 500
