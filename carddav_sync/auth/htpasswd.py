"""
Credential store for the CardDAV server's htpasswd-style users file.

Provides:
- Account listing and lookup, always re-read from disk
- bcrypt hashing for new and changed passwords
- Hash copying for derived (composite and read-only) accounts
- A process-wide writer lock (thread mutex plus lock file) with atomic
  temp-file-and-rename writes
"""

from __future__ import annotations

import contextlib
import logging
import os
import random
import re
import threading
import time
from collections.abc import Iterator
from pathlib import Path

import bcrypt

from carddav_sync.auth.errors import (
    AlreadyExistsError,
    FileSystemError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_BCRYPT_ROUNDS = 10
DEFAULT_LOCK_TIMEOUT = 10.0

# A lock file older than this is assumed to belong to a dead process
STALE_LOCK_AGE = 60.0

# Retry backoff bounds while the lock file is held elsewhere (seconds)
LOCK_RETRY_MIN = 0.01
LOCK_RETRY_MAX = 0.2

MAX_USERNAME_LENGTH = 255
MAX_PASSWORD_LENGTH = 4096

# bcrypt only reads the first 72 bytes of a password
BCRYPT_MAX_BYTES = 72

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_username(username: str) -> None:
    """
    Check that a username can be stored in the users file.

    Raises:
        ValidationError: If the username is empty, too long, contains the
                         field separator or a line break, or uses characters
                         outside letters, digits, ``_``, ``-`` and ``.``
    """
    if not username or not isinstance(username, str):
        raise ValidationError("Username is required")
    if len(username) > MAX_USERNAME_LENGTH:
        raise ValidationError(
            f"Username cannot exceed {MAX_USERNAME_LENGTH} characters"
        )
    if ":" in username or "\n" in username or "\r" in username:
        raise ValidationError(
            "Username cannot contain colons, newlines, or carriage returns"
        )
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(
            "Username can only contain letters, numbers, underscores, "
            "hyphens, and dots"
        )


def validate_password(password: str) -> None:
    """
    Check that a password is acceptable.

    Raises:
        ValidationError: If the password is empty or too long
    """
    if not password or not isinstance(password, str):
        raise ValidationError("Password is required")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password cannot exceed {MAX_PASSWORD_LENGTH} characters"
        )


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def _entry_username(line: str) -> str | None:
    """Return the username of a users file line, or None for comments/blanks."""
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    return stripped.split(":", 1)[0] or None


class CredentialStore:
    """
    Manager for the ``username:hash`` users file read by the CardDAV server.

    The file is the only source of truth: every read goes to disk, and
    every mutation is a locked read-modify-write followed by an atomic
    rename.

    Usage:
        store = CredentialStore(Path('/data/users'))
        store.create('alice', 'secret')
        store.set_hash('alice-<book-id>', store.get_hash('alice'))

    Attributes:
        users_file: Path to the users file
        bcrypt_rounds: Cost factor used for new hashes
        lock_timeout: Seconds to wait for the writer lock
    """

    def __init__(
        self,
        users_file: Path | str,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ):
        self.users_file = Path(users_file)
        self.bcrypt_rounds = bcrypt_rounds
        self.lock_timeout = lock_timeout
        self.lock_file = self.users_file.with_name(self.users_file.name + ".lock")
        self.temp_file = self.users_file.with_name(self.users_file.name + ".tmp")
        self._mutex = threading.Lock()

    # =========================================================================
    # Locking
    # =========================================================================

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold the writer lock for the duration of the block.

        Raises:
            FileSystemError: If the lock cannot be acquired within
                             lock_timeout, or the lock file cannot be created
        """
        deadline = time.monotonic() + self.lock_timeout
        if not self._mutex.acquire(timeout=self.lock_timeout):
            raise FileSystemError(
                f"Timed out waiting for lock on {self.users_file}", "ETIMEDOUT"
            )
        try:
            self._acquire_lock_file(deadline)
            try:
                yield
            finally:
                self._release_lock_file()
        finally:
            self._mutex.release()

    def _acquire_lock_file(self, deadline: float) -> None:
        delay = LOCK_RETRY_MIN
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_stale_lock():
                    continue
                if time.monotonic() >= deadline:
                    raise FileSystemError(
                        f"Timed out waiting for lock file {self.lock_file}",
                        "ETIMEDOUT",
                    ) from None
                time.sleep(random.uniform(LOCK_RETRY_MIN, delay))
                delay = min(delay * 2, LOCK_RETRY_MAX)
                continue
            except OSError as e:
                raise FileSystemError.from_os_error("Failed to acquire lock", e) from e

            try:
                os.write(fd, str(os.getpid()).encode("ascii"))
            finally:
                os.close(fd)
            return

    def _break_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            # Released between our open() and stat(); retry immediately
            return True
        if age < STALE_LOCK_AGE:
            return False
        logger.warning(f"Removing stale lock file {self.lock_file} ({age:.0f}s old)")
        with contextlib.suppress(FileNotFoundError):
            self.lock_file.unlink()
        return True

    def _release_lock_file(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.lock_file} vanished before release")

    # =========================================================================
    # File I/O
    # =========================================================================

    def _read_lines(self) -> list[str]:
        try:
            content = self.users_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise FileSystemError.from_os_error("Failed to read users file", e) from e
        return content.splitlines()

    def _write_lines(self, lines: list[str]) -> None:
        """Replace the users file atomically. Caller must hold the lock."""
        while lines and not lines[-1].strip():
            lines.pop()
        content = "\n".join(lines) + "\n" if lines else ""
        try:
            self.users_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.temp_file, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(self.temp_file, self.users_file)
        except OSError as e:
            with contextlib.suppress(OSError):
                self.temp_file.unlink()
            raise FileSystemError.from_os_error("Failed to write users file", e) from e

    def hash_password(self, password: str) -> str:
        """bcrypt hash of a password at the configured cost."""
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        return bcrypt.hashpw(_password_bytes(password), salt).decode("utf-8")

    # =========================================================================
    # Read operations
    # =========================================================================

    def list_users(self) -> list[str]:
        """Return every username in file order."""
        users = []
        for line in self._read_lines():
            username = _entry_username(line)
            if username:
                users.append(username)
        return users

    def exists(self, username: str) -> bool:
        """Check whether an account exists."""
        validate_username(username)
        return username in self.list_users()

    def get_hash(self, username: str) -> str | None:
        """Return the stored password hash of an account, or None."""
        for line in self._read_lines():
            if _entry_username(line) == username:
                return line.strip().split(":", 1)[1] if ":" in line else None
        return None

    def verify(self, username: str, password: str) -> bool:
        """Check a password against the stored bcrypt hash."""
        stored = self.get_hash(username)
        if not stored or not password:
            return False
        try:
            return bcrypt.checkpw(_password_bytes(password), stored.encode("utf-8"))
        except ValueError:
            logger.warning(f"Stored hash for {username} is not a bcrypt hash")
            return False

    # =========================================================================
    # Mutations
    # =========================================================================

    def create(self, username: str, password: str) -> None:
        """
        Create an account with a freshly hashed password.

        Raises:
            ValidationError: If the username or password is invalid
            AlreadyExistsError: If the account already exists
            FileSystemError: If the file or lock cannot be accessed
        """
        validate_username(username)
        validate_password(password)

        with self.locked():
            lines = self._read_lines()
            if any(_entry_username(line) == username for line in lines):
                raise AlreadyExistsError(username)
            lines.append(f"{username}:{self.hash_password(password)}")
            self._write_lines(lines)
        logger.info(f"Created account {username}")

    def set_hash(self, username: str, password_hash: str) -> None:
        """
        Store a precomputed hash for an account, creating it if absent.

        Used for derived accounts whose hash is copied from another entry;
        the hash is never re-hashed.

        Raises:
            ValidationError: If the username or hash is invalid
            FileSystemError: If the file or lock cannot be accessed
        """
        validate_username(username)
        if not password_hash or "\n" in password_hash or "\r" in password_hash:
            raise ValidationError("Password hash is required and must be one line")

        with self.locked():
            lines = self._read_lines()
            entry = f"{username}:{password_hash}"
            found = False
            for index, line in enumerate(lines):
                if _entry_username(line) == username:
                    lines[index] = entry
                    found = True
            if not found:
                lines.append(entry)
            self._write_lines(lines)
        logger.debug(f"Set password hash for {username}")

    def update(self, username: str, password: str) -> str:
        """
        Change an account's password.

        Returns:
            The new hash, so derived accounts can be updated with it

        Raises:
            ValidationError: If the username or password is invalid
            NotFoundError: If the account does not exist
            FileSystemError: If the file or lock cannot be accessed
        """
        validate_username(username)
        validate_password(password)

        with self.locked():
            lines = self._read_lines()
            new_hash = self.hash_password(password)
            found = False
            for index, line in enumerate(lines):
                if _entry_username(line) == username:
                    lines[index] = f"{username}:{new_hash}"
                    found = True
            if not found:
                raise NotFoundError(username)
            self._write_lines(lines)
        logger.info(f"Updated password for {username}")
        return new_hash

    def delete(self, username: str) -> None:
        """
        Remove an account.

        Raises:
            ValidationError: If the username is invalid
            NotFoundError: If the account does not exist
            FileSystemError: If the file or lock cannot be accessed
        """
        validate_username(username)

        with self.locked():
            lines = self._read_lines()
            kept = [line for line in lines if _entry_username(line) != username]
            if len(kept) == len(lines):
                raise NotFoundError(username)
            self._write_lines(kept)
        logger.info(f"Deleted account {username}")
