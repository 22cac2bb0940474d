"""
Process-level engine value and readiness state.

The Engine owns every collaborator (database, credential store, file
store, composite accounts, sync engine, watcher, scheduler); it is built
once at startup and passed where needed. Readiness is the hook the HTTP
façade reads to answer health checks.
"""

import logging
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from carddav_sync.auth.composite import CompositeAccountManager
from carddav_sync.auth.htpasswd import CredentialStore, validate_password
from carddav_sync.auth.readonly import sync_readonly_accounts
from carddav_sync.config.settings import EngineSettings
from carddav_sync.daemon.scheduler import DaemonScheduler
from carddav_sync.storage.db import ContactDatabase
from carddav_sync.storage.filesystem import ContactFileStore
from carddav_sync.storage.migrations import (
    run_composite_users_migration,
    run_path_migration,
)
from carddav_sync.sync.engine import PassResult, SyncEngine
from carddav_sync.sync.results import BatchResult
from carddav_sync.sync.watcher import ChangeEvent, ContactWatcher
from carddav_sync.utils.logging import log_context
from carddav_sync.utils.paths import resolve_config_dir

logger = logging.getLogger(__name__)


class ReadinessState(Enum):
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"


class Readiness:
    """
    Startup state reported to health checks.

    A recorded startup error wins over completed migrations and keeps the
    process alive in the error state for diagnostics.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._migrations_complete = False
        self._startup_error: Optional[BaseException] = None

    def set_migrations_complete(self) -> None:
        with self._lock:
            self._migrations_complete = True

    def set_startup_error(self, error: BaseException) -> None:
        with self._lock:
            self._startup_error = error

    @property
    def state(self) -> ReadinessState:
        with self._lock:
            if self._startup_error is not None:
                return ReadinessState.ERROR
            if self._migrations_complete:
                return ReadinessState.READY
            return ReadinessState.STARTING

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._startup_error

    def as_response(self) -> tuple[int, dict[str, Any]]:
        """
        HTTP status and body for a readiness endpoint.

        Returns:
            (500, error) after a startup failure, (200, ready) once
            migrations completed, (503, starting) otherwise
        """
        state = self.state
        if state == ReadinessState.ERROR:
            return 500, {"status": state.value, "error": str(self.error)}
        if state == ReadinessState.READY:
            return 200, {"status": state.value}
        return 503, {"status": state.value}


class Engine:
    """
    Wires the sync collaborators together and drives their lifecycle.

    Usage:
        settings = EngineSettings.resolve(config, os.environ)
        engine = Engine(settings)
        engine.run_forever()

        # Or step by step (tests, one-shot CLI commands)
        engine.start()
        engine.tick()
    """

    def __init__(
        self,
        settings: EngineSettings,
        database: Optional[ContactDatabase] = None,
        config_dir: Optional[Path] = None,
    ):
        self.settings = settings
        if database is None:
            db_file = settings.database_file(resolve_config_dir(config_dir))
            db_file.parent.mkdir(parents=True, exist_ok=True)
            database = ContactDatabase(str(db_file), timeout=settings.db_timeout)
        self.database = database
        self.credentials = CredentialStore(
            settings.users_file,
            bcrypt_rounds=settings.bcrypt_rounds,
            lock_timeout=settings.lock_timeout,
        )
        self.files = ContactFileStore(settings.storage_root)
        self.composites = CompositeAccountManager(self.credentials, self.files, self.database)
        self.sync_engine = SyncEngine(self.database, self.files, self.composites)
        self.readiness = Readiness()
        self.watcher: Optional[ContactWatcher] = None
        self.scheduler: Optional[DaemonScheduler] = None
        self._last_readonly_sync: Optional[float] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> bool:
        """
        Run the startup sequence.

        Migrations, composite and read-only account provisioning, then one
        inbound and one outbound pass. Any failure is recorded in readiness
        instead of propagating.

        Returns:
            True if startup completed
        """
        try:
            with log_context(phase="startup"):
                self.database.initialize()
                run_path_migration(self.database, self.files, self.credentials)
                run_composite_users_migration(
                    self.database, self.files, self.credentials, self.composites
                )
                self.composites.ensure_all()
                self.sync_readonly_accounts()
                self.readiness.set_migrations_complete()

                self.sync_engine.inbound_pass()
                self.sync_engine.outbound_pass()
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            self.readiness.set_startup_error(e)
            return False

        logger.info("Engine started")
        return True

    def tick(self) -> bool:
        """
        One scheduler tick: outbound pass, composite ensure and, when due,
        the read-only account sync.

        Returns:
            True if every step finished without failures
        """
        if self.readiness.state == ReadinessState.ERROR:
            logger.debug("Skipping tick: engine is in error state")
            return False

        with log_context(phase="tick"):
            result = self.sync_engine.outbound_pass()
            ensured = self.composites.ensure_all()
            ok = result.ok and ensured.ok

            now = time.monotonic()
            if (
                self._last_readonly_sync is None
                or now - self._last_readonly_sync >= self.settings.readonly_auth_interval
            ):
                ok = self.sync_readonly_accounts().ok and ok
        return ok

    def sync_readonly_accounts(self) -> BatchResult:
        result = sync_readonly_accounts(self.credentials, self.database)
        self._last_readonly_sync = time.monotonic()
        return result

    def _on_watch_batch(self, batch: list[ChangeEvent]) -> PassResult:
        with log_context(phase="watch"):
            logger.info(f"Detected {len(batch)} file changes, running inbound pass")
            return self.sync_engine.inbound_pass()

    def start_watcher(self) -> ContactWatcher:
        if self.watcher is None:
            self.watcher = ContactWatcher(
                self.files.collection_root,
                on_batch=self._on_watch_batch,
                on_unlink=self.sync_engine.remove_contact_file,
                debounce=self.settings.watch_debounce,
            )
        self.watcher.start()
        return self.watcher

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.watcher is not None:
            self.watcher.stop()
        self.database.close()

    def run_forever(
        self,
        pid_file: Optional[Path] = None,
        use_pid_file: bool = True,
        watch: bool = True,
    ) -> None:
        """
        Start up, then run the scheduler until SIGTERM/SIGINT.

        A failed startup leaves the process running in the error state.
        """
        started = self.start()
        if started and watch:
            self.start_watcher()

        self.scheduler = DaemonScheduler(
            interval=self.settings.sync_interval,
            pid_file=pid_file,
            run_immediately=False,
            use_pid_file=use_pid_file,
        )
        self.scheduler.set_tick_callback(self.tick)
        try:
            self.scheduler.run()
        finally:
            if self.watcher is not None:
                self.watcher.stop()

    # =========================================================================
    # User lifecycle
    # =========================================================================

    def _book_ids_for(self, username: str) -> list[str]:
        if not self.database.list_books():
            return []
        return [book.id for book in self.database.get_books_for_user(username)]

    def create_user(self, username: str, password: str) -> BatchResult:
        """Create a base account and its composites for every accessible book."""
        self.credentials.create(username, password)
        return self.composites.reconcile(username, self._book_ids_for(username), [])

    def update_user_password(self, username: str, password: str) -> BatchResult:
        """Change a password and copy the new hash to the user's composites."""
        new_hash = self.credentials.update(username, password)
        return self.composites.update_password_hash(username, new_hash)

    def delete_user(self, username: str) -> None:
        """Retire the user's composites, then delete the base account."""
        for name in self.composites.composites_for(username):
            try:
                self.credentials.delete(name)
            except Exception as e:
                logger.error(f"Failed to retire {name}: {e}")
        self.credentials.delete(username)

    def grant_access(self, username: str, book_id: str) -> BatchResult:
        previous = self._book_ids_for(username)
        self.database.assign_user(username, book_id)
        return self.composites.reconcile(username, self._book_ids_for(username), previous)

    def revoke_access(self, username: str, book_id: str) -> BatchResult:
        previous = self._book_ids_for(username)
        self.database.unassign_user(username, book_id)
        return self.composites.reconcile(username, self._book_ids_for(username), previous)

    def set_readonly_password(self, book_id: str, password: str) -> BatchResult:
        """Enable (or change) the read-only subscription of a book."""
        validate_password(password)
        password_hash = self.credentials.hash_password(password)
        self.database.set_readonly_subscription(book_id, password_hash)
        return self.sync_readonly_accounts()

    def remove_readonly(self, book_id: str) -> BatchResult:
        self.database.remove_readonly_subscription(book_id)
        return self.sync_readonly_accounts()
