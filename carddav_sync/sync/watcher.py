"""
Debounced filesystem watcher for the collection tree.

watchdog events are turned into ChangeEvents and pushed onto a queue. A
single worker thread runs the debounce state machine
(idle -> pending -> flushing -> idle): every event restarts the window,
and when the window expires the whole pending batch is handed to one
callback. Removals are additionally reported synchronously as they
arrive, before the batch is flushed.
"""

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from carddav_sync.storage.filesystem import is_vcard_file

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 2.0


class ChangeKind(Enum):
    """Kind of change observed on a contact file."""

    ADDED = "add"
    CHANGED = "change"
    REMOVED = "unlink"


@dataclass(frozen=True)
class ChangeEvent:
    """A change to one contact file."""

    kind: ChangeKind
    path: Path


class DebounceState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    FLUSHING = "flushing"


_STOP = object()


class Debouncer:
    """
    Coalesces change events into batches.

    Usage:
        debouncer = Debouncer(on_flush=lambda batch: engine.inbound_pass(),
                              on_unlink=engine.remove_contact_file,
                              window=2.0)
        debouncer.start()
        debouncer.submit(ChangeEvent(ChangeKind.CHANGED, path))
        ...
        debouncer.stop()

    Attributes:
        window: Quiet period in seconds before a batch is flushed
        state: Current DebounceState
    """

    def __init__(
        self,
        on_flush: Callable[[list[ChangeEvent]], object],
        window: float = DEFAULT_DEBOUNCE,
        on_unlink: Optional[Callable[[Path], object]] = None,
    ):
        self.on_flush = on_flush
        self.on_unlink = on_unlink
        self.window = window
        self.state = DebounceState.IDLE
        self.flush_count = 0
        self._queue: "queue.Queue[Union[ChangeEvent, object]]" = queue.Queue()
        self._pending: dict[Path, ChangeEvent] = {}
        self._deadline: Optional[float] = None
        self._thread: Optional[threading.Thread] = None

    def submit(self, event: ChangeEvent) -> None:
        """Queue an event; safe to call from any thread."""
        self._queue.put(event)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="carddav-sync-debounce", daemon=True
        )
        self._thread.start()

    def stop(self, flush: bool = False, timeout: float = 10.0) -> None:
        """
        Stop the worker thread.

        Args:
            flush: Flush a pending batch before stopping instead of dropping it
            timeout: Seconds to wait for the worker to finish
        """
        if self._thread is None:
            return
        self._queue.put((_STOP, flush))
        self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            timeout = None
            if self._deadline is not None:
                timeout = max(0.0, self._deadline - time.monotonic())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                self._flush()
                continue

            if isinstance(item, ChangeEvent):
                self._accept(item)
                continue
            # Anything else is the stop sentinel
            _, flush = item
            if flush and self._pending:
                self._flush()
            return

    def _accept(self, event: ChangeEvent) -> None:
        if event.kind == ChangeKind.REMOVED and self.on_unlink is not None:
            try:
                self.on_unlink(event.path)
            except Exception as e:
                logger.error(f"Targeted removal failed for {event.path}: {e}")
        self._pending[event.path] = event
        self._deadline = time.monotonic() + self.window
        self.state = DebounceState.PENDING

    def _flush(self) -> None:
        self.state = DebounceState.FLUSHING
        batch = list(self._pending.values())
        self._pending.clear()
        self._deadline = None
        logger.debug(f"Flushing {len(batch)} file changes")
        try:
            self.on_flush(batch)
        except Exception as e:
            logger.error(f"Batched sync failed: {e}", exc_info=True)
        finally:
            self.flush_count += 1
            self.state = DebounceState.IDLE


class ContactFileEventHandler(FileSystemEventHandler):
    """Translates watchdog events on ``.vcf`` files into ChangeEvents."""

    def __init__(self, debouncer: Debouncer):
        self.debouncer = debouncer

    @staticmethod
    def _relevant(event: FileSystemEvent, raw_path: Union[str, bytes]) -> Optional[Path]:
        if event.is_directory:
            return None
        path = Path(os.fsdecode(raw_path))
        return path if is_vcard_file(path) else None

    def _emit(self, kind: ChangeKind, path: Optional[Path]) -> None:
        if path is not None:
            logger.debug(f"File {kind.value}: {path}")
            self.debouncer.submit(ChangeEvent(kind, path))

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.ADDED, self._relevant(event, event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.CHANGED, self._relevant(event, event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(ChangeKind.REMOVED, self._relevant(event, event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        # Atomic writes rename a hidden temp file onto the target
        self._emit(ChangeKind.REMOVED, self._relevant(event, event.src_path))
        self._emit(ChangeKind.ADDED, self._relevant(event, event.dest_path))


class ContactWatcher:
    """
    Watches the whole collection tree and triggers batched inbound passes.

    Master, composite, per-user and read-only directories all live under
    the collection root, so one recursive watch covers directories created
    after startup as well.

    Usage:
        watcher = ContactWatcher(files.collection_root,
                                 on_batch=lambda batch: engine.inbound_pass(),
                                 on_unlink=engine.remove_contact_file)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root: Path,
        on_batch: Callable[[list[ChangeEvent]], object],
        on_unlink: Optional[Callable[[Path], object]] = None,
        debounce: float = DEFAULT_DEBOUNCE,
    ):
        self.root = Path(root)
        self.debouncer = Debouncer(on_flush=on_batch, window=debounce, on_unlink=on_unlink)
        self.handler = ContactFileEventHandler(self.debouncer)
        self._observer: Optional[Observer] = None  # type: ignore[valid-type]

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        self.debouncer.start()
        observer = Observer()
        observer.schedule(self.handler, str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.root} (debounce {self.debouncer.window:g}s)")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=10)
        self._observer = None
        self.debouncer.stop()
        logger.info("Stopped watching collection tree")
