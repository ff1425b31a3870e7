"""
SaveManager: on-demand saves and loads plus a background autosave loop.

The autosave loop runs on a daemon thread. It wakes every ``tick`` seconds,
counts ``autosave_interval`` ticks down and then saves to the next slot path
(``autosave_path`` with ``{num}`` replaced by 1..autosave_count, cycling).
Cancellation uses a ``threading.Event`` per loop; a loop that sees its event
set never starts another save.

Autosaves and on-demand saves are not mutually excluded. Both read the live
world, so a caller saving from another thread while an autosave is running
gets two independent captures.
"""
from __future__ import annotations

import logging
import posixpath
import threading
from typing import Optional, Tuple

from .errors import NoPriorSaveError, NotFoundError
from .events import EventBus, EventType
from .options import SaveOptions
from .registry import PersistenceRegistry
from .snapshot import Snapshot, capture_all
from .storage import FileSystem, normalize
from .world import World

logger = logging.getLogger(__name__)


class SaveManager:
    def __init__(
        self,
        options: SaveOptions,
        registry: PersistenceRegistry,
        world: World,
        *,
        bus: Optional[EventBus] = None,
        tick: float = 1.0,
    ) -> None:
        if options is None:
            raise ValueError("options must not be None")
        if tick <= 0:
            raise ValueError("tick must be positive")
        self._options = options.clone()
        self.registry = registry
        self.world = world
        self.bus = bus if bus is not None else EventBus()
        self.tick = tick

        self._lock = threading.Lock()
        self._latest: Optional[Tuple[FileSystem, str]] = None
        self._autosave_number = 1
        self._token: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

        if not self._options.autosave_enabled:
            return
        self._ensure_autosave_dir()
        self.restart_autosave()

    def __enter__(self) -> "SaveManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def options(self) -> SaveOptions:
        """A copy of the active options; use ``reconfigure`` to change them."""
        return self._options.clone()

    @property
    def latest_save(self) -> Optional[Tuple[FileSystem, str]]:
        """``(file_system, path)`` of the last successful save, if any."""
        with self._lock:
            return self._latest

    @property
    def autosaving(self) -> bool:
        with self._lock:
            thread, token = self._thread, self._token
        return thread is not None and thread.is_alive() and token is not None and not token.is_set()

    def _ensure_autosave_dir(self) -> None:
        directory = posixpath.dirname(normalize(self._options.autosave_slot_path(1)))
        if directory:
            self._options.autosave_storage.ensure_dir(directory)

    # Loading

    def load(self, fs: FileSystem, path: str) -> Snapshot:
        """Read and decode the save at ``path`` on ``fs``.

        Raises:
            NotFoundError: nothing exists at ``path``.
            DecodeError: the data does not decode to a snapshot.
        """
        options = self._options
        if options.load_handler is not None:
            return options.load_handler.load(self, fs, path)

        if not fs.exists(path):
            raise NotFoundError(path)
        with fs.open_read(path) as stream:
            snapshot = options.codec.load(stream, self.registry)
        logger.info("Loaded %d entities from %s", len(snapshot), path)
        return snapshot

    def load_latest(self) -> Snapshot:
        """Load the most recent save made by this manager.

        Raises:
            NoPriorSaveError: nothing has been saved yet.
        """
        latest = self.latest_save
        if latest is None:
            raise NoPriorSaveError("No recent save to load")
        fs, path = latest
        return self.load(fs, path)

    # Saving

    def save(self, path: str, snapshot: Optional[Snapshot] = None) -> Snapshot:
        """Save ``snapshot`` (or a fresh capture of the world) to ``path``.

        Returns the snapshot that was written.
        """
        return self._save(path, snapshot, autosave=False)

    def _save(
        self,
        path: str,
        snapshot: Optional[Snapshot],
        autosave: bool,
        options: Optional[SaveOptions] = None,
    ) -> Snapshot:
        if options is None:
            options = self._options
        if snapshot is None:
            snapshot = capture_all(self.registry, self.world)
        fs = options.autosave_storage if autosave else options.file_system

        if options.save_handler is not None:
            options.save_handler.save(self, path, autosave, snapshot)
        else:
            # Encode fully before opening the target so a bad value leaves the old file intact
            data = options.codec.encode(snapshot, self.registry)
            with fs.open_write(path) as stream:
                stream.write(data)

        with self._lock:
            self._latest = (fs, path)
        logger.info("%s %d entities to %s", "Autosaved" if autosave else "Saved", len(snapshot), path)
        self.bus.publish(
            EventType.SAVE_COMPLETED,
            {"path": path, "autosave": autosave, "entities": len(snapshot)},
        )
        return snapshot

    # Autosave

    def _next_autosave_path(self, options: SaveOptions) -> str:
        with self._lock:
            if self._autosave_number > options.autosave_count:
                self._autosave_number = 1
            slot = self._autosave_number
            self._autosave_number += 1
        return options.autosave_slot_path(slot)

    def _autosave_loop(self, token: threading.Event, options: SaveOptions) -> None:
        # Each loop keeps the options it was started with; reconfigure starts a new loop
        remaining = options.autosave_interval
        while not token.is_set():
            if token.wait(self.tick):
                return

            remaining -= 1
            if remaining > 0:
                continue

            path = self._next_autosave_path(options)
            try:
                self._save(path, None, autosave=True, options=options)
            except Exception as exc:
                logger.exception("Autosave to %s failed", path)
                self.bus.publish(EventType.AUTOSAVE_FAILED, {"path": path, "error": exc})
            if token.is_set():
                return

            remaining = options.autosave_interval

    def _start_locked(self) -> Optional[threading.Thread]:
        if self._token is not None:
            self._token.set()
        self._token = None
        self._thread = None
        options = self._options
        if not options.autosave_enabled:
            logger.debug("Autosave disabled; loop not started")
            return None
        token = threading.Event()
        thread = threading.Thread(
            target=self._autosave_loop,
            args=(token, options),
            name="gravekeeper-autosave",
            daemon=True,
        )
        self._token = token
        self._thread = thread
        logger.debug("Autosave loop started: every %d ticks of %.3fs", options.autosave_interval, self.tick)
        return thread

    def restart_autosave(self) -> None:
        """Cancel the running autosave loop and start a fresh one if enabled.

        The countdown starts over. The slot counter does not.
        """
        with self._lock:
            thread = self._start_locked()
        if thread is not None:
            thread.start()

    def reconfigure(self, options: SaveOptions) -> None:
        """Install new options and restart the autosave loop under them."""
        new_options = options.clone()
        with self._lock:
            # The old loop is cancelled before the new options become visible
            if self._token is not None:
                self._token.set()
            self._options = new_options
        if new_options.autosave_enabled:
            self._ensure_autosave_dir()
        self.restart_autosave()

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop autosaving and wait for the loop thread to exit."""
        with self._lock:
            token, thread = self._token, self._thread
            self._token = None
            self._thread = None
        if token is not None:
            token.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
