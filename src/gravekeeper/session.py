from __future__ import annotations

import logging
from typing import Any, Optional

from .events import Event, EventBus, EventType
from .manager import SaveManager
from .options import SaveOptions
from .registry import PersistenceRegistry
from .snapshot import Snapshot, capture_all
from .storage import FileSystem
from .types import DEFAULT_LIBRARY, TypeLibrary
from .world import World

logger = logging.getLogger(__name__)


class PersistenceSession:
    """Wires a registry, a world and a SaveManager to one event bus.

    Publishing ``EventType.HOTLOAD`` (or calling ``hotload()``) after entity
    classes are redefined rebuilds the registry and restarts autosaving.
    """

    def __init__(
        self,
        options: Optional[SaveOptions] = None,
        *,
        library: Optional[TypeLibrary] = None,
        registry: Optional[PersistenceRegistry] = None,
        world: Optional[World] = None,
        bus: Optional[EventBus] = None,
        tick: float = 1.0,
    ) -> None:
        self.library = library if library is not None else DEFAULT_LIBRARY
        self.registry = registry if registry is not None else PersistenceRegistry(self.library)
        self.world = world if world is not None else World()
        self.bus = bus if bus is not None else EventBus()
        self.manager = SaveManager(
            options if options is not None else SaveOptions(),
            self.registry,
            self.world,
            bus=self.bus,
            tick=tick,
        )
        self.bus.subscribe(EventType.HOTLOAD, self._on_hotload)

    def __enter__(self) -> "PersistenceSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _on_hotload(self, event: Event) -> None:
        logger.info("Hot reload: rebuilding persistence registry")
        self.registry.rebuild()
        self.manager.restart_autosave()

    def hotload(self, **payload: Any) -> None:
        self.bus.publish(EventType.HOTLOAD, dict(payload))

    def capture(self) -> Snapshot:
        return capture_all(self.registry, self.world)

    def save(self, path: str, snapshot: Optional[Snapshot] = None) -> Snapshot:
        return self.manager.save(path, snapshot)

    def load(self, path: str, fs: Optional[FileSystem] = None) -> Snapshot:
        """Load ``path``, from the configured save file system unless ``fs`` is given."""
        return self.manager.load(fs if fs is not None else self.manager.options.file_system, path)

    def load_latest(self) -> Snapshot:
        return self.manager.load_latest()

    def close(self) -> None:
        self.bus.unsubscribe(EventType.HOTLOAD, self._on_hotload)
        self.manager.close()
