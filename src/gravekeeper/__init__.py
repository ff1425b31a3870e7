"""
Gravekeeper: durable game-entity state.

This package provides headless persistence for live game entities:
- Declaring which entity properties are durable (field marker or by name)
- Capturing every durable property of the live world into a Snapshot
- A JSON save format decoded against the declared property types
- A SaveManager with on-demand saves and rotating autosave slots

Game loops and UI layers should import and compose these services.
"""
from .assets import Asset, AssetLibrary
from .codec import SnapshotCodec, ValueCodec
from .errors import (
    CaptureError,
    DecodeError,
    InvalidTypeError,
    NoPriorSaveError,
    NotFoundError,
    PersistenceError,
    UnknownFieldError,
    UnsupportedValueError,
)
from .events import Event, EventBus, EventType
from .manager import SaveManager
from .options import LoadHandler, SaveHandler, SaveOptions, load_save_options
from .registry import PersistenceRegistry
from .session import PersistenceSession
from .snapshot import EntityRecord, Snapshot, capture_all, capture_entity
from .storage import FileSystem, LocalFileSystem, MemoryFileSystem
from .timing import TimeSince, TimeUntil
from .types import (
    DEFAULT_LIBRARY,
    Entity,
    PropertyRef,
    TypeLibrary,
    manually_persist,
    persist,
    persist_property,
)
from .world import World

__all__ = [
    "Asset",
    "AssetLibrary",
    "SnapshotCodec",
    "ValueCodec",
    "CaptureError",
    "DecodeError",
    "InvalidTypeError",
    "NoPriorSaveError",
    "NotFoundError",
    "PersistenceError",
    "UnknownFieldError",
    "UnsupportedValueError",
    "Event",
    "EventBus",
    "EventType",
    "SaveManager",
    "LoadHandler",
    "SaveHandler",
    "SaveOptions",
    "load_save_options",
    "PersistenceRegistry",
    "PersistenceSession",
    "EntityRecord",
    "Snapshot",
    "capture_all",
    "capture_entity",
    "FileSystem",
    "LocalFileSystem",
    "MemoryFileSystem",
    "TimeSince",
    "TimeUntil",
    "DEFAULT_LIBRARY",
    "Entity",
    "PropertyRef",
    "TypeLibrary",
    "manually_persist",
    "persist",
    "persist_property",
    "World",
]
