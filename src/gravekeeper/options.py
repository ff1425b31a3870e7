"""
Save/autosave configuration.

SaveOptions is a plain dataclass. The ``with_*`` methods return modified
copies so a base configuration can be specialised without being touched:

    >>> opts = SaveOptions().with_autosave_count(5).with_autosave_interval(30)

``load_save_options`` reads the same settings from a YAML file:

    autosave_enabled: true
    autosave_count: 3
    autosave_interval: 60
    autosave_path: "autosaves/slot{num}.json"
    save_dir: "~/mygame/saves"       # optional, default: platform data dir
    autosave_dir: "~/mygame/auto"    # optional, default: save_dir
"""
from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional, Union

import yaml

from .codec import SnapshotCodec
from .paths import default_save_dir
from .snapshot import Snapshot
from .storage import FileSystem, LocalFileSystem

if TYPE_CHECKING:  # pragma: no cover
    from .manager import SaveManager

logger = logging.getLogger(__name__)

SLOT_PLACEHOLDER = "{num}"


class LoadHandler(ABC):
    """Replaces the built-in read-and-decode step of SaveManager.load."""

    @abstractmethod
    def load(self, manager: "SaveManager", fs: FileSystem, path: str) -> Snapshot:
        raise NotImplementedError


class SaveHandler(ABC):
    """Replaces the built-in encode-and-write step of SaveManager.save."""

    @abstractmethod
    def save(self, manager: "SaveManager", path: str, autosave: bool, snapshot: Snapshot) -> None:
        raise NotImplementedError


def _default_file_system() -> FileSystem:
    return LocalFileSystem(default_save_dir())


@dataclass
class SaveOptions:
    autosave_enabled: bool = True
    autosave_count: int = 3
    autosave_interval: int = 60
    autosave_path: str = "autosave{num}.json"
    file_system: FileSystem = field(default_factory=_default_file_system)
    # None means "same as file_system"
    autosave_file_system: Optional[FileSystem] = None
    codec: SnapshotCodec = field(default_factory=SnapshotCodec)
    load_handler: Optional[LoadHandler] = None
    save_handler: Optional[SaveHandler] = None

    def __post_init__(self) -> None:
        if self.autosave_count < 1:
            raise ValueError("autosave_count must be greater than 0")
        if self.autosave_interval < 1:
            raise ValueError("autosave_interval must be greater than 0")
        if not self.autosave_path:
            raise ValueError("autosave_path must not be empty")
        if self.autosave_count > 1 and SLOT_PLACEHOLDER not in self.autosave_path:
            logger.warning(
                "autosave_path %r has no %s placeholder; every autosave slot writes the same file",
                self.autosave_path,
                SLOT_PLACEHOLDER,
            )

    @property
    def autosave_storage(self) -> FileSystem:
        """The file system autosaves are written to."""
        return self.autosave_file_system if self.autosave_file_system is not None else self.file_system

    def autosave_slot_path(self, slot: int) -> str:
        return self.autosave_path.replace(SLOT_PLACEHOLDER, str(slot))

    def clone(self) -> "SaveOptions":
        """Independent copy. Collaborators (file systems, codec, handlers) are shared."""
        return dataclasses.replace(self)

    def with_autosave_enabled(self, enabled: bool) -> "SaveOptions":
        return dataclasses.replace(self, autosave_enabled=enabled)

    def with_autosave_count(self, count: int) -> "SaveOptions":
        return dataclasses.replace(self, autosave_count=count)

    def with_autosave_interval(self, interval: int) -> "SaveOptions":
        return dataclasses.replace(self, autosave_interval=interval)

    def with_autosave_path(self, path: str) -> "SaveOptions":
        return dataclasses.replace(self, autosave_path=path)

    def with_file_system(self, fs: FileSystem) -> "SaveOptions":
        return dataclasses.replace(self, file_system=fs)

    def with_autosave_file_system(self, fs: Optional[FileSystem]) -> "SaveOptions":
        return dataclasses.replace(self, autosave_file_system=fs)

    def with_codec(self, codec: SnapshotCodec) -> "SaveOptions":
        return dataclasses.replace(self, codec=codec)

    def with_load_handler(self, handler: Optional[LoadHandler]) -> "SaveOptions":
        return dataclasses.replace(self, load_handler=handler)

    def with_save_handler(self, handler: Optional[SaveHandler]) -> "SaveOptions":
        return dataclasses.replace(self, save_handler=handler)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], **overrides: Any) -> "SaveOptions":
        """Build options from a parsed config mapping.

        ``save_dir`` and ``autosave_dir`` become LocalFileSystem roots. Keyword
        overrides (e.g. ``codec=...``) win over the mapping.
        """
        kwargs: dict = {}
        if "autosave_enabled" in raw:
            kwargs["autosave_enabled"] = bool(raw["autosave_enabled"])
        if "autosave_count" in raw:
            kwargs["autosave_count"] = int(raw["autosave_count"])
        if "autosave_interval" in raw:
            kwargs["autosave_interval"] = int(raw["autosave_interval"])
        if "autosave_path" in raw:
            kwargs["autosave_path"] = str(raw["autosave_path"])
        if raw.get("save_dir"):
            kwargs["file_system"] = LocalFileSystem(Path(str(raw["save_dir"])).expanduser())
        if raw.get("autosave_dir"):
            kwargs["autosave_file_system"] = LocalFileSystem(Path(str(raw["autosave_dir"])).expanduser())
        unknown = set(raw) - {
            "autosave_enabled",
            "autosave_count",
            "autosave_interval",
            "autosave_path",
            "save_dir",
            "autosave_dir",
        }
        if unknown:
            logger.warning("Ignoring unknown save option keys: %s", ", ".join(sorted(unknown)))
        kwargs.update(overrides)
        return cls(**kwargs)


def load_save_options(path: Union[str, Path], **overrides: Any) -> SaveOptions:
    """Load SaveOptions from a YAML file. An empty file gives the defaults."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, Mapping):
        raise ValueError(f"Save options in {path} must be a mapping, got {type(raw).__name__}")
    logger.debug("Loaded save options from path: %s", path)
    options = SaveOptions.from_mapping(raw, **overrides)
    logger.info(
        "Autosave: enabled=%s count=%d interval=%ds path=%s",
        options.autosave_enabled,
        options.autosave_count,
        options.autosave_interval,
        options.autosave_path,
    )
    return options
