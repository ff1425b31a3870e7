from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from itertools import count
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

ERROR_ASSET_NAME = "error"


@dataclass(frozen=True)
class Asset:
    """Reference to a reusable named resource (model, texture, sound).

    Procedural assets are generated at runtime and error assets stand in for a
    resource that failed to load. Neither has a name that can be loaded again.
    """

    name: str
    procedural: bool = False
    error: bool = False

    @property
    def loadable(self) -> bool:
        return not (self.procedural or self.error)


class AssetLibrary:
    """Loads assets by name and caches them.

    With a ``root`` directory, names are checked against files below it and a
    missing file loads as an error asset. Without one every name loads.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else None
        self._cache: Dict[str, Asset] = {}
        self._lock = threading.Lock()
        self._procedural_ids = count(1)

    def load(self, name: str) -> Asset:
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached
            if self.root is not None and not (self.root / name).is_file():
                logger.warning("Asset %r not found under %s", name, self.root)
                return Asset(name=ERROR_ASSET_NAME, error=True)
            asset = Asset(name=name)
            self._cache[name] = asset
            return asset

    def procedural(self, label: str = "mesh") -> Asset:
        """Create a runtime-generated asset. These are never cached."""
        return Asset(name=f"{label}#{next(self._procedural_ids)}", procedural=True)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


DEFAULT_ASSETS = AssetLibrary()
