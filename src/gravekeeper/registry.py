"""
Persistence registry: which properties of which entity types are durable.

The registry is built from the declarations in a TypeLibrary the first time it
is queried and cached until ``rebuild()`` or ``invalidate()`` is called (the
session does this on hot reload).

Invariants:
    - Every key is an Entity subclass.
    - Types whose declarations resolve to no property have no entry, which
      separates "never asked" from "asked, has none".
    - The live map is never mutated in place. Writers build a new map under
      the lock and publish it with a single assignment, so readers see either
      the old complete map or the new complete map.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Optional, Type

from .errors import InvalidTypeError, UnknownFieldError
from .types import DEFAULT_LIBRARY, PropertyRef, TypeLibrary, is_entity_type, type_name

logger = logging.getLogger(__name__)


class PersistenceRegistry:
    def __init__(self, library: Optional[TypeLibrary] = None) -> None:
        self.library = library if library is not None else DEFAULT_LIBRARY
        self._map: Optional[Dict[type, FrozenSet[PropertyRef]]] = None
        self._lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._map is not None

    def rebuild(self) -> None:
        """Re-derive every entry from the current declarations."""
        with self._lock:
            self._rebuild_locked()

    def invalidate(self) -> None:
        """Drop the cache; the next query rebuilds."""
        with self._lock:
            self._map = None
        logger.debug("Persistence registry invalidated")

    def _rebuild_locked(self) -> Dict[type, FrozenSet[PropertyRef]]:
        built: Dict[type, FrozenSet[PropertyRef]] = {}
        for cls in self.library.entity_types():
            props = self.library.describe(cls).persistable()
            if props:
                built[cls] = frozenset(props)
        self._map = built
        logger.info("Persistence registry built: %d durable types", len(built))
        return built

    def _current(self) -> Dict[type, FrozenSet[PropertyRef]]:
        current = self._map
        if current is not None:
            return current
        with self._lock:
            if self._map is None:
                return self._rebuild_locked()
            return self._map

    def get_durable_fields(self, cls: Type) -> FrozenSet[PropertyRef]:
        """Durable properties of ``cls``; empty when it declares none.

        Raises:
            InvalidTypeError: if ``cls`` is not an Entity subclass.
        """
        if not is_entity_type(cls):
            raise InvalidTypeError(
                f"Persistable properties are only supported on Entity types, got {cls!r}"
            )
        return self._current().get(cls, frozenset())

    def get_field(self, cls: Type, name: str) -> Optional[PropertyRef]:
        for prop in self.get_durable_fields(cls):
            if prop.name == name:
                return prop
        return None

    def register_field(self, cls: Type, name: str) -> PropertyRef:
        """Persist one more property of ``cls``. Idempotent.

        Raises:
            InvalidTypeError: if ``cls`` is not an Entity subclass.
            UnknownFieldError: if ``cls`` declares no property called ``name``.
        """
        if not is_entity_type(cls):
            raise InvalidTypeError(
                f"Persistence is only supported on types derived from Entity, got {cls!r}"
            )
        prop = self.library.describe(cls).get_property(name)
        if prop is None:
            raise UnknownFieldError(f"{type_name(cls)} has no property {name!r}")

        with self._lock:
            current = self._map if self._map is not None else self._rebuild_locked()
            existing = current.get(cls, frozenset())
            if prop in existing:
                return prop
            updated = dict(current)
            updated[cls] = existing | {prop}
            self._map = updated
        logger.debug("Registered durable property %s", prop)
        return prop

    def is_manual(self, cls: Type) -> bool:
        """True when ``cls`` is excluded from automatic capture."""
        return bool(getattr(cls, "__manually_persist__", False))

    def entries(self) -> Dict[type, FrozenSet[PropertyRef]]:
        return dict(self._current())
