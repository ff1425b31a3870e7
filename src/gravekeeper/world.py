from __future__ import annotations

import logging
from threading import RLock
from typing import Iterator, List, TypeVar

from .errors import InvalidTypeError
from .types import Entity, type_name

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class World:
    """The set of live entities in a game session.

    Entities are tracked by identity in spawn order. Capture walks this set,
    so an entity that was never spawned is never saved.
    """

    def __init__(self) -> None:
        self._entities: List[Entity] = []
        self._lock = RLock()

    def spawn(self, entity: E) -> E:
        if not isinstance(entity, Entity):
            raise InvalidTypeError(f"{entity!r} is not an Entity")
        with self._lock:
            if not any(e is entity for e in self._entities):
                self._entities.append(entity)
                logger.debug("Spawned %s", type_name(type(entity)))
        return entity

    def delete(self, entity: Entity) -> bool:
        with self._lock:
            for i, e in enumerate(self._entities):
                if e is entity:
                    del self._entities[i]
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._entities.clear()

    def all(self) -> List[Entity]:
        with self._lock:
            return list(self._entities)

    def of_type(self, cls: type, exact: bool = True) -> List[Entity]:
        """Live entities of ``cls``; exact runtime type by default."""
        if exact:
            return [e for e in self.all() if type(e) is cls]
        return [e for e in self.all() if isinstance(e, cls)]

    def __iter__(self) -> Iterator[Entity]:
        return iter(self.all())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)

    def __contains__(self, entity: object) -> bool:
        with self._lock:
            return any(e is entity for e in self._entities)
