from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional, Tuple, Type

from .errors import CaptureError, UnknownFieldError
from .registry import PersistenceRegistry
from .types import Entity, type_name
from .world import World

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityRecord:
    """One entity's captured durable properties, keyed by property name."""

    entity_type: type
    properties: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def type_name(self) -> str:
        return type_name(self.entity_type)

    def get(self, name: str, expected: Optional[type] = None) -> Any:
        """Return a stored property value.

        Raises:
            UnknownFieldError: no property called ``name`` was captured.
            TypeError: the value is not an instance of ``expected``.
        """
        if name not in self.properties:
            raise UnknownFieldError(
                f"No persisted property named {name!r} in {self.type_name} data"
            )
        value = self.properties[name]
        if expected is not None and not isinstance(value, expected):
            raise TypeError(
                f"Property {name!r} holds {type(value).__name__}, not {expected.__name__}"
            )
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityRecord):
            return NotImplemented
        return self.entity_type is other.entity_type and dict(self.properties) == dict(other.properties)

    __hash__ = None  # type: ignore[assignment]


class Snapshot:
    """All durable entity data captured at one instant.

    Record order is kept as produced so that encoding the same snapshot twice
    gives the same bytes.
    """

    def __init__(self, entities: Iterable[EntityRecord] = ()) -> None:
        self._entities: Tuple[EntityRecord, ...] = tuple(entities)

    @property
    def entities(self) -> Tuple[EntityRecord, ...]:
        return self._entities

    def of_type(self, cls: Type, exact: bool = False) -> Iterator[EntityRecord]:
        """Records of ``cls``; with ``exact`` only that type, otherwise subclasses too."""
        for record in self._entities:
            if exact:
                if record.entity_type is cls:
                    yield record
                continue
            if issubclass(record.entity_type, cls):
                yield record

    def __iter__(self) -> Iterator[EntityRecord]:
        return iter(self._entities)

    def __len__(self) -> int:
        return len(self._entities)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return self._entities == other._entities

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Snapshot({len(self._entities)} entities)"


def capture_entity(registry: PersistenceRegistry, entity: Entity) -> EntityRecord:
    """Read every durable property of ``entity`` into a record."""
    cls = type(entity)
    values = {}
    for prop in sorted(registry.get_durable_fields(cls), key=lambda p: p.name):
        try:
            values[prop.name] = getattr(entity, prop.name)
        except Exception as exc:
            raise CaptureError(type_name(cls), prop.name, str(exc)) from exc
    return EntityRecord(cls, values)


def capture_all(registry: PersistenceRegistry, world: World) -> Snapshot:
    """Capture every live entity of every automatically persisted type.

    Entities are matched on their exact runtime type, so each is captured once
    under its own registered type. A subclass that is not itself registered
    is not captured even though it inherits durable properties.
    """
    records = []
    live = world.all()
    for cls in registry.entries():
        if registry.is_manual(cls):
            continue
        for entity in live:
            if type(entity) is cls:
                records.append(capture_entity(registry, entity))
    logger.debug("Captured %d entities", len(records))
    return Snapshot(records)
