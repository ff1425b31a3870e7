"""Entity types, their declared properties and the persistence markers.

Durable properties are declared in two ways:

- ``persist()`` replaces ``dataclasses.field()`` on a property the class owns.
- ``@persist_property("name")`` names a property by string. Use this when the
  property comes from a base class you cannot edit.

``@manually_persist`` keeps a type out of whole-world capture while leaving
its durable properties queryable.

Example:
    >>> @dataclass
    ... class Crate(Entity):
    ...     contents: list[str] = persist(default_factory=list)
    ...     label: str = ""
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from .errors import DecodeError, InvalidTypeError

logger = logging.getLogger(__name__)

PERSIST_METADATA_KEY = "gravekeeper.persist"

T = TypeVar("T", bound=type)


class Entity:
    """Base class for game objects that may carry durable properties.

    Subclasses are registered with the default TypeLibrary when the class is
    created. Property declarations are read later, so decorators applied after
    class creation (``@dataclass``, ``@persist_property``) are seen.
    """

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        DEFAULT_LIBRARY.register(cls)


def is_entity_type(obj: Any) -> bool:
    return isinstance(obj, type) and issubclass(obj, Entity)


def type_name(cls: type) -> str:
    """Fully-qualified identifier used for a type in save files."""
    return f"{cls.__module__}.{cls.__qualname__}"


@dataclass(frozen=True)
class PropertyRef:
    """Identity of one durable property: the owning type name plus the property name.

    The declared value type rides along but takes no part in equality, so a
    ref parsed back from a save file compares equal to the registered one.
    """

    type_name: str
    name: str
    value_type: Any = field(default=Any, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not self.name or "." in self.name:
            raise ValueError(f"Invalid property name: {self.name!r}")

    @property
    def key(self) -> str:
        return f"{self.type_name}.{self.name}"

    def __str__(self) -> str:
        return self.key

    @staticmethod
    def split_key(key: str) -> Tuple[str, str]:
        """Split ``"Type.Name.field"`` into ``("Type.Name", "field")``.

        Type identifiers may contain dots, property names never do, so the
        split happens on the last dot.
        """
        owner, sep, name = key.rpartition(".")
        if not sep or not owner or not name:
            raise DecodeError("Malformed property key", key=key)
        return owner, name


def persist(
    *,
    default: Any = dataclasses.MISSING,
    default_factory: Any = dataclasses.MISSING,
    **kwargs: Any,
) -> Any:
    """A ``dataclasses.field`` marked as durable."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[PERSIST_METADATA_KEY] = True
    return dataclasses.field(
        default=default, default_factory=default_factory, metadata=metadata, **kwargs
    )


def persist_property(name: str) -> Callable[[T], T]:
    """Class decorator persisting a property by name. Stackable and inherited."""
    if not name or "." in name:
        raise ValueError(f"Invalid property name: {name!r}")

    def decorator(cls: T) -> T:
        declared = cls.__dict__.get("__persist_properties__", ())
        setattr(cls, "__persist_properties__", tuple(declared) + (name,))
        return cls

    return decorator


def manually_persist(cls: T) -> T:
    """Exclude a type (and its subclasses) from automatic whole-world capture."""
    setattr(cls, "__manually_persist__", True)
    return cls


@dataclass(frozen=True)
class TypeDescription:
    """Declared properties and persistence markers of one entity type."""

    target_type: type
    properties: Mapping[str, PropertyRef]
    marked: frozenset
    named: frozenset
    manual: bool = False

    @property
    def full_name(self) -> str:
        return type_name(self.target_type)

    def get_property(self, name: str) -> Optional[PropertyRef]:
        return self.properties.get(name)

    def persistable(self) -> List[PropertyRef]:
        """Union of marker-declared and name-declared properties.

        Names that do not resolve to a declared property are skipped with a
        warning.
        """
        result: Dict[str, PropertyRef] = {}
        for name in sorted(self.marked | self.named):
            prop = self.properties.get(name)
            if prop is None:
                logger.warning(
                    "%s declares persisted property %r which does not exist", self.full_name, name
                )
                continue
            result[name] = prop
        return list(result.values())


def _declared_hints(cls: type) -> Dict[str, Any]:
    try:
        hints = typing.get_type_hints(cls)
    except (NameError, TypeError) as exc:
        logger.warning("Could not resolve annotations of %s (%s); using Any", type_name(cls), exc)
        hints = {}
        for klass in reversed(cls.__mro__):
            for name in getattr(klass, "__annotations__", {}):
                hints[name] = Any
    return {
        name: hint
        for name, hint in hints.items()
        if not name.startswith("_") and typing.get_origin(hint) is not typing.ClassVar
    }


class TypeLibrary:
    """Catalog of known entity types.

    Thread-safe for registration and lookups. The module-level
    ``DEFAULT_LIBRARY`` is filled automatically by ``Entity`` subclasses;
    separate instances can be built from an explicit list of types.
    """

    def __init__(self, types: Iterable[type] = ()) -> None:
        self._types: Dict[str, type] = {}
        self._lock = threading.RLock()
        for cls in types:
            self.register(cls)

    def register(self, cls: T) -> T:
        if not is_entity_type(cls):
            raise InvalidTypeError(f"{cls!r} is not derived from Entity")
        name = type_name(cls)
        with self._lock:
            previous = self._types.get(name)
            if previous is not None and previous is not cls:
                logger.debug("Replacing entity type %s with a newer definition", name)
            self._types[name] = cls
        return cls

    def get_type(self, name: str) -> Optional[type]:
        with self._lock:
            return self._types.get(name)

    def entity_types(self) -> List[type]:
        with self._lock:
            return list(self._types.values())

    def __contains__(self, cls: object) -> bool:
        return isinstance(cls, type) and self.get_type(type_name(cls)) is cls

    def __len__(self) -> int:
        with self._lock:
            return len(self._types)

    def describe(self, cls: Type[Any]) -> TypeDescription:
        if not is_entity_type(cls):
            raise InvalidTypeError(f"{cls!r} is not derived from Entity")
        owner = type_name(cls)
        hints = _declared_hints(cls)
        properties = {
            name: PropertyRef(owner, name, hint) for name, hint in hints.items()
        }
        marked = set()
        if dataclasses.is_dataclass(cls):
            for f in dataclasses.fields(cls):
                if f.metadata.get(PERSIST_METADATA_KEY):
                    marked.add(f.name)
        named = set()
        for klass in cls.__mro__:
            named.update(klass.__dict__.get("__persist_properties__", ()))
        return TypeDescription(
            target_type=cls,
            properties=properties,
            marked=frozenset(marked),
            named=frozenset(named),
            manual=bool(getattr(cls, "__manually_persist__", False)),
        )


DEFAULT_LIBRARY = TypeLibrary()
