"""
Snapshot codec: Snapshot <-> UTF-8 JSON.

Wire format::

    [
      {"type": "game.entities.Crate",
       "properties": {"game.entities.Crate.contents": ["potion"], ...}},
      ...
    ]

The value type of each ``properties`` member depends on its key, so decoding
is interleaved rather than parse-then-convert: read a key, resolve it through
the registry to a declared property type, then let that type's value codec
consume exactly one value from the token stream. Number literals therefore
reach the target type as text (``Decimal`` keeps every digit, ``TimeSince``
becomes a timer, not a float).

Invariants:
    - An unknown or unregistered key is a DecodeError, never dropped.
    - Encoding finishes in memory before anything is written, so an
      unsupported value fails before storage is touched.
    - No version field is written.
"""
from __future__ import annotations

import collections.abc
import dataclasses
import importlib
import json
import json.decoder
import logging
import numbers
import re
import threading
import types
import typing
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import IO, Any, Dict, Iterator, List, Optional, Union

from .assets import DEFAULT_ASSETS, Asset, AssetLibrary
from .errors import DecodeError, UnsupportedValueError
from .registry import PersistenceRegistry
from .snapshot import EntityRecord, Snapshot
from .timing import TimeSince, TimeUntil
from .types import PropertyRef, is_entity_type, type_name

logger = logging.getLogger(__name__)

TYPE_KEY = "type"
PROPERTIES_KEY = "properties"

_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][-+]?\d+)?")
_WHITESPACE = " \t\n\r"


class JsonReader:
    """Cursor over JSON text handing out one token or value at a time."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0
        self._decoder = json.JSONDecoder()

    def error(self, message: str) -> DecodeError:
        return DecodeError(f"{message} at offset {self.pos}")

    def skip_ws(self) -> None:
        text, pos = self.text, self.pos
        while pos < len(text) and text[pos] in _WHITESPACE:
            pos += 1
        self.pos = pos

    def peek(self) -> str:
        self.skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def consume(self, char: str) -> bool:
        if self.peek() == char:
            self.pos += 1
            return True
        return False

    def expect(self, char: str) -> None:
        if not self.consume(char):
            found = self.peek() or "end of data"
            raise self.error(f"Expected {char!r}, found {found!r}")

    def at_null(self) -> bool:
        return self.peek() == "n" and self.text.startswith("null", self.pos)

    def read_null(self) -> None:
        if not self.at_null():
            raise self.error("Expected null")
        self.pos += 4

    def read_bool(self) -> bool:
        self.skip_ws()
        if self.text.startswith("true", self.pos):
            self.pos += 4
            return True
        if self.text.startswith("false", self.pos):
            self.pos += 5
            return False
        raise self.error("Expected a boolean")

    def read_string(self) -> str:
        self.expect('"')
        try:
            value, end = json.decoder.scanstring(self.text, self.pos)
        except json.JSONDecodeError as exc:
            raise self.error(f"Invalid string: {exc.msg}") from exc
        self.pos = end
        return value

    def read_number(self) -> str:
        """Return the next number literal as text."""
        self.skip_ws()
        match = _NUMBER_RE.match(self.text, self.pos)
        if match is None:
            raise self.error("Expected a number")
        self.pos = match.end()
        return match.group(0)

    def read_any(self) -> Any:
        """Decode one untyped JSON value."""
        self.skip_ws()
        try:
            value, end = self._decoder.raw_decode(self.text, self.pos)
        except json.JSONDecodeError as exc:
            raise self.error(f"Invalid JSON value: {exc.msg}") from exc
        self.pos = end
        return value

    def iter_object(self) -> Iterator[str]:
        """Yield member keys in document order.

        The caller must consume the member's value before advancing.
        """
        self.expect("{")
        if self.consume("}"):
            return
        while True:
            if self.peek() != '"':
                raise self.error("Expected an object key")
            key = self.read_string()
            self.expect(":")
            yield key
            if self.consume(","):
                continue
            self.expect("}")
            return

    def iter_array(self) -> Iterator[int]:
        """Yield element indexes; the caller consumes each element."""
        self.expect("[")
        if self.consume("]"):
            return
        index = 0
        while True:
            yield index
            index += 1
            if self.consume(","):
                continue
            self.expect("]")
            return

    def finish(self) -> None:
        self.skip_ws()
        if self.pos != len(self.text):
            raise self.error("Unexpected trailing data")


class _Frame:
    __slots__ = ("kind", "count", "awaiting_value")

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.count = 0
        self.awaiting_value = False


class JsonWriter:
    """Incremental JSON text builder; the counterpart of JsonReader."""

    def __init__(self, indent: Optional[int] = None) -> None:
        self._parts: List[str] = []
        self._stack: List[_Frame] = []
        self._indent = indent

    def _newline(self) -> None:
        if self._indent is not None:
            self._parts.append("\n" + " " * (self._indent * len(self._stack)))

    def _separator(self, frame: _Frame) -> None:
        if frame.count:
            self._parts.append(",")
        frame.count += 1
        self._newline()

    def _before_value(self) -> None:
        if not self._stack:
            return
        frame = self._stack[-1]
        if frame.kind == "object":
            if not frame.awaiting_value:
                raise RuntimeError("Object value written without a key")
            frame.awaiting_value = False
            return
        self._separator(frame)

    def key(self, name: str) -> None:
        frame = self._stack[-1]
        if frame.kind != "object" or frame.awaiting_value:
            raise RuntimeError("Object key written out of place")
        self._separator(frame)
        self._parts.append(json.dumps(name, ensure_ascii=False))
        self._parts.append(": " if self._indent is not None else ":")
        frame.awaiting_value = True

    def begin_object(self) -> None:
        self._before_value()
        self._parts.append("{")
        self._stack.append(_Frame("object"))

    def end_object(self) -> None:
        self._end("object", "}")

    def begin_array(self) -> None:
        self._before_value()
        self._parts.append("[")
        self._stack.append(_Frame("array"))

    def end_array(self) -> None:
        self._end("array", "]")

    def _end(self, kind: str, closer: str) -> None:
        frame = self._stack.pop()
        if frame.kind != kind:
            raise RuntimeError(f"Mismatched close of {frame.kind}")
        if frame.count:
            self._newline()
        self._parts.append(closer)

    def raw(self, literal: str) -> None:
        self._before_value()
        self._parts.append(literal)

    def string(self, value: str) -> None:
        self.raw(json.dumps(value, ensure_ascii=False))

    def null(self) -> None:
        self.raw("null")

    def boolean(self, value: bool) -> None:
        self.raw("true" if value else "false")

    def getvalue(self) -> str:
        if self._stack:
            raise RuntimeError("Unclosed JSON container")
        return "".join(self._parts)


def _unwrap_optional(tp: Any) -> Any:
    origin = typing.get_origin(tp)
    if origin is Union or origin is getattr(types, "UnionType", None):
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _float_literal(value: float) -> str:
    try:
        return json.dumps(float(value), allow_nan=False)
    except ValueError as exc:
        raise UnsupportedValueError(f"{value!r} has no JSON representation") from exc


class ValueCodec(ABC):
    """Writes and reads values of one family of declared types."""

    @abstractmethod
    def handles(self, tp: Any) -> bool:
        ...

    @abstractmethod
    def write(self, writer: JsonWriter, value: Any, tp: Any, codec: "SnapshotCodec") -> None:
        ...

    @abstractmethod
    def read(self, reader: JsonReader, tp: Any, codec: "SnapshotCodec") -> Any:
        ...


class AnyCodec(ValueCodec):
    """Untyped properties; limited to values json can represent natively."""

    def handles(self, tp: Any) -> bool:
        return tp is Any or tp is object

    def write(self, writer, value, tp, codec):
        try:
            writer.raw(json.dumps(value, ensure_ascii=False, allow_nan=False))
        except (TypeError, ValueError) as exc:
            raise UnsupportedValueError(
                f"Cannot store {type(value).__name__} in an untyped property"
            ) from exc

    def read(self, reader, tp, codec):
        return reader.read_any()


class PrimitiveCodec(ValueCodec):
    def handles(self, tp: Any) -> bool:
        return tp in (bool, int, float, str)

    def write(self, writer, value, tp, codec):
        if tp is bool:
            if not isinstance(value, bool):
                raise UnsupportedValueError(f"Expected bool, got {type(value).__name__}")
            writer.boolean(value)
        elif tp is int:
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise UnsupportedValueError(f"Expected int, got {type(value).__name__}")
            writer.raw(str(int(value)))
        elif tp is float:
            if isinstance(value, bool) or not isinstance(value, numbers.Real):
                raise UnsupportedValueError(f"Expected float, got {type(value).__name__}")
            writer.raw(_float_literal(value))
        else:
            if not isinstance(value, str):
                raise UnsupportedValueError(f"Expected str, got {type(value).__name__}")
            writer.string(value)

    def read(self, reader, tp, codec):
        if tp is bool:
            return reader.read_bool()
        if tp is str:
            return reader.read_string()
        literal = reader.read_number()
        if tp is int:
            if any(c in literal for c in ".eE"):
                raise reader.error(f"Expected an integer, found {literal}")
            return int(literal)
        return float(literal)


class DecimalCodec(ValueCodec):
    def handles(self, tp: Any) -> bool:
        return tp is Decimal

    def write(self, writer, value, tp, codec):
        if not isinstance(value, (Decimal, numbers.Integral)) or isinstance(value, bool):
            raise UnsupportedValueError(f"Expected Decimal, got {type(value).__name__}")
        value = Decimal(value)
        if not value.is_finite():
            raise UnsupportedValueError(f"{value!r} has no JSON representation")
        writer.raw(str(value))

    def read(self, reader, tp, codec):
        literal = reader.read_number()
        try:
            return Decimal(literal)
        except InvalidOperation as exc:
            raise reader.error(f"Invalid decimal {literal}") from exc


class EnumCodec(ValueCodec):
    """Enum members are stored by name."""

    def handles(self, tp: Any) -> bool:
        return isinstance(tp, type) and issubclass(tp, Enum)

    def write(self, writer, value, tp, codec):
        if not isinstance(value, tp):
            raise UnsupportedValueError(f"Expected {tp.__name__}, got {value!r}")
        writer.string(value.name)

    def read(self, reader, tp, codec):
        name = reader.read_string()
        try:
            return tp[name]
        except KeyError as exc:
            raise reader.error(f"{tp.__name__} has no member {name!r}") from exc


class SequenceCodec(ValueCodec):
    """list[T], set[T], frozenset[T], tuple[T, ...] and fixed tuples."""

    _KINDS = (list, tuple, set, frozenset)

    def handles(self, tp: Any) -> bool:
        return tp in self._KINDS or typing.get_origin(tp) in self._KINDS

    @staticmethod
    def _shape(tp: Any):
        kind = typing.get_origin(tp) or tp
        args = typing.get_args(tp)
        if kind is tuple and args and args[-1] is not Ellipsis:
            return kind, list(args)
        return kind, (args[0] if args else Any)

    def write(self, writer, value, tp, codec):
        kind, item_types = self._shape(tp)
        if not isinstance(value, kind):
            raise UnsupportedValueError(f"Expected {kind.__name__}, got {type(value).__name__}")
        items = list(value)
        if kind in (set, frozenset):
            try:
                items = sorted(items)
            except TypeError:
                pass  # unorderable members keep iteration order
        if isinstance(item_types, list) and len(item_types) != len(items):
            raise UnsupportedValueError(
                f"Expected a tuple of {len(item_types)} items, got {len(items)}"
            )
        writer.begin_array()
        for i, item in enumerate(items):
            item_type = item_types[i] if isinstance(item_types, list) else item_types
            codec.write_value(writer, item, item_type)
        writer.end_array()

    def read(self, reader, tp, codec):
        kind, item_types = self._shape(tp)
        items = []
        for i in reader.iter_array():
            if isinstance(item_types, list):
                if i >= len(item_types):
                    raise reader.error(f"Too many items for {tp}")
                item_type = item_types[i]
            else:
                item_type = item_types
            items.append(codec.read_value(reader, item_type))
        if isinstance(item_types, list) and len(items) != len(item_types):
            raise reader.error(f"Expected {len(item_types)} items for {tp}")
        return items if kind is list else kind(items)


class MappingCodec(ValueCodec):
    """dict[K, V] with str, int or Enum keys."""

    def handles(self, tp: Any) -> bool:
        return tp is dict or typing.get_origin(tp) in (dict, collections.abc.Mapping)

    @staticmethod
    def _key_text(key: Any, key_type: Any) -> str:
        if isinstance(key_type, type) and issubclass(key_type, Enum):
            if not isinstance(key, key_type):
                raise UnsupportedValueError(f"Mapping key {key!r} is not a {key_type.__name__}")
            return key.name
        if key_type is int:
            if isinstance(key, bool) or not isinstance(key, int):
                raise UnsupportedValueError(f"Mapping key {key!r} is not an int")
            return str(key)
        # str, Any or an unparameterized dict: keys decode back as strings
        if not isinstance(key, str):
            raise UnsupportedValueError(f"Mapping key {key!r} is not a str")
        return key

    @staticmethod
    def _parse_key(text: str, key_type: Any, reader: JsonReader) -> Any:
        try:
            if key_type is int:
                return int(text)
            if isinstance(key_type, type) and issubclass(key_type, Enum):
                return key_type[text]
        except (KeyError, ValueError) as exc:
            raise reader.error(f"Invalid mapping key {text!r}") from exc
        return text

    def write(self, writer, value, tp, codec):
        if not isinstance(value, collections.abc.Mapping):
            raise UnsupportedValueError(f"Expected a mapping, got {type(value).__name__}")
        args = typing.get_args(tp)
        key_type, value_type = args if args else (str, Any)
        writer.begin_object()
        for key, item in value.items():
            writer.key(self._key_text(key, key_type))
            codec.write_value(writer, item, value_type)
        writer.end_object()

    def read(self, reader, tp, codec):
        args = typing.get_args(tp)
        key_type, value_type = args if args else (str, Any)
        result = {}
        for text in reader.iter_object():
            result[self._parse_key(text, key_type, reader)] = codec.read_value(reader, value_type)
        return result


class DataclassCodec(ValueCodec):
    """Plain (non-entity) dataclasses as nested objects keyed by field name."""

    def handles(self, tp: Any) -> bool:
        return isinstance(tp, type) and dataclasses.is_dataclass(tp) and not is_entity_type(tp)

    @staticmethod
    def _field_types(tp: type) -> Dict[str, Any]:
        hints = typing.get_type_hints(tp)
        return {f.name: hints.get(f.name, Any) for f in dataclasses.fields(tp)}

    def write(self, writer, value, tp, codec):
        if not isinstance(value, tp):
            raise UnsupportedValueError(f"Expected {tp.__name__}, got {type(value).__name__}")
        writer.begin_object()
        for name, field_type in self._field_types(tp).items():
            writer.key(name)
            codec.write_value(writer, getattr(value, name), field_type)
        writer.end_object()

    def read(self, reader, tp, codec):
        field_types = self._field_types(tp)
        kwargs = {}
        for name in reader.iter_object():
            if name not in field_types:
                raise reader.error(f"{tp.__name__} has no field {name!r}")
            kwargs[name] = codec.read_value(reader, field_types[name])
        try:
            return tp(**kwargs)
        except TypeError as exc:
            raise reader.error(f"Cannot build {tp.__name__}: {exc}") from exc


class AssetCodec(ValueCodec):
    def handles(self, tp: Any) -> bool:
        return tp is Asset

    def write(self, writer, value, tp, codec):
        if not isinstance(value, Asset):
            raise UnsupportedValueError(f"Expected Asset, got {type(value).__name__}")
        if not value.loadable:
            raise UnsupportedValueError("Error or procedural assets are not supported")
        writer.string(value.name)

    def read(self, reader, tp, codec):
        return codec.assets.load(reader.read_string())


class TimeSinceCodec(ValueCodec):
    """Stored as seconds elapsed at the moment of encoding."""

    def handles(self, tp: Any) -> bool:
        return tp is TimeSince

    def write(self, writer, value, tp, codec):
        if not isinstance(value, TimeSince):
            raise UnsupportedValueError(f"Expected TimeSince, got {type(value).__name__}")
        writer.raw(_float_literal(value.relative))

    def read(self, reader, tp, codec):
        return TimeSince(float(reader.read_number()))


class TimeUntilCodec(ValueCodec):
    """Stored as signed seconds remaining; negative once passed."""

    def handles(self, tp: Any) -> bool:
        return tp is TimeUntil

    def write(self, writer, value, tp, codec):
        if not isinstance(value, TimeUntil):
            raise UnsupportedValueError(f"Expected TimeUntil, got {type(value).__name__}")
        writer.raw(_float_literal(value.relative))

    def read(self, reader, tp, codec):
        return TimeUntil(float(reader.read_number()))


class TypeCodec(ValueCodec):
    """``type`` / ``type[X]`` values as fully-qualified names."""

    def handles(self, tp: Any) -> bool:
        return tp is type or typing.get_origin(tp) is type

    def write(self, writer, value, tp, codec):
        if not isinstance(value, type):
            raise UnsupportedValueError(f"Expected a type, got {value!r}")
        writer.string(type_name(value))

    def read(self, reader, tp, codec):
        name = reader.read_string()
        resolved = codec.resolve_type(name)
        if resolved is None:
            raise reader.error(f"Cannot resolve type {name!r}")
        bound = typing.get_args(tp)
        if bound and isinstance(bound[0], type) and not issubclass(resolved, bound[0]):
            raise reader.error(f"{name} is not a subclass of {bound[0].__name__}")
        return resolved


def default_value_codecs() -> List[ValueCodec]:
    return [
        AnyCodec(),
        PrimitiveCodec(),
        DecimalCodec(),
        EnumCodec(),
        SequenceCodec(),
        MappingCodec(),
        DataclassCodec(),
        AssetCodec(),
        TimeSinceCodec(),
        TimeUntilCodec(),
        TypeCodec(),
    ]


class SnapshotCodec:
    """Encodes snapshots to bytes and decodes them back against a registry.

    Value codecs are tried newest first, so ``register()`` can override a
    built-in for a type.
    """

    def __init__(
        self,
        value_codecs: Optional[List[ValueCodec]] = None,
        *,
        assets: Optional[AssetLibrary] = None,
        indent: Optional[int] = 2,
    ) -> None:
        self._value_codecs: List[ValueCodec] = list(
            value_codecs if value_codecs is not None else default_value_codecs()
        )
        self.assets = assets if assets is not None else DEFAULT_ASSETS
        self.indent = indent
        self._local = threading.local()

    def register(self, value_codec: ValueCodec) -> None:
        self._value_codecs.append(value_codec)

    def codec_for(self, tp: Any) -> ValueCodec:
        for value_codec in reversed(self._value_codecs):
            if value_codec.handles(tp):
                return value_codec
        raise UnsupportedValueError(f"No codec for declared type {tp!r}")

    def resolve_type(self, name: str) -> Optional[type]:
        registry = getattr(self._local, "registry", None)
        if registry is not None:
            found = registry.library.get_type(name)
            if found is not None:
                return found
        parts = name.split(".")
        for split in range(len(parts) - 1, 0, -1):
            try:
                obj: Any = importlib.import_module(".".join(parts[:split]))
            except ImportError:
                continue
            try:
                for attr in parts[split:]:
                    obj = getattr(obj, attr)
            except AttributeError:
                return None
            return obj if isinstance(obj, type) else None
        return None

    # Values

    def write_value(self, writer: JsonWriter, value: Any, tp: Any) -> None:
        if value is None:
            writer.null()
            return
        tp = _unwrap_optional(tp)
        self.codec_for(tp).write(writer, value, tp, self)

    def read_value(self, reader: JsonReader, tp: Any) -> Any:
        if reader.at_null():
            reader.read_null()
            return None
        tp = _unwrap_optional(tp)
        try:
            value_codec = self.codec_for(tp)
        except UnsupportedValueError as exc:
            raise DecodeError(str(exc)) from exc
        return value_codec.read(reader, tp, self)

    # Snapshots

    def encode(self, snapshot: Snapshot, registry: PersistenceRegistry) -> bytes:
        writer = JsonWriter(indent=self.indent)
        self._local.registry = registry
        try:
            writer.begin_array()
            for record in snapshot:
                self._write_record(writer, record, registry)
            writer.end_array()
        finally:
            self._local.registry = None
        return writer.getvalue().encode("utf-8")

    def _write_record(self, writer: JsonWriter, record: EntityRecord, registry: PersistenceRegistry) -> None:
        declared = {p.name: p for p in registry.get_durable_fields(record.entity_type)}
        writer.begin_object()
        writer.key(TYPE_KEY)
        writer.string(record.type_name)
        writer.key(PROPERTIES_KEY)
        writer.begin_object()
        for name, value in record.properties.items():
            prop = declared.get(name)
            if prop is None:
                raise UnsupportedValueError(
                    f"{record.type_name}.{name} is not a persisted property"
                )
            writer.key(prop.key)
            try:
                self.write_value(writer, value, prop.value_type)
            except UnsupportedValueError as exc:
                raise UnsupportedValueError(f"{prop.key}: {exc}") from exc
        writer.end_object()
        writer.end_object()

    def decode(self, data: Union[bytes, str], registry: PersistenceRegistry) -> Snapshot:
        if isinstance(data, bytes):
            try:
                text = data.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(f"Save data is not UTF-8: {exc}") from exc
        else:
            text = data
        reader = JsonReader(text)
        self._local.registry = registry
        try:
            if reader.peek() != "[":
                raise reader.error("Save data must be an array of entity records")
            records = [self._read_record(reader, registry) for _ in reader.iter_array()]
            reader.finish()
        finally:
            self._local.registry = None
        return Snapshot(records)

    def _read_record(self, reader: JsonReader, registry: PersistenceRegistry) -> EntityRecord:
        entity_type: Optional[type] = None
        properties: Optional[Dict[str, Any]] = None
        for member in reader.iter_object():
            if (member == TYPE_KEY and entity_type is not None) or (
                member == PROPERTIES_KEY and properties is not None
            ):
                raise DecodeError("Duplicate member in entity record", key=member)
            if member == TYPE_KEY:
                name = reader.read_string()
                entity_type = registry.library.get_type(name)
                if entity_type is None:
                    raise DecodeError("Unknown entity type", key=name)
            elif member == PROPERTIES_KEY:
                if entity_type is None:
                    raise DecodeError("Entity properties appear before the entity type", key=member)
                properties = self._read_properties(reader, registry, entity_type)
            else:
                raise DecodeError("Unexpected member in entity record", key=member)
        if entity_type is None or properties is None:
            raise DecodeError(f"Entity record needs {TYPE_KEY!r} and {PROPERTIES_KEY!r}")
        return EntityRecord(entity_type, properties)

    def _read_properties(
        self, reader: JsonReader, registry: PersistenceRegistry, entity_type: type
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for key in reader.iter_object():
            owner, name = PropertyRef.split_key(key)
            owner_type = registry.library.get_type(owner)
            if owner_type is None:
                raise DecodeError("Unknown type in property key", key=key)
            if owner_type is not entity_type:
                raise DecodeError(
                    f"Property does not belong to {type_name(entity_type)}", key=key
                )
            prop = registry.get_field(owner_type, name)
            if prop is None:
                raise DecodeError("Property is not persisted", key=key)
            if name in values:
                raise DecodeError("Duplicate property", key=key)
            try:
                values[name] = self.read_value(reader, prop.value_type)
            except DecodeError as exc:
                if exc.key is not None:
                    raise
                raise DecodeError(str(exc), key=key) from exc
        return values

    def dump(self, snapshot: Snapshot, registry: PersistenceRegistry, stream: IO[bytes]) -> None:
        stream.write(self.encode(snapshot, registry))

    def load(self, stream: IO[bytes], registry: PersistenceRegistry) -> Snapshot:
        return self.decode(stream.read(), registry)
