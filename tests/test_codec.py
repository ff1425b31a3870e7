from __future__ import annotations

import io
import json
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import pytest

from gravekeeper import timing
from gravekeeper.assets import Asset, AssetLibrary
from gravekeeper.codec import JsonReader, SnapshotCodec, ValueCodec
from gravekeeper.errors import DecodeError, UnsupportedValueError
from gravekeeper.registry import PersistenceRegistry
from gravekeeper.snapshot import EntityRecord, Snapshot, capture_all
from gravekeeper.timing import TimeSince, TimeUntil
from gravekeeper.types import Entity, TypeLibrary, persist, persist_property, type_name
from gravekeeper.world import World


class Rarity(Enum):
    COMMON = 1
    CURSED = 2


@dataclass
class Position:
    x: int
    y: int


@dataclass
class Chest(Entity):
    gold: int = persist(default=0)
    weight: float = persist(default=1.5)
    opened: bool = persist(default=False)
    owner: str = persist(default="")
    price: Decimal = persist(default=Decimal("0"))
    rarity: Rarity = persist(default=Rarity.COMMON)
    key_id: Optional[int] = persist(default=None)
    loot: list[str] = persist(default_factory=list)
    dice: tuple[int, ...] = persist(default=())
    tags: set[str] = persist(default_factory=set)
    counts: dict[str, int] = persist(default_factory=dict)
    slots: dict[int, str] = persist(default_factory=dict)
    odds: dict[Rarity, float] = persist(default_factory=dict)
    position: Position = persist(default_factory=lambda: Position(0, 0))
    model: Optional[Asset] = persist(default=None)
    spawns: Optional[type[Entity]] = persist(default=None)
    extra: Any = persist(default=None)
    note: str = ""


@persist_property("hp")
class Shade(Entity):
    hp: int = 3


@dataclass
class Timers(Entity):
    since: TimeSince = persist(default_factory=TimeSince)
    until: TimeUntil = persist(default_factory=lambda: TimeUntil(10))


class Color:
    def __init__(self, hex_code: str) -> None:
        self.hex_code = hex_code

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Color) and other.hex_code == self.hex_code


@dataclass
class Banner(Entity):
    color: Color = persist(default_factory=lambda: Color("#000000"))


class ColorCodec(ValueCodec):
    def handles(self, tp):
        return tp is Color

    def write(self, writer, value, tp, codec):
        writer.string(value.hex_code)

    def read(self, reader, tp, codec):
        return Color(reader.read_string())


@pytest.fixture()
def registry() -> PersistenceRegistry:
    return PersistenceRegistry(TypeLibrary([Chest, Shade, Timers, Banner]))


@pytest.fixture()
def codec() -> SnapshotCodec:
    return SnapshotCodec(assets=AssetLibrary())


@pytest.fixture()
def clock(monkeypatch):
    current = [1000.0]
    monkeypatch.setattr(timing, "_clock", lambda: current[0])
    return current


def full_chest() -> Chest:
    return Chest(
        gold=120,
        weight=2.25,
        opened=True,
        owner="Ser Bones ☠",
        price=Decimal("19.99"),
        rarity=Rarity.CURSED,
        key_id=7,
        loot=["potion", "bone"],
        dice=(4, 6, 6),
        tags={"heavy", "locked"},
        counts={"potion": 2, "bone": 11},
        slots={1: "sword", 2: "shield"},
        odds={Rarity.COMMON: 0.9, Rarity.CURSED: 0.1},
        position=Position(3, -4),
        model=Asset("models/chest.vmdl"),
        spawns=Shade,
        extra={"free": [1, "form"]},
    )


def test_round_trip_preserves_every_supported_value(registry, codec):
    world = World()
    world.spawn(full_chest())
    world.spawn(Chest())
    world.spawn(Shade())
    snapshot = capture_all(registry, world)

    restored = codec.decode(codec.encode(snapshot, registry), registry)

    assert restored == snapshot
    chest = next(restored.of_type(Chest))
    assert chest.get("dice") == (4, 6, 6)
    assert chest.get("tags") == {"heavy", "locked"}
    assert chest.get("position") == Position(3, -4)
    assert chest.get("rarity") is Rarity.CURSED
    assert chest.get("spawns") is Shade
    assert chest.get("key_id") == 7


def test_wire_format_is_array_of_type_and_properties(registry, codec):
    snapshot = Snapshot([EntityRecord(Shade, {"hp": 9})])
    data = json.loads(codec.encode(snapshot, registry).decode("utf-8"))
    assert data == [
        {"type": type_name(Shade), "properties": {f"{type_name(Shade)}.hp": 9}},
    ]


def test_enum_and_type_values_are_stored_by_name(registry, codec):
    snapshot = Snapshot([EntityRecord(Chest, {"rarity": Rarity.CURSED, "spawns": Shade})])
    data = json.loads(codec.encode(snapshot, registry))
    props = data[0]["properties"]
    assert props[f"{type_name(Chest)}.rarity"] == "CURSED"
    assert props[f"{type_name(Chest)}.spawns"] == type_name(Shade)


def test_encoding_is_deterministic(registry, codec):
    snapshot = capture_all(registry, _world_with(full_chest()))
    assert codec.encode(snapshot, registry) == codec.encode(snapshot, registry)


def test_decimal_keeps_every_digit(registry, codec):
    price = Decimal("12345678901234567890.123456789012345")
    snapshot = Snapshot([EntityRecord(Chest, {"price": price})])
    restored = codec.decode(codec.encode(snapshot, registry), registry)
    assert next(iter(restored)).get("price") == price


def test_timers_are_stored_relative_to_now(registry, codec, clock):
    timers = Timers(since=TimeSince(5), until=TimeUntil(30))
    data = codec.encode(Snapshot([EntityRecord(Timers, {"since": timers.since, "until": timers.until})]), registry)
    props = json.loads(data)[0]["properties"]
    assert props[f"{type_name(Timers)}.since"] == 5.0
    assert props[f"{type_name(Timers)}.until"] == 30.0

    clock[0] += 100.0  # load much later
    record = next(iter(codec.decode(data, registry)))
    assert record.get("since").relative == pytest.approx(5.0)
    assert record.get("until").relative == pytest.approx(30.0)


def test_passed_deadline_is_negative(registry, codec, clock):
    until = TimeUntil(2)
    clock[0] += 5.0
    data = codec.encode(Snapshot([EntityRecord(Timers, {"until": until})]), registry)
    record = next(iter(codec.decode(data, registry)))
    assert record.get("until").relative == pytest.approx(-3.0)
    assert record.get("until").passed


def test_unknown_property_key_is_a_decode_error(registry, codec):
    key = f"{type_name(Shade)}.mood"
    text = json.dumps([{"type": type_name(Shade), "properties": {key: "grim"}}])
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == key


def test_unknown_entity_type_is_a_decode_error(registry, codec):
    text = json.dumps([{"type": "nowhere.Thing", "properties": {}}])
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == "nowhere.Thing"


def test_property_of_another_type_is_a_decode_error(registry, codec):
    key = f"{type_name(Chest)}.gold"
    text = json.dumps([{"type": type_name(Shade), "properties": {key: 1}}])
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == key


def test_wrong_value_shape_names_the_key(registry, codec):
    key = f"{type_name(Shade)}.hp"
    text = json.dumps([{"type": type_name(Shade), "properties": {key: "ten"}}])
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == key


def test_fractional_literal_for_int_property_is_rejected(registry, codec):
    key = f"{type_name(Shade)}.hp"
    text = json.dumps([{"type": type_name(Shade), "properties": {key: 1.5}}])
    with pytest.raises(DecodeError):
        codec.decode(text, registry)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "{}",
        "[",
        '[{"type": 1}]',
        '[{"properties": {}}]',
        '[{"properties": {}, "type": "x.Y"}]',
        '[{"type": "x.Y", "extra": 1}]',
        "[] trailing",
    ],
)
def test_malformed_documents_are_decode_errors(registry, codec, text):
    with pytest.raises(DecodeError):
        codec.decode(text, registry)


def test_non_utf8_bytes_are_a_decode_error(registry, codec):
    with pytest.raises(DecodeError):
        codec.decode(b"\xff\xfe[]", registry)


def test_null_decodes_to_none(registry, codec):
    key = f"{type_name(Chest)}.key_id"
    text = json.dumps([{"type": type_name(Chest), "properties": {key: None}}])
    record = next(iter(codec.decode(text, registry)))
    assert record.get("key_id") is None


@pytest.mark.parametrize("asset", [Asset("mesh#1", procedural=True), Asset("error", error=True)])
def test_procedural_and_error_assets_cannot_be_saved(registry, codec, asset):
    snapshot = Snapshot([EntityRecord(Chest, {"model": asset})])
    with pytest.raises(UnsupportedValueError):
        codec.encode(snapshot, registry)


def test_missing_asset_file_loads_as_unsaveable_placeholder(registry, tmp_path):
    (tmp_path / "models").mkdir()
    (tmp_path / "models" / "chest.vmdl").write_text("mesh", encoding="utf-8")
    assets = AssetLibrary(root=tmp_path)
    codec = SnapshotCodec(assets=assets)
    key = f"{type_name(Chest)}.model"

    good = codec.decode(json.dumps([{"type": type_name(Chest), "properties": {key: "models/chest.vmdl"}}]), registry)
    assert next(iter(good)).get("model") == Asset("models/chest.vmdl")

    gone = codec.decode(json.dumps([{"type": type_name(Chest), "properties": {key: "models/gone.vmdl"}}]), registry)
    placeholder = next(iter(gone)).get("model")
    assert placeholder.error is True
    with pytest.raises(UnsupportedValueError):
        codec.encode(gone, registry)


def test_non_finite_float_is_unsupported(registry, codec):
    snapshot = Snapshot([EntityRecord(Chest, {"weight": float("nan")})])
    with pytest.raises(UnsupportedValueError):
        codec.encode(snapshot, registry)


def test_value_not_matching_declared_type_is_unsupported(registry, codec):
    snapshot = Snapshot([EntityRecord(Shade, {"hp": "three"})])
    with pytest.raises(UnsupportedValueError):
        codec.encode(snapshot, registry)


def test_type_without_codec_is_unsupported(registry, codec):
    snapshot = Snapshot([EntityRecord(Banner, {"color": Color("#ff0000")})])
    with pytest.raises(UnsupportedValueError):
        codec.encode(snapshot, registry)


def test_registered_value_codec_is_used(registry, codec):
    codec.register(ColorCodec())
    snapshot = Snapshot([EntityRecord(Banner, {"color": Color("#ff0000")})])
    data = codec.encode(snapshot, registry)
    assert json.loads(data)[0]["properties"][f"{type_name(Banner)}.color"] == "#ff0000"
    assert codec.decode(data, registry) == snapshot


def test_runtime_registered_field_round_trips(registry, codec):
    registry.register_field(Chest, "note")
    snapshot = Snapshot([EntityRecord(Chest, {"note": "hello"})])
    assert codec.decode(codec.encode(snapshot, registry), registry) == snapshot


def test_dump_and_load_streams(registry, codec):
    snapshot = Snapshot([EntityRecord(Shade, {"hp": 1})])
    buffer = io.BytesIO()
    codec.dump(snapshot, registry, buffer)
    buffer.seek(0)
    assert codec.load(buffer, registry) == snapshot


def test_compact_output_without_indent(registry):
    codec = SnapshotCodec(indent=None, assets=AssetLibrary())
    data = codec.encode(Snapshot([EntityRecord(Shade, {"hp": 1})]), registry)
    assert b"\n" not in data


def test_reader_hands_out_number_literals_as_text():
    reader = JsonReader(' [ -12.50e3 , 7 ] ')
    literals = []
    for _ in reader.iter_array():
        literals.append(reader.read_number())
    reader.finish()
    assert literals == ["-12.50e3", "7"]


def _world_with(*entities) -> World:
    world = World()
    for entity in entities:
        world.spawn(entity)
    return world


def test_repeated_properties_member_is_a_decode_error(registry, codec):
    key = f"{type_name(Shade)}.hp"
    text = '[{"type": "%s", "properties": {"%s": 4}, "properties": {}}]' % (type_name(Shade), key)
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == "properties"


def test_type_repeated_after_properties_is_a_decode_error(registry, codec):
    key = f"{type_name(Shade)}.hp"
    text = '[{"type": "%s", "properties": {"%s": 4}, "type": "%s"}]' % (
        type_name(Shade),
        key,
        type_name(Chest),
    )
    with pytest.raises(DecodeError) as info:
        codec.decode(text, registry)
    assert info.value.key == "type"


@pytest.mark.parametrize(
    "name, value",
    [
        ("slots", {"abc": "sword"}),
        ("slots", {True: "sword"}),
        ("counts", {3: 1}),
        ("odds", {"COMMON": 0.5}),
    ],
)
def test_mapping_key_of_wrong_type_fails_at_encode(registry, codec, name, value):
    snapshot = Snapshot([EntityRecord(Chest, {name: value})])
    with pytest.raises(UnsupportedValueError):
        codec.encode(snapshot, registry)


def test_int_and_enum_mapping_keys_round_trip(registry, codec):
    snapshot = Snapshot(
        [EntityRecord(Chest, {"slots": {1: "sword", 20: "shield"}, "odds": {Rarity.CURSED: 0.25}})]
    )
    restored = codec.decode(codec.encode(snapshot, registry), registry)
    assert restored == snapshot
    assert next(iter(restored)).get("odds") == {Rarity.CURSED: 0.25}
