from __future__ import annotations

from dataclasses import dataclass

import pytest

from gravekeeper.errors import CaptureError, InvalidTypeError, UnknownFieldError
from gravekeeper.registry import PersistenceRegistry
from gravekeeper.snapshot import EntityRecord, Snapshot, capture_all, capture_entity
from gravekeeper.types import Entity, TypeLibrary, manually_persist, persist, persist_property, type_name
from gravekeeper.world import World


@dataclass
class Crate(Entity):
    contents: list[str] = persist(default_factory=list)
    label: str = ""


@dataclass
class IronCrate(Crate):
    rust: int = persist(default=0)


@dataclass
class UnlistedCrate(Crate):
    pass


@manually_persist
@dataclass
class Player(Entity):
    gold: int = persist(default=0)
    title: str = ""


@persist_property("wail")
class Ghost(Entity):
    wail: str


def make_registry() -> PersistenceRegistry:
    return PersistenceRegistry(TypeLibrary([Crate, IronCrate, Player, Ghost]))


def test_capture_entity_reads_durable_properties_only():
    reg = make_registry()
    record = capture_entity(reg, Crate(contents=["potion"], label="left"))
    assert record.entity_type is Crate
    assert dict(record.properties) == {"contents": ["potion"]}
    assert record.type_name == type_name(Crate)


def test_capture_all_captures_each_live_entity_of_registered_types():
    reg = make_registry()
    world = World()
    a = world.spawn(Crate(contents=["a"]))
    b = world.spawn(Crate(contents=["b"]))
    world.spawn(IronCrate(contents=["c"], rust=3))

    snapshot = capture_all(reg, world)

    assert len(snapshot) == 3
    crates = list(snapshot.of_type(Crate, exact=True))
    assert [r.get("contents") for r in crates] == [a.contents, b.contents]
    iron = list(snapshot.of_type(IronCrate))
    assert len(iron) == 1
    assert dict(iron[0].properties) == {"contents": ["c"], "rust": 3}


def test_capture_matches_exact_runtime_type():
    reg = make_registry()
    world = World()
    world.spawn(IronCrate(rust=1))
    snapshot = capture_all(reg, world)
    # captured once, under its own type rather than also under Crate
    assert [r.entity_type for r in snapshot] == [IronCrate]


def test_unregistered_subclass_is_not_captured():
    reg = make_registry()
    world = World()
    world.spawn(UnlistedCrate(contents=["lost"]))
    assert len(capture_all(reg, world)) == 0


def test_manually_persisted_types_are_excluded_from_capture():
    reg = make_registry()
    world = World()
    player = world.spawn(Player(gold=50))
    world.spawn(Crate())

    snapshot = capture_all(reg, world)

    assert [r.entity_type for r in snapshot] == [Crate]
    # still capturable on request
    assert capture_entity(reg, player).get("gold") == 50


def test_failed_property_read_raises_capture_error():
    reg = make_registry()
    world = World()
    world.spawn(Ghost())

    with pytest.raises(CaptureError) as info:
        capture_all(reg, world)

    assert info.value.type_name == type_name(Ghost)
    assert info.value.field_name == "wail"
    assert isinstance(info.value.__cause__, AttributeError)


def test_empty_world_gives_empty_snapshot():
    assert len(capture_all(make_registry(), World())) == 0


def test_record_get_checks_name_and_type():
    record = EntityRecord(Crate, {"contents": ["x"]})
    assert record.get("contents", list) == ["x"]
    with pytest.raises(UnknownFieldError):
        record.get("label")
    with pytest.raises(TypeError):
        record.get("contents", str)


def test_records_are_read_only():
    source = {"contents": ["x"]}
    record = EntityRecord(Crate, source)
    source["contents"] = ["changed"]
    assert record.get("contents") == ["x"]
    with pytest.raises(TypeError):
        record.properties["contents"] = []  # type: ignore[index]


def test_snapshot_of_type_exact_and_subclass():
    snapshot = Snapshot(
        [EntityRecord(Crate, {}), EntityRecord(IronCrate, {}), EntityRecord(Player, {})]
    )
    assert [r.entity_type for r in snapshot.of_type(Crate)] == [Crate, IronCrate]
    assert [r.entity_type for r in snapshot.of_type(Crate, exact=True)] == [Crate]
    assert snapshot.entities[2].entity_type is Player


def test_world_tracks_entities_by_identity():
    world = World()
    crate = Crate()
    twin = Crate()
    world.spawn(crate)
    world.spawn(crate)
    world.spawn(twin)
    assert len(world) == 2
    assert crate in world
    assert world.delete(crate) is True
    assert world.delete(crate) is False
    assert crate not in world
    assert world.of_type(Crate) == [twin]


def test_world_rejects_non_entities():
    with pytest.raises(InvalidTypeError):
        World().spawn(object())


def test_runtime_registered_field_on_manual_type_stays_out_of_capture():
    reg = make_registry()
    world = World()
    player = world.spawn(Player(gold=5, title="Gravedigger"))
    world.spawn(Crate())

    reg.register_field(Player, "title")

    assert {p.name for p in reg.get_durable_fields(Player)} == {"gold", "title"}
    snapshot = capture_all(reg, world)
    assert list(snapshot.of_type(Player)) == []
    assert [r.entity_type for r in snapshot] == [Crate]
    assert dict(capture_entity(reg, player).properties) == {"gold": 5, "title": "Gravedigger"}


def _define_twin():
    class Twin(Entity):
        pass

    return Twin


def test_exact_of_type_distinguishes_classes_sharing_a_name():
    old, new = _define_twin(), _define_twin()
    assert type_name(old) == type_name(new)
    snapshot = Snapshot([EntityRecord(old, {}), EntityRecord(new, {})])
    assert [r.entity_type for r in snapshot.of_type(new, exact=True)] == [new]
    assert [r.entity_type for r in snapshot.of_type(old, exact=True)] == [old]
