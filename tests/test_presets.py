from __future__ import annotations

import json

import pytest

from neonmaster.errors import ValidationError
from neonmaster.models import ChainState, EqSettings, MeterSnapshot, StereoSettings
from neonmaster.persistence import MemoryStore
from neonmaster.presets import PresetManager, preset_from_doc, slot_key, validate_preset_doc


class FakeTarget:
    def __init__(self):
        self.state = ChainState()
        self.offset = 0.0
        self.lufs = -120.0
        self.applied = 0

    def chain_state(self) -> ChainState:
        return self.state

    def apply_chain_state(self, state: ChainState) -> None:
        self.state = state
        self.applied += 1

    def set_gain_match_offset(self, offset_db: float) -> None:
        self.offset = offset_db

    def meter_snapshot(self) -> MeterSnapshot:
        return MeterSnapshot(lufs_integrated=self.lufs)


def _store_two(manager: PresetManager, target: FakeTarget, lufs_a: float, lufs_b: float) -> None:
    target.lufs = lufs_a
    manager.store("A")
    target.state = target.state.with_section("eq", mid=4.0)
    target.lufs = lufs_b
    manager.store("B")


def test_gain_matched_recall_offsets_loudness_difference() -> None:
    target = FakeTarget()
    manager = PresetManager(target)
    _store_two(manager, target, -10.0, -16.0)
    manager.set_gain_match_enabled(True)

    preset = manager.recall("B")
    assert preset is not None
    assert target.offset == pytest.approx(6.0)
    assert manager.active_slot == "B"
    assert target.state.eq.mid == 4.0

    manager.recall("A")
    assert target.offset == pytest.approx(-6.0)
    assert target.state.eq.mid == 0.0


def test_gain_match_offset_is_clamped() -> None:
    target = FakeTarget()
    manager = PresetManager(target)
    _store_two(manager, target, -2.0, -30.0)
    manager.set_gain_match_enabled(True)
    manager.recall("B")
    assert target.offset == 12.0


def test_recall_without_gain_match_and_disabling_resets_offset() -> None:
    target = FakeTarget()
    manager = PresetManager(target)
    _store_two(manager, target, -10.0, -16.0)
    manager.recall("B")
    assert target.offset == 0.0

    manager.set_gain_match_enabled(True)
    manager.recall("A")
    assert target.offset == pytest.approx(-6.0)
    manager.set_gain_match_enabled(False)
    assert target.offset == 0.0
    assert manager.gain_match_offset == 0.0


def test_recall_empty_slot_changes_nothing() -> None:
    target = FakeTarget()
    manager = PresetManager(target)
    assert manager.recall("B") is None
    assert target.applied == 0
    assert manager.active_slot == "A"


def test_unknown_slot() -> None:
    with pytest.raises(ValueError):
        PresetManager(FakeTarget()).recall("C")


def test_export_then_import_restores_state() -> None:
    target = FakeTarget()
    target.state = ChainState().with_section("limiter", ceiling=-1.0, softClip=False)
    target.lufs = -12.5
    manager = PresetManager(target)
    text = manager.export_json()
    doc = json.loads(text)
    assert doc["limiter"]["softClip"] is False
    assert doc["lufs"] == -12.5

    other = FakeTarget()
    imported = PresetManager(other).import_json(text)
    assert other.state == target.state
    assert imported.lufs == -12.5
    assert imported.name == "Preset A"


@pytest.mark.parametrize(
    "text",
    [
        "{not json",
        "[]",
        json.dumps({"eq": {}, "compressor": {}}),
        json.dumps({"eq": {"mid": "loud"}, "compressor": {}, "limiter": {}}),
        json.dumps({"eq": {}, "compressor": {"bypass": 1}, "limiter": {}}),
        json.dumps({"eq": {}, "compressor": {}, "limiter": {}, "lufs": "quiet"}),
    ],
)
def test_invalid_import_leaves_everything_untouched(text: str) -> None:
    target = FakeTarget()
    target.state = ChainState().with_section("eq", low=3.0)
    store = MemoryStore()
    manager = PresetManager(target, store=store)
    before = target.state

    with pytest.raises(ValidationError):
        manager.import_json(text)

    assert target.state is before
    assert target.applied == 0
    assert manager.slot("A") is None
    assert store.keys() == []


def test_import_persists_into_active_slot() -> None:
    store = MemoryStore()
    manager = PresetManager(FakeTarget(), store=store)
    manager.import_json(json.dumps({"name": "Loud", "eq": {"air": 2.0}, "compressor": {}, "limiter": {}}))
    assert store.keys() == [slot_key("A")]

    restored = PresetManager(FakeTarget(), store=store)
    restored.load_slots()
    preset = restored.slot("A")
    assert preset is not None
    assert preset.name == "Loud"
    assert preset.state.eq.air == 2.0
    assert restored.slot("B") is None


def test_load_slots_skips_invalid_documents() -> None:
    store = MemoryStore()
    store.save(slot_key("B"), {"eq": {}})
    manager = PresetManager(FakeTarget(), store=store)
    manager.load_slots()
    assert manager.slot("B") is None


def test_imported_values_are_clamped() -> None:
    preset = preset_from_doc({"eq": {"sub": 99}, "compressor": {"ratio": 0.5}, "limiter": {}})
    assert preset.state.eq.sub == 24.0
    assert preset.state.compressor.ratio == 1.0
    assert preset.lufs is None


def test_validate_rejects_non_finite_numbers() -> None:
    with pytest.raises(ValidationError):
        validate_preset_doc({"eq": {"sub": float("nan")}, "compressor": {}, "limiter": {}})


def test_recall_clamps_out_of_range_state() -> None:
    target = FakeTarget()
    manager = PresetManager(target)
    target.state = ChainState(eq=EqSettings(mid=-99.0), stereo=StereoSettings(width=5.0))
    manager.store("B")
    target.state = ChainState()

    manager.recall("B")
    assert target.state.eq.mid == -24.0
    assert target.state.stereo.width == 2.0
