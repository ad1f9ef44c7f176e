from __future__ import annotations

import json
import logging
import math
from dataclasses import fields
from typing import Any, Optional, Protocol

from .config import GAIN_MATCH_LIMIT_DB
from .errors import ValidationError
from .models import SECTION_TYPES, ChainState, MeterSnapshot, Preset, doc_key
from .persistence import PersistencePort
from .utils import clamp

logger = logging.getLogger(__name__)

SLOTS = ("A", "B")
REQUIRED_SECTIONS = ("eq", "compressor", "limiter")


def slot_key(slot: str) -> str:
    return f"neon-mastering-preset-{slot}"


class PresetTarget(Protocol):
    def chain_state(self) -> ChainState: ...

    def apply_chain_state(self, state: ChainState) -> None: ...

    def set_gain_match_offset(self, offset_db: float) -> None: ...

    def meter_snapshot(self) -> MeterSnapshot: ...


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_preset_doc(doc: Any) -> dict[str, Any]:
    """Raise ValidationError unless ``doc`` is a usable preset document."""
    if not isinstance(doc, dict):
        raise ValidationError("Invalid preset file: expected a JSON object")
    for section in REQUIRED_SECTIONS:
        if not isinstance(doc.get(section), dict):
            raise ValidationError(f"Invalid preset file: missing '{section}' section")
    for section, section_type in SECTION_TYPES.items():
        values = doc.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValidationError(f"Invalid preset file: '{section}' must be an object")
        for f in fields(section_type):
            key = doc_key(f.name)
            if key not in values:
                continue
            value = values[key]
            if f.type in (bool, "bool"):
                if not isinstance(value, bool):
                    raise ValidationError(f"Invalid preset file: {section}.{key} must be true or false")
            elif not _is_number(value) or not math.isfinite(float(value)):
                raise ValidationError(f"Invalid preset file: {section}.{key} must be a number")
    lufs = doc.get("lufs")
    if lufs is not None and not _is_number(lufs):
        raise ValidationError("Invalid preset file: lufs must be a number")
    name = doc.get("name")
    if name is not None and not isinstance(name, str):
        raise ValidationError("Invalid preset file: name must be a string")
    return doc


def preset_to_doc(preset: Preset) -> dict[str, Any]:
    doc: dict[str, Any] = {"name": preset.name}
    doc.update(preset.state.to_dict())
    if preset.lufs is not None:
        doc["lufs"] = preset.lufs
    return doc


def preset_from_doc(doc: Any, default_name: str = "Imported") -> Preset:
    doc = validate_preset_doc(doc)
    lufs = doc.get("lufs")
    return Preset(
        name=doc.get("name") or default_name,
        state=ChainState.from_dict(doc),
        lufs=float(lufs) if lufs is not None else None,
    )


class PresetManager:
    """
    A/B preset slots with loudness-matched switching.

    With gain matching on, recalling a slot sets the output offset to
    ``clamp(current_lufs - preset_lufs, -12, 12)`` where ``current_lufs`` is
    the active slot's stored loudness, falling back to the live meter.
    """

    def __init__(self, target: PresetTarget, store: Optional[PersistencePort] = None):
        self._target = target
        self._store = store
        self._slots: dict[str, Optional[Preset]] = {slot: None for slot in SLOTS}
        self.active_slot = "A"
        self._gain_match_enabled = False
        self._gain_match_offset = 0.0

    @staticmethod
    def _check_slot(slot: str) -> str:
        if slot not in SLOTS:
            raise ValueError(f"Unknown preset slot: {slot!r}")
        return slot

    def slot(self, slot: str) -> Optional[Preset]:
        return self._slots[self._check_slot(slot)]

    @property
    def gain_match_enabled(self) -> bool:
        return self._gain_match_enabled

    @property
    def gain_match_offset(self) -> float:
        return self._gain_match_offset

    def set_gain_match_enabled(self, enabled: bool) -> None:
        self._gain_match_enabled = bool(enabled)
        if not self._gain_match_enabled:
            self._set_offset(0.0)

    def _set_offset(self, offset_db: float) -> None:
        self._gain_match_offset = offset_db
        self._target.set_gain_match_offset(offset_db)

    def _live_lufs(self) -> float:
        return self._target.meter_snapshot().lufs_integrated

    def capture(self, name: str) -> Preset:
        return Preset(name=name, state=self._target.chain_state(), lufs=self._live_lufs())

    def store(self, slot: str) -> Preset:
        slot = self._check_slot(slot)
        preset = self.capture(f"Preset {slot}")
        self._slots[slot] = preset
        self._persist(slot, preset)
        return preset

    def recall(self, slot: str) -> Optional[Preset]:
        slot = self._check_slot(slot)
        preset = self._slots[slot]
        if preset is None:
            logger.debug("Preset slot %s is empty", slot)
            return None
        current = self._slots[self.active_slot]
        live = self._live_lufs()
        current_lufs = current.lufs if current is not None and current.lufs is not None else live
        next_lufs = preset.lufs if preset.lufs is not None else live
        if self._gain_match_enabled:
            self._set_offset(clamp(current_lufs - next_lufs, -GAIN_MATCH_LIMIT_DB, GAIN_MATCH_LIMIT_DB))
        else:
            self._set_offset(0.0)
        self.active_slot = slot
        self._target.apply_chain_state(preset.state.clamped())
        return preset

    def export_json(self, preset: Optional[Preset] = None, indent: int = 2) -> str:
        if preset is None:
            preset = self.capture(f"Preset {self.active_slot}")
        return json.dumps(preset_to_doc(preset), indent=indent)

    def import_json(self, text: str) -> Preset:
        try:
            doc = json.loads(text)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Invalid preset file: {e}") from e
        preset = preset_from_doc(doc, default_name=f"Preset {self.active_slot}")
        self._target.apply_chain_state(preset.state)
        self._slots[self.active_slot] = preset
        self._persist(self.active_slot, preset)
        return preset

    def load_slots(self) -> None:
        if self._store is None:
            return
        for slot in SLOTS:
            doc = self._store.load(slot_key(slot))
            if doc is None:
                continue
            try:
                self._slots[slot] = preset_from_doc(doc, default_name=f"Preset {slot}")
            except ValidationError as e:
                logger.warning("Skipping stored preset %s: %s", slot, e)

    def _persist(self, slot: str, preset: Preset) -> None:
        if self._store is None:
            return
        try:
            self._store.save(slot_key(slot), preset_to_doc(preset))
        except OSError as e:
            logger.warning("Failed to persist preset %s: %s", slot, e)
