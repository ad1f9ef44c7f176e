from __future__ import annotations

import math
import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum, auto
from typing import Any, Optional

import numpy as np

from .config import EQ_BAND_NAMES, LUFS_FLOOR, PARAM_RANGES
from .utils import clamp


@dataclass(frozen=True)
class EqSettings:
    sub: float = 0.0
    low: float = 0.0
    mid: float = 0.0
    high: float = 0.0
    air: float = 0.0

    def gains_db(self) -> tuple[float, ...]:
        return tuple(float(getattr(self, name)) for name in EQ_BAND_NAMES)


@dataclass(frozen=True)
class CompressorSettings:
    threshold: float = -18.0
    ratio: float = 2.0
    attack: float = 0.01
    release: float = 0.25
    makeup: float = 0.0
    bypass: bool = False


@dataclass(frozen=True)
class LimiterSettings:
    threshold: float = -6.0
    ceiling: float = -0.3
    release: float = 120.0
    soft_clip: bool = True
    bypass: bool = False


@dataclass(frozen=True)
class SaturationSettings:
    drive: float = 0.2
    mix: float = 0.4
    bypass: bool = False


@dataclass(frozen=True)
class StereoSettings:
    width: float = 1.0
    pan: float = 0.0
    mono: bool = False
    bypass: bool = False


@dataclass(frozen=True)
class OutputSettings:
    trim: float = 0.0
    bypass: bool = False


SECTION_TYPES = {
    "eq": EqSettings,
    "compressor": CompressorSettings,
    "limiter": LimiterSettings,
    "saturation": SaturationSettings,
    "stereo": StereoSettings,
    "output": OutputSettings,
}

# Python field name -> preset document key, where they differ.
_DOC_KEYS = {"soft_clip": "softClip"}
_FIELD_KEYS = {doc_key: name for name, doc_key in _DOC_KEYS.items()}


def doc_key(name: str) -> str:
    return _DOC_KEYS.get(name, name)


def field_key(key: str) -> str:
    return _FIELD_KEYS.get(key, key)


def update_section(section: str, current: Any, changes: dict[str, Any]) -> tuple[Any, list[str]]:
    """
    Apply ``changes`` to one ChainState section with clamp-on-write.

    Returns the new section object and the keys that were not recognised.
    Numeric values outside the documented range are clamped; values that are
    not finite numbers leave the field unchanged.
    """
    ranges = PARAM_RANGES[section]
    known = {f.name: f for f in fields(current)}
    accepted: dict[str, Any] = {}
    ignored: list[str] = []
    for key, value in changes.items():
        name = field_key(key)
        if name not in known:
            ignored.append(key)
            continue
        if name in ranges:
            lo, hi = ranges[name]
            try:
                number = float(value)
            except (TypeError, ValueError):
                ignored.append(key)
                continue
            if not math.isfinite(number):
                continue
            accepted[name] = clamp(number, lo, hi)
        else:
            accepted[name] = bool(value)
    if not accepted:
        return current, ignored
    return replace(current, **accepted), ignored


@dataclass(frozen=True)
class ChainState:
    eq: EqSettings = field(default_factory=EqSettings)
    compressor: CompressorSettings = field(default_factory=CompressorSettings)
    limiter: LimiterSettings = field(default_factory=LimiterSettings)
    saturation: SaturationSettings = field(default_factory=SaturationSettings)
    stereo: StereoSettings = field(default_factory=StereoSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    version: int = field(default=0, compare=False)

    def with_section(self, section: str, **changes: Any) -> "ChainState":
        updated, _ignored = update_section(section, getattr(self, section), changes)
        return replace(self, **{section: updated}, version=self.version + 1)

    def get(self, section: str, name: str) -> Any:
        return getattr(getattr(self, section), field_key(name))

    def clamped(self) -> "ChainState":
        """Same settings with every field forced into its range; version is kept."""
        return replace(ChainState.from_dict(self.to_dict()), version=self.version)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        doc: dict[str, dict[str, Any]] = {}
        for section in SECTION_TYPES:
            values = getattr(self, section)
            doc[section] = {doc_key(f.name): getattr(values, f.name) for f in fields(values)}
        return doc

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "ChainState":
        """Build a clamped state from a (validated) document; missing sections use defaults."""
        sections = {}
        for section, section_type in SECTION_TYPES.items():
            values = doc.get(section) or {}
            sections[section], _ignored = update_section(section, section_type(), dict(values))
        return cls(**sections)


@dataclass(frozen=True)
class MeterSnapshot:
    peak: float = 0.0
    rms: float = 0.0
    lufs_momentary: float = LUFS_FLOOR
    lufs_short: float = LUFS_FLOOR
    lufs_integrated: float = LUFS_FLOOR
    correlation: float = 0.0


@dataclass(frozen=True)
class Preset:
    name: str
    state: ChainState
    lufs: Optional[float] = None


@dataclass(frozen=True)
class TrackBuffer:
    """
    Decoded PCM owned by the decoder collaborator.

    ``data`` is (frames, channels) float32 and read-only; renders work on copies.
    """
    sample_rate: int
    data: np.ndarray

    def __post_init__(self):
        data = np.asarray(self.data, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.ndim != 2 or data.shape[1] < 1:
            raise ValueError(f"TrackBuffer expects (frames, channels) samples, got {data.shape}")
        if data.base is not None or data.flags.writeable:
            data = np.array(data, copy=True)
        data.flags.writeable = False
        object.__setattr__(self, "sample_rate", int(self.sample_rate))
        object.__setattr__(self, "data", data)

    @classmethod
    def from_channels(cls, channels: list[np.ndarray], sample_rate: int) -> "TrackBuffer":
        if not channels:
            raise ValueError("TrackBuffer needs at least one channel")
        length = min(len(ch) for ch in channels)
        data = np.stack([np.asarray(ch[:length], dtype=np.float32) for ch in channels], axis=1)
        return cls(sample_rate=sample_rate, data=data)

    @property
    def channels(self) -> int:
        return int(self.data.shape[1])

    @property
    def frames(self) -> int:
        return int(self.data.shape[0])

    @property
    def duration_sec(self) -> float:
        return self.frames / float(self.sample_rate) if self.sample_rate > 0 else 0.0

    def channel(self, index: int) -> np.ndarray:
        return self.data[:, index]


@dataclass
class TrackInfo:
    path: str
    title: str = ""
    artist: str = ""
    album: str = ""
    duration_sec: float = 0.0
    cover_art: Optional[bytes] = None


def track_title(info: Optional[TrackInfo]) -> str:
    """Tag title, else the file name without extension and any "Artist - " prefix."""
    if info is None:
        return ""
    if info.title.strip():
        return info.title.strip()
    stem = os.path.splitext(os.path.basename(info.path))[0]
    _artist, sep, title = stem.partition(" - ")
    if sep and title.strip():
        return title.strip()
    return stem


@dataclass(frozen=True)
class ResumeState:
    volume: float = 1.0
    muted: bool = False
    position_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"volume": self.volume, "isMuted": self.muted, "currentTime": self.position_sec}

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "ResumeState":
        try:
            volume = clamp(float(doc.get("volume", 1.0)), 0.0, 1.0)
            position = max(0.0, float(doc.get("currentTime", 0.0)))
        except (TypeError, ValueError):
            return cls()
        return cls(volume=volume, muted=bool(doc.get("isMuted", False)), position_sec=position)


class PlaybackState(Enum):
    STOPPED = auto()
    LOADING = auto()
    PLAYING = auto()
    PAUSED = auto()
    SUSPENDED = auto()
    ERROR = auto()


class VizMode(Enum):
    SPECTRUM = "spectrum"
    OSCILLOSCOPE = "oscilloscope"
    VECTORSCOPE = "vectorscope"
