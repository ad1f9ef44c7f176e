from __future__ import annotations

import os
from dataclasses import dataclass

from .utils import env_flag


@dataclass(frozen=True)
class BufferPreset:
    blocksize_frames: int
    latency: str | float
    target_sec: float
    high_sec: float
    low_sec: float
    ring_max_seconds: float


DEFAULT_SAMPLE_RATE = 44100
DEFAULT_CHANNELS = 2

# name -> (frequency Hz, filter type, Q); Q is ignored by the shelves.
EQ_BANDS: dict[str, tuple[float, str, float]] = {
    "sub": (80.0, "lowshelf", 1.0),
    "low": (250.0, "peaking", 0.9),
    "mid": (1000.0, "peaking", 1.0),
    "high": (4000.0, "peaking", 1.1),
    "air": (12000.0, "highshelf", 1.0),
}
EQ_BAND_NAMES = tuple(EQ_BANDS)

PARAM_RANGES: dict[str, dict[str, tuple[float, float]]] = {
    "eq": {name: (-24.0, 24.0) for name in EQ_BAND_NAMES},
    "compressor": {
        "threshold": (-40.0, 0.0),
        "ratio": (1.0, 8.0),
        "attack": (0.001, 0.2),
        "release": (0.05, 1.0),
        "makeup": (-6.0, 12.0),
    },
    "limiter": {
        "threshold": (-12.0, 0.0),
        "ceiling": (-6.0, 0.0),
        "release": (10.0, 1000.0),
    },
    "saturation": {
        "drive": (0.0, 1.0),
        "mix": (0.0, 1.0),
    },
    "stereo": {
        "width": (0.0, 2.0),
        "pan": (-1.0, 1.0),
    },
    "output": {
        "trim": (-12.0, 12.0),
    },
}

COMPRESSOR_KNEE_DB = 30.0
GAIN_MATCH_LIMIT_DB = 12.0
OUTPUT_SMOOTHING_SEC = 0.015

LUFS_FLOOR = -120.0
METER_MOMENTARY_SEC = 0.4
METER_SHORT_SEC = 3.0
METER_REPORT_SEC = 0.05

RENDER_BLOCK_FRAMES = 8192
DEFAULT_TARGET_LUFS = -14.0
DISABLE_OFFLINE_ENV = "NEONMASTER_DISABLE_OFFLINE"

VIZ_TARGET_FPS = 60.0
VIZ_LOW_FPS_THRESHOLD = 32.0
VIZ_LOW_FPS_WINDOW_MS = 4000.0
VIZ_FFT_SIZE = 1024
VIZ_SCOPE_SIZE = 512
VIZ_SMOOTHING = 0.8
VIZ_MIN_DB = -100.0
VIZ_MAX_DB = -30.0
VIZ_TIMER_INTERVAL_MS = 8

BUFFER_PRESETS: dict[str, BufferPreset] = {
    "low_latency": BufferPreset(
        blocksize_frames=256,
        latency="low",
        target_sec=0.12,
        high_sec=0.2,
        low_sec=0.06,
        ring_max_seconds=1.0,
    ),
    "balanced": BufferPreset(
        blocksize_frames=1024,
        latency="high",
        target_sec=0.25,
        high_sec=0.4,
        low_sec=0.12,
        ring_max_seconds=2.0,
    ),
    "stable": BufferPreset(
        blocksize_frames=2048,
        latency="high",
        target_sec=0.5,
        high_sec=0.8,
        low_sec=0.25,
        ring_max_seconds=3.0,
    ),
}
DEFAULT_BUFFER_PRESET = os.environ.get("NEONMASTER_BUFFER_PRESET", "balanced").strip().lower()
if DEFAULT_BUFFER_PRESET not in BUFFER_PRESETS:
    DEFAULT_BUFFER_PRESET = "balanced"

GRAPH_PROFILE = env_flag("NEONMASTER_PROFILE")
GRAPH_PROFILE_LOG_EVERY = 50
