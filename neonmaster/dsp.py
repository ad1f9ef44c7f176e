from __future__ import annotations

import logging
import math
import threading
from dataclasses import replace
from typing import Callable, Optional

import numpy as np
from numba import njit
from scipy.signal import sosfilt

from .config import (
    COMPRESSOR_KNEE_DB,
    EQ_BANDS,
    EQ_BAND_NAMES,
    LUFS_FLOOR,
    METER_MOMENTARY_SEC,
    METER_REPORT_SEC,
    METER_SHORT_SEC,
    OUTPUT_SMOOTHING_SEC,
    PARAM_RANGES,
)
from .models import MeterSnapshot
from .utils import clamp, gain_to_db

logger = logging.getLogger(__name__)


def sanitize_samples(x: np.ndarray) -> np.ndarray:
    """Replace NaN with silence and infinities with full scale."""
    if x.size == 0 or np.isfinite(x).all():
        return x
    return np.nan_to_num(x, nan=0.0, posinf=1.0, neginf=-1.0)


def lufs_from_mean_square(ms: float) -> float:
    if ms <= 0.0:
        return LUFS_FLOOR
    return max(LUFS_FLOOR, -0.691 + 10.0 * math.log10(ms))


def integrated_lufs(x: np.ndarray) -> float:
    """Whole-buffer loudness: mean over frames of the per-frame channel mean square."""
    if x.size == 0:
        return LUFS_FLOOR
    data = np.asarray(x, dtype=np.float64)
    if data.ndim == 1:
        data = data.reshape(-1, 1)
    frame_ms = np.mean(data * data, axis=1)
    return lufs_from_mean_square(float(frame_ms.sum() / frame_ms.shape[0]))


# -----------------------------
# Parameters
# -----------------------------

class AudioParam:
    """
    A stage parameter with two update modes.

    ``set_value`` stores a scalar that takes effect from the next block.
    ``set_values`` queues a per-sample array that the next block consumes
    wholesale; the parameter then holds the last value of that array.
    """

    def __init__(self, name: str, value: float, lo: float, hi: float):
        self.name = name
        self.lo = float(lo)
        self.hi = float(hi)
        self._value = clamp(float(value), self.lo, self.hi)
        self._pending: Optional[np.ndarray] = None

    @property
    def value(self) -> float:
        return self._value

    def set_value(self, value: float) -> None:
        value = float(value)
        if math.isfinite(value):
            self._value = clamp(value, self.lo, self.hi)

    def set_values(self, values) -> None:
        arr = np.asarray(values, dtype=np.float64).reshape(-1)
        if arr.size == 0:
            return
        arr = np.where(np.isfinite(arr), arr, self._value)
        self._pending = np.clip(arr, self.lo, self.hi)

    def block(self, n: int) -> np.ndarray:
        pending = self._pending
        self._pending = None
        if pending is None:
            return np.full(n, self._value, dtype=np.float64)
        if pending.shape[0] < n:
            pending = np.concatenate((pending, np.full(n - pending.shape[0], pending[-1])))
        else:
            pending = pending[:n]
        self._value = float(pending[-1])
        return pending


# -----------------------------
# Equalizer DSP (fixed five-band biquads)
# -----------------------------

def biquad_coeffs(kind: str, f0: float, gain_db: float, q: float, sample_rate: int) -> tuple[float, float, float, float, float]:
    """RBJ cookbook coefficients normalised by a0: (b0, b1, b2, a1, a2)."""
    A = 10.0 ** (gain_db / 40.0)
    w0 = 2.0 * math.pi * min(f0, 0.499 * sample_rate) / float(sample_rate)
    cos_w0 = math.cos(w0)
    sin_w0 = math.sin(w0)

    if kind == "peaking":
        alpha = sin_w0 / (2.0 * q)
        b0 = 1.0 + alpha * A
        b1 = -2.0 * cos_w0
        b2 = 1.0 - alpha * A
        a0 = 1.0 + alpha / A
        a1 = -2.0 * cos_w0
        a2 = 1.0 - alpha / A
    elif kind in ("lowshelf", "highshelf"):
        # shelf slope S = 1
        alpha = sin_w0 / 2.0 * math.sqrt(2.0)
        k = 2.0 * math.sqrt(A) * alpha
        if kind == "lowshelf":
            b0 = A * ((A + 1.0) - (A - 1.0) * cos_w0 + k)
            b1 = 2.0 * A * ((A - 1.0) - (A + 1.0) * cos_w0)
            b2 = A * ((A + 1.0) - (A - 1.0) * cos_w0 - k)
            a0 = (A + 1.0) + (A - 1.0) * cos_w0 + k
            a1 = -2.0 * ((A - 1.0) + (A + 1.0) * cos_w0)
            a2 = (A + 1.0) + (A - 1.0) * cos_w0 - k
        else:
            b0 = A * ((A + 1.0) + (A - 1.0) * cos_w0 + k)
            b1 = -2.0 * A * ((A - 1.0) + (A + 1.0) * cos_w0)
            b2 = A * ((A + 1.0) + (A - 1.0) * cos_w0 - k)
            a0 = (A + 1.0) - (A - 1.0) * cos_w0 + k
            a1 = 2.0 * ((A - 1.0) - (A + 1.0) * cos_w0)
            a2 = (A + 1.0) - (A - 1.0) * cos_w0 - k
    else:
        raise ValueError(f"Unknown filter type: {kind}")

    return b0 / a0, b1 / a0, b2 / a0, a1 / a0, a2 / a0


class EqualizerDSP:
    name = "Equalizer"

    def __init__(self, sample_rate: int, channels: int):
        self.sr = int(sample_rate)
        self.ch = int(channels)
        self._lock = threading.Lock()
        self._gains_db = {name: 0.0 for name in EQ_BAND_NAMES}
        self._sos = np.array(
            [self._band_row(name, 0.0) for name in EQ_BAND_NAMES],
            dtype=np.float64,
        )
        self._zi = np.zeros((len(EQ_BAND_NAMES), self.ch, 2), dtype=np.float64)
        self._active = False

    def _band_row(self, band: str, gain_db: float) -> tuple[float, ...]:
        f0, kind, q = EQ_BANDS[band]
        b0, b1, b2, a1, a2 = biquad_coeffs(kind, f0, gain_db, q, self.sr)
        return (b0, b1, b2, 1.0, a1, a2)

    def reset(self) -> None:
        self._zi.fill(0.0)

    def gain_db(self, band: str) -> float:
        return self._gains_db[band]

    def set_band_gain(self, band: str, gain_db: float) -> None:
        lo, hi = PARAM_RANGES["eq"][band]
        gain_db = clamp(float(gain_db), lo, hi)
        with self._lock:
            if gain_db == self._gains_db[band]:
                return
            sos = self._sos.copy()
            sos[EQ_BAND_NAMES.index(band)] = self._band_row(band, gain_db)
            self._gains_db[band] = gain_db
            # Coefficients are swapped as a whole; filter state carries over.
            self._sos = sos
            was_active = self._active
            self._active = any(abs(g) > 1e-3 for g in self._gains_db.values())
            if self._active and not was_active:
                # state froze while the EQ was skipped; start clean
                self._zi.fill(0.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        if not self._active:
            return x
        sos = self._sos
        zi = self._zi
        y = np.empty_like(x, dtype=np.float32)
        for ch in range(x.shape[1]):
            out, zf = sosfilt(sos, x[:, ch].astype(np.float64), zi=zi[:, ch, :])
            zi[:, ch, :] = zf
            y[:, ch] = out
        return y


# -----------------------------
# Modular DSP effects chain
# -----------------------------

class EffectProcessor:
    name = "Effect"

    def __init__(self, enabled: bool = True):
        self.enabled = bool(enabled)

    def reset(self) -> None:
        return None

    def process(self, x: np.ndarray) -> np.ndarray:
        return x


@njit(cache=True, nogil=True)
def _compressor_gain_db(
    peaks: np.ndarray,
    env: float,
    threshold_db: float,
    ratio: float,
    knee_db: float,
    attack_coeff: float,
    release_coeff: float,
) -> tuple[np.ndarray, float]:
    """Static-curve gain (<= 0 dB) per sample from a linked peak follower."""
    n = peaks.shape[0]
    gain_db = np.empty(n, dtype=np.float64)
    slope = 1.0 / ratio - 1.0
    half_knee = 0.5 * knee_db
    for i in range(n):
        level = peaks[i]
        coeff = attack_coeff if level > env else release_coeff
        env = coeff * env + (1.0 - coeff) * level
        over = 20.0 * math.log10(max(env, 1e-8)) - threshold_db
        if over <= -half_knee:
            gain_db[i] = 0.0
        elif over < half_knee:
            # quadratic blend across the knee, centred on the threshold
            d = over + half_knee
            gain_db[i] = slope * d * d / (2.0 * knee_db)
        else:
            gain_db[i] = slope * over
    return gain_db, env


@njit(cache=True, nogil=True)
def _limiter_process(
    x: np.ndarray,
    env: float,
    sample_rate: float,
    threshold_db: np.ndarray,
    ceiling_db: np.ndarray,
    release_ms: np.ndarray,
    soft_clip: np.ndarray,
    bypass: np.ndarray,
) -> tuple[np.ndarray, float]:
    n_frames, n_channels = x.shape
    out = np.empty_like(x)
    for i in range(n_frames):
        if bypass[i] > 0.5:
            env = 1.0
            for ch in range(n_channels):
                out[i, ch] = x[i, ch]
            continue
        threshold = 10.0 ** (threshold_db[i] / 20.0)
        ceiling = 10.0 ** (ceiling_db[i] / 20.0)
        peak = 0.0
        for ch in range(n_channels):
            level = abs(x[i, ch])
            if level > peak:
                peak = level
        target = 1.0
        if peak > threshold and peak > 0.0:
            target = threshold / peak
        if target < env:
            env = target
        else:
            release_coeff = math.exp(-1.0 / (sample_rate * (release_ms[i] / 1000.0)))
            env = env + (target - env) * (1.0 - release_coeff)
        soft = soft_clip[i] > 0.5
        c = ceiling if ceiling > 1e-4 else 1e-4
        for ch in range(n_channels):
            value = x[i, ch] * env
            if value > ceiling:
                value = ceiling
            elif value < -ceiling:
                value = -ceiling
            if soft:
                value = math.tanh(value / c) * c
            out[i, ch] = value
    return out, env


def _time_coeff(sample_rate: int, seconds: float) -> float:
    return math.exp(-1.0 / (sample_rate * seconds))


class CompressorEffect(EffectProcessor):
    """
    Feed-forward compressor: the loudest channel drives one envelope, the
    static curve reduces everything above threshold by ``1 - 1/ratio`` with
    a soft knee of ``knee_db`` centred on the threshold, and makeup gain is
    added afterwards.
    """
    name = "Compressor"

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        threshold_db: float = -18.0,
        ratio: float = 2.0,
        attack_sec: float = 0.01,
        release_sec: float = 0.25,
        makeup_db: float = 0.0,
        knee_db: float = COMPRESSOR_KNEE_DB,
        enabled: bool = True,
    ):
        super().__init__(enabled=enabled)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.knee_db = max(0.0, float(knee_db))
        self._env = 0.0
        self._reduction_db = 0.0
        self.set_parameters(threshold_db, ratio, attack_sec, release_sec, makeup_db)

    def reset(self) -> None:
        self._env = 0.0
        self._reduction_db = 0.0

    def set_parameters(
        self,
        threshold_db: float,
        ratio: float,
        attack_sec: float,
        release_sec: float,
        makeup_db: float,
    ) -> None:
        ranges = PARAM_RANGES["compressor"]
        self.threshold_db = clamp(float(threshold_db), *ranges["threshold"])
        self.ratio = clamp(float(ratio), *ranges["ratio"])
        self.makeup_db = clamp(float(makeup_db), *ranges["makeup"])
        self._attack = _time_coeff(self.sample_rate, clamp(float(attack_sec), *ranges["attack"]))
        self._release = _time_coeff(self.sample_rate, clamp(float(release_sec), *ranges["release"]))

    def gain_reduction_db(self) -> float:
        return self._reduction_db

    def process(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled or x.size == 0:
            return x
        if self.ratio <= 1.0 and self.makeup_db == 0.0:
            return x

        peaks = np.max(np.abs(x), axis=1).astype(np.float64)
        gain_db, self._env = _compressor_gain_db(
            peaks, self._env, self.threshold_db, self.ratio, self.knee_db, self._attack, self._release
        )
        self._reduction_db = max(0.0, -float(gain_db[-1]))
        gain = np.power(10.0, (gain_db + self.makeup_db) / 20.0)
        return (x * gain[:, None]).astype(np.float32, copy=False)


class LimiterEffect(EffectProcessor):
    """
    Brickwall peak limiter: instant attack, exponential release, hard ceiling
    and optional tanh soft clip. Bypass passes audio through untouched.
    """
    name = "Limiter"

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        threshold_db: float = -6.0,
        ceiling_db: float = -0.3,
        release_ms: float = 120.0,
        soft_clip: bool = True,
        bypass: bool = False,
        enabled: bool = True,
    ):
        super().__init__(enabled=enabled)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        ranges = PARAM_RANGES["limiter"]
        self.threshold = AudioParam("threshold", threshold_db, *ranges["threshold"])
        self.ceiling = AudioParam("ceiling", ceiling_db, *ranges["ceiling"])
        self.release = AudioParam("release", release_ms, *ranges["release"])
        self.soft_clip = AudioParam("softClip", 1.0 if soft_clip else 0.0, 0.0, 1.0)
        self.bypass = AudioParam("bypass", 1.0 if bypass else 0.0, 0.0, 1.0)
        self._env = 1.0

    def reset(self) -> None:
        self._env = 1.0

    def set_parameters(
        self,
        threshold_db: float,
        ceiling_db: float,
        release_ms: float,
        soft_clip: bool,
        bypass: bool,
    ) -> None:
        self.threshold.set_value(threshold_db)
        self.ceiling.set_value(ceiling_db)
        self.release.set_value(release_ms)
        self.soft_clip.set_value(1.0 if soft_clip else 0.0)
        self.bypass.set_value(1.0 if bypass else 0.0)

    def gain_reduction_db(self) -> float:
        return -gain_to_db(self._env)

    def process(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled or x.size == 0:
            return x
        if x.dtype != np.float32:
            x = x.astype(np.float32, copy=False)
        x = sanitize_samples(x)
        n = x.shape[0]

        out, env = _limiter_process(
            x,
            self._env,
            float(self.sample_rate),
            self.threshold.block(n),
            self.ceiling.block(n),
            self.release.block(n),
            self.soft_clip.block(n),
            self.bypass.block(n),
        )

        self._env = env
        return out


class SaturationEffect(EffectProcessor):
    name = "Saturation"

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        drive: float = 0.2,
        mix: float = 0.4,
        enabled: bool = True,
    ):
        super().__init__(enabled=enabled)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self._drive = clamp(float(drive), 0.0, 1.0)
        self._mix = clamp(float(mix), 0.0, 1.0)

    def set_parameters(self, drive: float, mix: float) -> None:
        self._drive = clamp(float(drive), 0.0, 1.0)
        self._mix = clamp(float(mix), 0.0, 1.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled or x.size == 0:
            return x
        mix = self._mix
        if mix <= 0.0:
            return x
        if x.dtype != np.float32:
            x = x.astype(np.float32, copy=False)
        k = 1.0 + self._drive * 20.0
        # The shaping curve is defined on [-1, 1]; input beyond it sits on the end points.
        wet = np.tanh(k * np.clip(x, -1.0, 1.0))
        y = (1.0 - mix) * x + mix * wet
        return y.astype(np.float32, copy=False)


class StereoWidthEffect(EffectProcessor):
    """Cross-channel gain blend: L' = aL + bR, R' = aR + bL with a=(1+w)/2, b=(1-w)/2."""
    name = "Stereo Width"

    def __init__(self, width: float = 1.0, enabled: bool = True):
        super().__init__(enabled=enabled)
        self._width = clamp(float(width), 0.0, 2.0)

    def set_width(self, width: float) -> None:
        self._width = clamp(float(width), 0.0, 2.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled or x.size == 0:
            return x
        if x.shape[1] != 2:
            return x

        width = self._width
        if abs(width - 1.0) < 1e-6:
            return x

        a = (1.0 + width) / 2.0
        b = (1.0 - width) / 2.0
        y = np.empty_like(x, dtype=np.float32)
        y[:, 0] = a * x[:, 0] + b * x[:, 1]
        y[:, 1] = a * x[:, 1] + b * x[:, 0]
        return y


class StereoPannerEffect(EffectProcessor):
    """Equal-power stereo panner with the stereo-input law of Web Audio panners."""
    name = "Stereo Panner"

    def __init__(self, pan: float = 0.0, enabled: bool = True):
        super().__init__(enabled=enabled)
        self._pan = clamp(float(pan), -1.0, 1.0)

    def set_pan(self, pan: float) -> None:
        self._pan = clamp(float(pan), -1.0, 1.0)

    def process(self, x: np.ndarray) -> np.ndarray:
        if not self.enabled or x.size == 0:
            return x
        if x.shape[1] != 2:
            return x

        pan = self._pan
        if abs(pan) < 1e-6:
            return x

        left = x[:, 0]
        right = x[:, 1]
        y = np.empty_like(x, dtype=np.float32)
        if pan <= 0.0:
            angle = (pan + 1.0) * (math.pi / 2.0)
            gain_l = math.cos(angle)
            gain_r = math.sin(angle)
            y[:, 0] = left + right * gain_l
            y[:, 1] = right * gain_r
        else:
            angle = pan * (math.pi / 2.0)
            gain_l = math.cos(angle)
            gain_r = math.sin(angle)
            y[:, 0] = left * gain_l
            y[:, 1] = right + left * gain_r
        return y


class OutputGainEffect(EffectProcessor):
    """
    Output gain with a one-pole ramp toward its target (time constant
    OUTPUT_SMOOTHING_SEC), so volume, mute and trim changes never step.
    """
    name = "Output"

    def __init__(self, sample_rate: int, gain: float = 1.0, time_constant: float = OUTPUT_SMOOTHING_SEC):
        super().__init__(enabled=True)
        self.sample_rate = int(sample_rate)
        self._target = max(0.0, float(gain))
        self._current = self._target
        self._coeff = math.exp(-1.0 / (self.sample_rate * max(1e-4, float(time_constant))))

    @property
    def target(self) -> float:
        return self._target

    @property
    def current(self) -> float:
        return self._current

    def set_target(self, gain: float) -> None:
        gain = float(gain)
        if math.isfinite(gain):
            self._target = max(0.0, gain)

    def snap(self) -> None:
        self._current = self._target

    def reset(self) -> None:
        self.snap()

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        target = self._target
        current = self._current
        if abs(target - current) < 1e-6:
            self._current = target
            if target == 1.0:
                return x
            return (x * target).astype(np.float32, copy=False)
        n = x.shape[0]
        decay = self._coeff ** np.arange(1, n + 1, dtype=np.float64)
        gains = target + (current - target) * decay
        self._current = float(gains[-1])
        return (x * gains[:, None]).astype(np.float32, copy=False)


# -----------------------------
# Meter unit
# -----------------------------

class _RollingWindow:
    """Fixed-length ring of per-frame mean squares with an incrementally kept sum."""

    def __init__(self, length: int):
        self.length = max(1, int(length))
        self._buffer = np.zeros(self.length, dtype=np.float64)
        self._index = 0
        self._sum = 0.0

    def clear(self) -> None:
        self._buffer.fill(0.0)
        self._index = 0
        self._sum = 0.0

    def push(self, values: np.ndarray) -> None:
        n = values.shape[0]
        if n == 0:
            return
        if n >= self.length:
            self._buffer[:] = values[-self.length:]
            self._index = 0
            self._sum = float(self._buffer.sum())
            return
        end = self._index + n
        if end <= self.length:
            leaving = self._buffer[self._index:end]
            self._sum += float(values.sum()) - float(leaving.sum())
            self._buffer[self._index:end] = values
        else:
            first = self.length - self._index
            self._sum += float(values.sum())
            self._sum -= float(self._buffer[self._index:].sum()) + float(self._buffer[:end - self.length].sum())
            self._buffer[self._index:] = values[:first]
            self._buffer[:end - self.length] = values[first:]
        self._index = end % self.length
        if self._index == 0:
            # resync once per lap so rounding never accumulates
            self._sum = float(self._buffer.sum())

    def mean(self) -> float:
        return max(0.0, self._sum) / self.length


class MeterUnit(EffectProcessor):
    """
    Pass-through loudness/peak/correlation meter.

    Loudness uses ``-0.691 + 10*log10(mean square)`` over 400 ms and 3 s
    windows and over everything processed since construction (or
    ``reset_integrated``); there is no K-weighting and no gating.
    A MeterSnapshot is published for every METER_REPORT_SEC of processed audio.
    """
    name = "Meter"

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        listener: Optional[Callable[[MeterSnapshot], None]] = None,
    ):
        super().__init__(enabled=True)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.listener = listener
        self._momentary = _RollingWindow(math.floor(self.sample_rate * METER_MOMENTARY_SEC))
        self._short = _RollingWindow(math.floor(self.sample_rate * METER_SHORT_SEC))
        self._report_frames = max(1, int(math.ceil(self.sample_rate * METER_REPORT_SEC)))
        self._integrated_sum = 0.0
        self._integrated_count = 0
        self.reset()

    def reset(self) -> None:
        """Clear the rolling windows and report accumulators.

        Integrated loudness keeps accumulating across resets; only
        ``reset_integrated`` starts it over.
        """
        self._momentary.clear()
        self._short.clear()
        self._reset_report()
        self._snapshot = MeterSnapshot(lufs_integrated=self.integrated_loudness())

    def reset_integrated(self) -> None:
        self._integrated_sum = 0.0
        self._integrated_count = 0
        self._snapshot = replace(self._snapshot, lufs_integrated=LUFS_FLOOR)

    def carry_integrated(self, other: "MeterUnit") -> None:
        """Continue ``other``'s integrated sum (used when the graph is rebuilt)."""
        self._integrated_sum = other._integrated_sum
        self._integrated_count = other._integrated_count
        self._snapshot = replace(self._snapshot, lufs_integrated=self.integrated_loudness())

    def integrated_loudness(self) -> float:
        if not self._integrated_count:
            return LUFS_FLOOR
        return lufs_from_mean_square(self._integrated_sum / self._integrated_count)

    def _reset_report(self) -> None:
        self._pending_frames = 0
        self._peak = 0.0
        self._sum_squares = 0.0
        self._sum_lr = 0.0
        self._sum_ll = 0.0
        self._sum_rr = 0.0

    def snapshot(self) -> MeterSnapshot:
        return self._snapshot

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        data = np.asarray(x, dtype=np.float64)
        n = data.shape[0]
        start = 0
        while start < n:
            take = min(n - start, self._report_frames - self._pending_frames)
            self._accumulate(data[start:start + take])
            start += take
            if self._pending_frames >= self._report_frames:
                self._publish()
        return x

    def _accumulate(self, block: np.ndarray) -> None:
        frame_ms = np.mean(block * block, axis=1)
        self._momentary.push(frame_ms)
        self._short.push(frame_ms)
        block_sum = float(frame_ms.sum())
        self._integrated_sum += block_sum
        self._integrated_count += block.shape[0]
        self._sum_squares += block_sum
        self._pending_frames += block.shape[0]
        peak = float(np.max(np.abs(block)))
        if peak > self._peak:
            self._peak = peak
        if block.shape[1] > 1:
            left = block[:, 0]
            right = block[:, 1]
            self._sum_lr += float(np.dot(left, right))
            self._sum_ll += float(np.dot(left, left))
            self._sum_rr += float(np.dot(right, right))

    def _publish(self) -> None:
        correlation = 0.0
        if self._sum_ll > 0.0 and self._sum_rr > 0.0:
            correlation = clamp(self._sum_lr / math.sqrt(self._sum_ll * self._sum_rr), -1.0, 1.0)
        snapshot = MeterSnapshot(
            peak=self._peak,
            rms=math.sqrt(self._sum_squares / self._pending_frames) if self._pending_frames else 0.0,
            lufs_momentary=lufs_from_mean_square(self._momentary.mean()),
            lufs_short=lufs_from_mean_square(self._short.mean()),
            lufs_integrated=self.integrated_loudness(),
            correlation=correlation,
        )
        self._snapshot = snapshot
        self._reset_report()
        listener = self.listener
        if listener is None:
            return
        try:
            listener(snapshot)
        except Exception:
            logger.exception("Meter listener failed")


class EffectsChain:
    """Runs the enabled stages in order on (n, channels) float32 blocks."""

    def __init__(self, sample_rate: int, channels: int, effects: Optional[list[EffectProcessor]] = None):
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.effects: list[EffectProcessor] = list(effects or [])

    def reset(self) -> None:
        for effect in self.effects:
            effect.reset()

    def _checked(self, x: np.ndarray, stage: str) -> np.ndarray:
        if x.ndim != 2 or x.shape[1] != self.channels:
            raise ValueError(f"{stage}: expected (n,{self.channels}) block, got {x.shape}")
        return x.astype(np.float32, copy=False)

    def process(self, x: np.ndarray) -> np.ndarray:
        if x.size == 0:
            return x
        x = self._checked(x, "input")
        for effect in (e for e in self.effects if e.enabled):
            x = self._checked(effect.process(x), effect.name)
        return x
