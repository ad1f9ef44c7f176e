from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np

from .config import EQ_BAND_NAMES, GRAPH_PROFILE, GRAPH_PROFILE_LOG_EVERY
from .dsp import (
    CompressorEffect,
    EffectsChain,
    EqualizerDSP,
    LimiterEffect,
    MeterUnit,
    OutputGainEffect,
    SaturationEffect,
    StereoPannerEffect,
    StereoWidthEffect,
    sanitize_samples,
)
from .models import ChainState, MeterSnapshot
from .utils import db_to_gain

logger = logging.getLogger(__name__)


def output_gain_for(state: ChainState, volume: float, offset_db: float = 0.0) -> float:
    """volume * dbToGain((bypass ? 0 : trim) + offset)."""
    trim = 0.0 if state.output.bypass else state.output.trim
    return max(0.0, float(volume)) * db_to_gain(trim + offset_db)


class SignalGraph:
    """
    Owns every stage of the mastering chain:

        EQ -> compressor (+makeup) -> saturation -> width -> pan -> limiter -> meter

    and the smoothed output gain stage that follows the meter tap. The live
    engine runs ``process`` on its chain thread and ``output_gain`` in the
    output callback; the offline renderer builds its own instance.
    """

    def __init__(
        self,
        sample_rate: int,
        channels: int,
        meter_listener: Optional[Callable[[MeterSnapshot], None]] = None,
    ):
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        self.eq = EqualizerDSP(self.sample_rate, self.channels)
        self.compressor = CompressorEffect(self.sample_rate, self.channels)
        self.saturation = SaturationEffect(self.sample_rate, self.channels)
        self.stereo_width = StereoWidthEffect()
        self.stereo_panner = StereoPannerEffect()
        self.limiter = LimiterEffect(self.sample_rate, self.channels)
        self.meter = MeterUnit(self.sample_rate, self.channels, listener=meter_listener)
        self.output_gain = OutputGainEffect(self.sample_rate)
        self.chain = EffectsChain(
            self.sample_rate,
            self.channels,
            effects=[
                self.compressor,
                self.saturation,
                self.stereo_width,
                self.stereo_panner,
                self.limiter,
                self.meter,
            ],
        )
        self._applied_version: Optional[int] = None
        self._profile_blocks = 0
        self._profile_total = 0.0
        self._profile_max = 0.0
        self.apply_state(ChainState())

    @property
    def applied_version(self) -> Optional[int]:
        return self._applied_version

    def apply_state(self, state: ChainState) -> None:
        for band, gain in zip(EQ_BAND_NAMES, state.eq.gains_db()):
            self.eq.set_band_gain(band, gain)

        comp = state.compressor
        self.compressor.enabled = not comp.bypass
        self.compressor.set_parameters(
            threshold_db=comp.threshold,
            ratio=comp.ratio,
            attack_sec=comp.attack,
            release_sec=comp.release,
            makeup_db=comp.makeup,
        )

        sat = state.saturation
        self.saturation.set_parameters(drive=sat.drive, mix=0.0 if sat.bypass else sat.mix)

        stereo = state.stereo
        if stereo.bypass:
            width = 1.0
        elif stereo.mono:
            width = 0.0
        else:
            width = stereo.width
        self.stereo_width.set_width(width)
        self.stereo_panner.set_pan(0.0 if stereo.bypass else stereo.pan)

        lim = state.limiter
        self.limiter.set_parameters(
            threshold_db=lim.threshold,
            ceiling_db=lim.ceiling,
            release_ms=lim.release,
            soft_clip=lim.soft_clip,
            bypass=lim.bypass,
        )
        self._applied_version = state.version

    def sync(self, state: ChainState) -> bool:
        """Apply ``state`` if its version differs from the one last applied."""
        if state.version == self._applied_version:
            return False
        self.apply_state(state)
        return True

    def process(self, x: np.ndarray) -> np.ndarray:
        """Run one block through EQ .. meter; output gain is applied separately."""
        if x.size == 0:
            return x
        if x.dtype != np.float32:
            x = x.astype(np.float32, copy=False)
        x = sanitize_samples(x)
        start = time.perf_counter() if GRAPH_PROFILE else 0.0
        y = self.eq.process(x)
        y = self.chain.process(y)
        if GRAPH_PROFILE:
            self._record_profile(time.perf_counter() - start, x.shape[0])
        return y

    def _record_profile(self, elapsed: float, frames: int) -> None:
        self._profile_blocks += 1
        self._profile_total += elapsed
        self._profile_max = max(self._profile_max, elapsed)
        budget = frames / float(self.sample_rate)
        if elapsed > budget:
            logger.warning("Graph block took %.2f ms for %.2f ms of audio", elapsed * 1000.0, budget * 1000.0)
        if self._profile_blocks % GRAPH_PROFILE_LOG_EVERY == 0:
            logger.info(
                "Graph profile: blocks=%d avg=%.3f ms max=%.3f ms",
                self._profile_blocks,
                self._profile_total / self._profile_blocks * 1000.0,
                self._profile_max * 1000.0,
            )

    def reset(self) -> None:
        self.eq.reset()
        self.chain.reset()
        self.output_gain.snap()

    def release(self) -> None:
        self.meter.listener = None
        self.chain.effects = []
