from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from ..config import DEFAULT_TARGET_LUFS, DISABLE_OFFLINE_ENV, LUFS_FLOOR, RENDER_BLOCK_FRAMES
from ..dsp import integrated_lufs
from ..errors import RenderCancelled, RenderError
from ..graph import SignalGraph, output_gain_for
from ..models import ChainState, TrackBuffer
from ..utils import db_to_gain, env_flag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderResult:
    samples: np.ndarray
    sample_rate: int
    lufs: float
    normalize_gain_db: float = 0.0

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])


def normalize_loudness(samples: np.ndarray, target_lufs: float) -> tuple[np.ndarray, float]:
    """Scale a whole buffer so its integrated loudness meets ``target_lufs``, then clamp to [-1, 1]."""
    measured = integrated_lufs(samples)
    if measured <= LUFS_FLOOR:
        return samples, 0.0
    delta_db = float(target_lufs) - measured
    out = np.clip(samples * np.float32(db_to_gain(delta_db)), -1.0, 1.0)
    return out.astype(np.float32, copy=False), delta_db


def render_offline(
    track: TrackBuffer,
    state: ChainState,
    *,
    volume: float = 1.0,
    normalize: bool = False,
    target_lufs: float = DEFAULT_TARGET_LUFS,
    cancel_event: Optional[threading.Event] = None,
    progress_cb: Optional[Callable[[float], None]] = None,
    block_frames: int = RENDER_BLOCK_FRAMES,
) -> RenderResult:
    """
    Render ``track`` through a fresh SignalGraph configured from ``state``.

    The output gain is constant (volume and trim, no gain-match offset).
    Identical inputs give bit-identical output. Raises RenderCancelled when
    ``cancel_event`` is set between blocks, RenderError for any other failure.
    """
    if env_flag(DISABLE_OFFLINE_ENV):
        raise RenderError("Offline rendering is disabled in this environment")

    started = time.perf_counter()
    total = track.frames
    try:
        graph = SignalGraph(track.sample_rate, track.channels)
        graph.apply_state(state)
        gain = np.float32(output_gain_for(state, volume))
        out = np.empty((total, track.channels), dtype=np.float32)
        block_frames = max(1, int(block_frames))

        for start in range(0, total, block_frames):
            if cancel_event is not None and cancel_event.is_set():
                raise RenderCancelled("Render cancelled")
            end = min(total, start + block_frames)
            # np.array copies, so the source buffer is never written.
            block = np.array(track.data[start:end], dtype=np.float32)
            y = graph.process(block)
            out[start:end] = y * gain
            if progress_cb is not None:
                progress_cb(end / float(total))
        graph.release()
    except RenderError:
        raise
    except Exception as e:
        raise RenderError(f"Offline render failed: {e}") from e

    delta_db = 0.0
    if normalize:
        out, delta_db = normalize_loudness(out, target_lufs)

    lufs = integrated_lufs(out)
    logger.info(
        "Rendered %d frames in %.2fs (lufs=%.2f, normalize_gain=%.2f dB)",
        total,
        time.perf_counter() - started,
        lufs,
        delta_db,
    )
    return RenderResult(samples=out, sample_rate=track.sample_rate, lufs=lufs, normalize_gain_db=delta_db)
