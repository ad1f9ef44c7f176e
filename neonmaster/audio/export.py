from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from ..config import DEFAULT_TARGET_LUFS
from ..errors import CaptureUnavailable, EngineError, RenderCancelled, RenderError
from ..models import ChainState, TrackBuffer
from ..wav import write_wav
from .render import render_offline

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')

# capture(cancel_event) -> (frames, channels) float32 recorded from the live output tap
CaptureFn = Callable[[threading.Event], np.ndarray]


def export_filename(title: Optional[str]) -> str:
    name = (title or "").strip() or "export"
    name = _UNSAFE_CHARS.sub("_", name)
    return f"Mastered_{name}.wav"


class ExportThread(threading.Thread):
    """
    Exports the mastered track to WAV off the control thread.

    Tries the deterministic offline render first; if it raises RenderError
    (other than cancellation) it records the live output instead through
    ``capture``. Results are reported through ``done_cb(path)`` or
    ``error_cb(message)``.
    """

    def __init__(
        self,
        track: TrackBuffer,
        state: ChainState,
        output_path: Path,
        *,
        volume: float = 1.0,
        normalize: bool = False,
        target_lufs: float = DEFAULT_TARGET_LUFS,
        capture: Optional[CaptureFn] = None,
        done_cb: Optional[Callable[[str], None]] = None,
        error_cb: Optional[Callable[[str], None]] = None,
        progress_cb: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(daemon=True)
        self.track = track
        self.state = state
        self.output_path = Path(output_path)
        self.volume = float(volume)
        self.normalize = bool(normalize)
        self.target_lufs = float(target_lufs)
        self._capture = capture
        self._done_cb = done_cb
        self._error_cb = error_cb
        self._progress_cb = progress_cb
        self._cancel = threading.Event()
        self.used_fallback = False
        self.error: Optional[str] = None
        self.result_path: Optional[Path] = None

    def cancel(self) -> None:
        self._cancel.set()

    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _render(self) -> np.ndarray:
        try:
            result = render_offline(
                self.track,
                self.state,
                volume=self.volume,
                normalize=self.normalize,
                target_lufs=self.target_lufs,
                cancel_event=self._cancel,
                progress_cb=self._progress_cb,
            )
            return result.samples
        except RenderCancelled:
            raise
        except RenderError as e:
            logger.warning("Offline export failed, trying live capture fallback: %s", e)

        if self._capture is None:
            raise CaptureUnavailable("Live capture is not available")
        self.used_fallback = True
        samples = self._capture(self._cancel)
        if self._cancel.is_set():
            raise RenderCancelled("Capture cancelled")
        return samples

    def run(self) -> None:
        try:
            samples = self._render()
            path = write_wav(self.output_path, samples, sample_rate=self.track.sample_rate)
        except RenderCancelled:
            logger.info("Export cancelled")
            self._report_error("Export cancelled")
            return
        except EngineError as e:
            logger.error("Export failed: %s", e)
            self._report_error(f"Export failed: {e}")
            return
        except OSError as e:
            logger.error("Export write failed: %s", e)
            self._report_error(f"Export failed: {e}")
            return

        self.result_path = path
        logger.info("Exported %s%s", path, " (live capture)" if self.used_fallback else "")
        if self._done_cb is not None:
            self._done_cb(str(path))

    def _report_error(self, message: str) -> None:
        self.error = message
        if self._error_cb is not None:
            self._error_cb(message)
