from __future__ import annotations

import logging
import math
from typing import Callable, Optional

import numpy as np
from PySide6 import QtCore, QtGui

from ..config import (
    VIZ_FFT_SIZE,
    VIZ_LOW_FPS_THRESHOLD,
    VIZ_LOW_FPS_WINDOW_MS,
    VIZ_MAX_DB,
    VIZ_MIN_DB,
    VIZ_SCOPE_SIZE,
    VIZ_SMOOTHING,
    VIZ_TARGET_FPS,
    VIZ_TIMER_INTERVAL_MS,
)
from ..models import VizMode

logger = logging.getLogger(__name__)

# source(frames, mono) -> most recent output-tap frames, (n, ch) float32
FrameSource = Callable[..., np.ndarray]

SPECTRUM_MIN_FREQ = 20.0
SPECTRUM_MAX_FREQ = 20000.0


def spectrum_bar_count(width: int, render_every: int, device_pixel_ratio: float = 1.0) -> int:
    perf = 0.7 if render_every > 1 else 1.0
    return max(18, int(math.floor(width / (12.0 * device_pixel_ratio) * perf)))


def spectrum_bar_index(freq: float, length: int) -> int:
    return min(length - 1, int(math.floor(freq / SPECTRUM_MAX_FREQ * length)))


class SpectrumAnalyser:
    """
    FFT magnitudes in the style of a Web Audio analyser: Blackman window,
    exponential smoothing between frames, dB range mapped onto [0, 1].
    """

    def __init__(
        self,
        fft_size: int = VIZ_FFT_SIZE,
        smoothing: float = VIZ_SMOOTHING,
        min_db: float = VIZ_MIN_DB,
        max_db: float = VIZ_MAX_DB,
    ):
        self.fft_size = int(fft_size)
        self.smoothing = float(smoothing)
        self.min_db = float(min_db)
        self.max_db = float(max_db)
        self._window = np.blackman(self.fft_size)
        self._smoothed = np.zeros(self.bin_count, dtype=np.float64)

    @property
    def bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        self._smoothed.fill(0.0)

    def analyse(self, mono: np.ndarray) -> np.ndarray:
        x = np.asarray(mono, dtype=np.float64).reshape(-1)
        if x.size < self.fft_size:
            padded = np.zeros(self.fft_size, dtype=np.float64)
            if x.size:
                padded[-x.size:] = x
            x = padded
        else:
            x = x[-self.fft_size:]
        spectrum = np.fft.rfft(x * self._window)[: self.bin_count]
        magnitudes = np.abs(spectrum) / self.fft_size
        self._smoothed = self.smoothing * self._smoothed + (1.0 - self.smoothing) * magnitudes
        db = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
        return np.clip((db - self.min_db) / (self.max_db - self.min_db), 0.0, 1.0)


class VisualizerLoop(QtCore.QObject):
    """
    Frame-budgeted visualizer: at most VIZ_TARGET_FPS frames, degrades the
    background pass as the fps estimate falls and disables itself (emitting
    ``autoDisabled`` once) after VIZ_LOW_FPS_WINDOW_MS of sustained low fps.
    """
    autoDisabled = QtCore.Signal()

    def __init__(
        self,
        source: FrameSource,
        surface: Optional[QtGui.QImage] = None,
        mode: VizMode = VizMode.SPECTRUM,
        color: Optional[QtGui.QColor] = None,
        use_timer: bool = True,
        parent=None,
    ):
        super().__init__(parent)
        self._source: Optional[FrameSource] = source
        self._surface = surface
        self._mode = mode
        self._color = QtGui.QColor(color) if color is not None else QtGui.QColor(0, 229, 255)
        self._analyser: Optional[SpectrumAnalyser] = SpectrumAnalyser()
        self._frame_interval = 1000.0 / VIZ_TARGET_FPS
        self._running = False
        self._last_frame_time = 0.0
        self._frame_count = 0
        self._fps_ema = VIZ_TARGET_FPS
        self._render_every = 1
        self._low_fps_duration = 0.0
        self.critical_passes = 0
        self.background_passes = 0

        self._clock = QtCore.QElapsedTimer()
        self._clock.start()
        self._timer: Optional[QtCore.QTimer] = None
        if use_timer:
            self._timer = QtCore.QTimer(self)
            self._timer.setInterval(VIZ_TIMER_INTERVAL_MS)
            self._timer.timeout.connect(self._on_timer)

    # ---- configuration ----

    def set_surface(self, surface: Optional[QtGui.QImage]) -> None:
        self._surface = surface

    def surface(self) -> Optional[QtGui.QImage]:
        return self._surface

    def set_mode(self, mode: VizMode) -> None:
        self._mode = mode

    def mode(self) -> VizMode:
        return self._mode

    def set_color(self, color: QtGui.QColor) -> None:
        self._color = QtGui.QColor(color)

    def fps(self) -> float:
        return self._fps_ema

    @property
    def render_every(self) -> int:
        return self._render_every

    def is_running(self) -> bool:
        return self._running

    # ---- scheduling ----

    def start(self, now_ms: Optional[float] = None) -> None:
        if self._running:
            return
        self._running = True
        self._last_frame_time = float(self._clock.elapsed()) if now_ms is None else float(now_ms)
        self._low_fps_duration = 0.0
        if self._timer is not None:
            self._timer.start()

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.stop()

    def _on_timer(self) -> None:
        self.tick(float(self._clock.elapsed()))

    def tick(self, now_ms: float) -> bool:
        """Advance the loop to ``now_ms``; returns True when a frame was drawn."""
        if not self._running:
            return False

        elapsed = now_ms - self._last_frame_time
        if elapsed < self._frame_interval:
            return False

        self._last_frame_time = now_ms - (elapsed % self._frame_interval)
        self._frame_count += 1

        instant_fps = 1000.0 / elapsed if elapsed > 0 else VIZ_TARGET_FPS
        self._fps_ema = self._fps_ema * 0.9 + instant_fps * 0.1
        if self._fps_ema < VIZ_LOW_FPS_THRESHOLD:
            self._low_fps_duration += elapsed
        else:
            self._low_fps_duration = 0.0

        if self._low_fps_duration > VIZ_LOW_FPS_WINDOW_MS:
            logger.warning("Visualizer disabled: %.1f fps sustained", self._fps_ema)
            self.stop()
            self.autoDisabled.emit()
            return False

        self._render_every = 3 if self._fps_ema < 30 else 2 if self._fps_ema < 45 else 1

        self._render_critical()
        if self._frame_count % self._render_every == 0:
            self._render_background()
        return True

    # ---- drawing ----

    def _render_critical(self) -> None:
        surface = self._surface
        if surface is None or surface.isNull():
            return
        self.critical_passes += 1
        surface.fill(QtCore.Qt.GlobalColor.transparent)

    def _render_background(self) -> None:
        surface = self._surface
        if surface is None or surface.isNull() or self._source is None:
            return
        self.background_passes += 1
        painter = QtGui.QPainter(surface)
        try:
            painter.setRenderHint(QtGui.QPainter.RenderHint.Antialiasing, False)
            if self._mode == VizMode.SPECTRUM:
                self._draw_spectrum(painter, surface)
            elif self._mode == VizMode.OSCILLOSCOPE:
                self._draw_oscilloscope(painter, surface)
            elif self._mode == VizMode.VECTORSCOPE:
                self._draw_vectorscope(painter, surface)
        except Exception as e:
            logger.warning("Visualizer render error: %s", e)
        finally:
            painter.end()

    def _draw_spectrum(self, painter: QtGui.QPainter, surface: QtGui.QImage) -> None:
        if self._analyser is None:
            return
        w = surface.width()
        h = surface.height()
        levels = self._analyser.analyse(self._source(frames=VIZ_FFT_SIZE, mono=True))
        length = levels.shape[0]
        bar_count = spectrum_bar_count(w, self._render_every, surface.devicePixelRatio())
        log_min = math.log10(SPECTRUM_MIN_FREQ)
        log_max = math.log10(SPECTRUM_MAX_FREQ)
        bar_width = w / bar_count
        painter.setPen(QtCore.Qt.PenStyle.NoPen)
        for i in range(bar_count):
            t = i / (bar_count - 1)
            freq = 10.0 ** (log_min + t * (log_max - log_min))
            amp = float(levels[spectrum_bar_index(freq, length)])
            bar_height = amp * h * 0.9
            color = QtGui.QColor(self._color)
            color.setAlphaF(max(0.2, amp))
            painter.setBrush(color)
            painter.drawRect(QtCore.QRectF(i * bar_width + 1, h - bar_height, max(1.0, bar_width - 2), bar_height))

    def _stroke_pen(self, width: float) -> QtGui.QPen:
        color = QtGui.QColor(self._color)
        color.setAlphaF(0.95)
        pen = QtGui.QPen(color)
        pen.setWidthF(max(1.0, math.floor(width)))
        return pen

    def _draw_oscilloscope(self, painter: QtGui.QPainter, surface: QtGui.QImage) -> None:
        w = surface.width()
        h = surface.height()
        data = self._source(frames=VIZ_FFT_SIZE, mono=True).reshape(-1)
        if data.size < 2:
            return
        slice_width = w / data.size
        points = [
            QtCore.QPointF(i * slice_width, h / 2 + float(v) * (h * 0.35))
            for i, v in enumerate(data)
        ]
        painter.setPen(self._stroke_pen(w / 450))
        painter.drawPolyline(QtGui.QPolygonF(points))

    def _draw_vectorscope(self, painter: QtGui.QPainter, surface: QtGui.QImage) -> None:
        w = surface.width()
        h = surface.height()
        data = self._source(frames=VIZ_SCOPE_SIZE, mono=False)
        if data.shape[0] < 2:
            return
        left = data[:, 0]
        right = data[:, 1] if data.shape[1] > 1 else data[:, 0]
        points = [
            QtCore.QPointF((float(l) * 0.45 + 0.5) * w, (float(r) * 0.45 + 0.5) * h)
            for l, r in zip(left, right)
        ]
        painter.setPen(self._stroke_pen(w / 500))
        painter.drawPolyline(QtGui.QPolygonF(points))

    def destroy(self) -> None:
        self.stop()
        self._surface = None
        self._source = None
        self._analyser = None
