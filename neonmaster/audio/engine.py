from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional

import numpy as np
from PySide6 import QtCore

try:
    import sounddevice as sd
    _sounddevice_import_error = None
except Exception as e:
    sd = None
    _sounddevice_import_error = e

from ..buffers import AudioRingBuffer, CaptureBuffer, VisualizerBuffer
from ..config import (
    BUFFER_PRESETS,
    DEFAULT_BUFFER_PRESET,
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_TARGET_LUFS,
    EQ_BAND_NAMES,
    BufferPreset,
)
from ..decoder import decode_file, probe_track_info
from ..errors import CaptureUnavailable, DecodeError, InitializationError
from ..graph import SignalGraph, output_gain_for
from ..models import (
    ChainState,
    EqSettings,
    MeterSnapshot,
    PlaybackState,
    ResumeState,
    TrackBuffer,
    TrackInfo,
    track_title,
    update_section,
)
from ..utils import clamp, env_flag
from .export import ExportThread, export_filename

logger = logging.getLogger(__name__)

# -----------------------------
# Chain thread
# -----------------------------

class ChainThread(threading.Thread):
    """
    Reads blocks from the decoded track, applies ChainState changes at block
    boundaries, runs the signal graph and pushes into the ring buffer.
    """
    UNDERRUN_STEP_SEC = 0.05
    UNDERRUN_CAP_SEC = 0.3

    def __init__(self,
                 track: TrackBuffer,
                 start_frame: int,
                 graph: SignalGraph,
                 ring: AudioRingBuffer,
                 buffer_preset: BufferPreset,
                 state_provider: Callable[[], ChainState],
                 state_cb: Callable[[str, Optional[str]], None],
                 tick_cb: Optional[Callable[[], None]] = None):
        super().__init__(daemon=True)
        self.track = track
        self.start_frame = max(0, int(start_frame))
        self.graph = graph
        self.ring = ring
        self.sample_rate = track.sample_rate
        self._buffer_preset = buffer_preset
        self._block_frames = max(1, buffer_preset.blocksize_frames * 2)
        self._state_provider = state_provider
        self._state_cb = state_cb
        self._tick_cb = tick_cb
        self._stop_event = threading.Event()
        self._position = self.start_frame
        self._underrun_pad_sec = 0.0
        self._underrun_lock = threading.Lock()
        self._underruns_seen = 0

    def stop(self):
        self._stop_event.set()

    def consume_ring_underruns(self) -> int:
        with self._underrun_lock:
            count, self._underruns_seen = self._underruns_seen, 0
        return count

    def _note_underruns(self) -> None:
        count = self.ring.consume_underruns()
        if count <= 0:
            return
        with self._underrun_lock:
            self._underruns_seen += count
        # each underrun widens the fill window a little
        self._underrun_pad_sec = min(
            self._underrun_pad_sec + self.UNDERRUN_STEP_SEC * count, self.UNDERRUN_CAP_SEC
        )

    def _render_next(self) -> bool:
        """Run one block through the graph into the ring; False at end of track."""
        self.graph.sync(self._state_provider())
        if self._stop_event.is_set() or self._position >= self.track.frames:
            return False
        end = min(self.track.frames, self._position + self._block_frames)
        block = np.array(self.track.data[self._position:end], dtype=np.float32)
        self._position = end
        self.ring.push_blocking(self.graph.process(block), stop_event=self._stop_event)
        return True

    def _fill_window(self) -> tuple[int, int]:
        """Frames to drain down to, and the level that triggers draining."""
        preset = self._buffer_preset

        def frames(sec: float) -> int:
            return int((sec + self._underrun_pad_sec) * self.sample_rate)

        capacity = self.ring.max_frames
        resume_at = min(max(frames(preset.target_sec), frames(preset.low_sec)), int(capacity * 0.95))
        return resume_at, min(frames(preset.high_sec), capacity)

    def _throttle(self) -> None:
        resume_at, pause_at = self._fill_window()
        if self.ring.frames_available() <= pause_at:
            return
        while not self._stop_event.is_set() and self.ring.frames_available() > resume_at:
            time.sleep(0.01)

    def run(self):
        self._state_cb("loading", None)
        prebuffer = int(min(0.6, self._buffer_preset.target_sec) * self.sample_rate)
        try:
            while not self._stop_event.is_set() and self.ring.frames_available() < prebuffer:
                if not self._render_next():
                    break
            if not self._stop_event.is_set():
                self._state_cb("ready", None)

            while not self._stop_event.is_set():
                self._note_underruns()
                if not self._render_next():
                    break
                if self._tick_cb is not None:
                    self._tick_cb()
                self._throttle()
        except Exception as e:
            logger.exception("Chain thread failed")
            self._state_cb("error", f"Signal graph error: {e}")
        finally:
            self._state_cb("eof", None)


class _CallbackStats:
    """Output-callback counters, drained once per metrics interval."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reset()

    def _reset(self) -> None:
        self.calls = 0
        self.underflows = 0
        self.busy = 0.0
        self.worst = 0.0

    def record(self, elapsed: float, underflow: bool) -> None:
        with self._lock:
            self.calls += 1
            self.underflows += int(underflow)
            self.busy += elapsed
            self.worst = max(self.worst, elapsed)

    def drain(self) -> tuple[int, int, float, float]:
        with self._lock:
            snapshot = (self.calls, self.underflows, self.busy, self.worst)
            self._reset()
        return snapshot


# -----------------------------
# Engine
# -----------------------------

class MasteringEngine(QtCore.QObject):
    """
    Real-time mastering engine: owns the signal graph, the chain thread and
    the output stream, and exposes the parameter-update API.

    Parameter setters never touch stages; they publish a new ChainState which
    the chain thread picks up at its next block boundary.
    """
    stateChanged = QtCore.Signal(object)        # PlaybackState
    errorOccurred = QtCore.Signal(str)
    chainStateChanged = QtCore.Signal(object)   # ChainState
    meterUpdated = QtCore.Signal(object)        # MeterSnapshot
    trackChanged = QtCore.Signal(object)        # TrackInfo
    durationChanged = QtCore.Signal(float)
    trackFinished = QtCore.Signal()
    exportFinished = QtCore.Signal(str)
    exportFailed = QtCore.Signal(str)
    _drained = QtCore.Signal()

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = DEFAULT_CHANNELS,
        metrics_enabled: bool = False,
        parent=None,
    ):
        super().__init__(parent)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)

        self._buffer_preset_name = DEFAULT_BUFFER_PRESET
        self._buffer_preset = BUFFER_PRESETS[self._buffer_preset_name]
        self._blocksize_frames = self._buffer_preset.blocksize_frames
        self._latency = self._buffer_preset.latency

        self.state = PlaybackState.STOPPED
        self.last_error: Optional[str] = None
        self._track: Optional[TrackBuffer] = None
        self._track_info: Optional[TrackInfo] = None

        self._chain_state = ChainState()
        self._volume = 1.0
        self._muted = False
        self._gain_match_offset = 0.0
        self._meter_snapshot = MeterSnapshot()

        self._graph = self._make_graph()
        self._ring: Optional[AudioRingBuffer] = None
        self._viz_buffer: Optional[VisualizerBuffer] = None
        self._ensure_audio_buffers()
        self._chain_thread: Optional[ChainThread] = None
        self._stream = None
        self._session = 0
        self._visualizer = None
        self._export_thread: Optional[ExportThread] = None
        self._capture: Optional[CaptureBuffer] = None

        self._start_frame = 0
        self._frames_played = 0
        self._source_done = False
        self._finished_event = threading.Event()
        self._resume_paused = False

        self._playing = False
        self._paused = False
        self._cb_stats = _CallbackStats()
        self._metrics_force_enabled = env_flag("NEONMASTER_DEBUG_METRICS")
        self._metrics_enabled = bool(metrics_enabled) or self._metrics_force_enabled
        self._metrics_last_log = time.monotonic()
        self._fade_out_ramp = np.linspace(1.0, 0.0, 32, dtype=np.float32)

        self._drained.connect(self._on_drained)

    def _make_graph(self) -> SignalGraph:
        graph = SignalGraph(self.sample_rate, self.channels, meter_listener=self._on_meter)
        graph.output_gain.set_target(self._output_gain_target())
        graph.output_gain.snap()
        return graph

    # ---- parameter API ----

    def chain_state(self) -> ChainState:
        return self._chain_state

    def get(self, section: str, name: str) -> Any:
        try:
            return self._chain_state.get(section, name)
        except AttributeError:
            logger.warning("Unknown parameter %s.%s", section, name)
            return None

    def _publish(self, state: ChainState) -> None:
        self._chain_state = state
        self._refresh_output_gain()
        self.chainStateChanged.emit(state)

    def _update_section(self, section: str, **changes) -> None:
        current = self._chain_state
        updated, ignored = update_section(section, getattr(current, section), changes)
        for key in ignored:
            logger.warning("Ignoring %s parameter %r=%r", section, key, changes.get(key))
        if updated is getattr(current, section):
            return
        self._publish(replace(current, **{section: updated}, version=current.version + 1))

    def set_band_gain(self, band: str, gain_db: float) -> None:
        if band not in EQ_BAND_NAMES:
            logger.warning("Ignoring unknown EQ band %r", band)
            return
        self._update_section("eq", **{band: gain_db})

    def reset_eq(self) -> None:
        current = self._chain_state
        self._publish(replace(current, eq=EqSettings(), version=current.version + 1))

    def set_compressor(self, **changes) -> None:
        self._update_section("compressor", **changes)

    def set_limiter(self, **changes) -> None:
        self._update_section("limiter", **changes)

    def set_saturation(self, **changes) -> None:
        self._update_section("saturation", **changes)

    def set_stereo(self, **changes) -> None:
        self._update_section("stereo", **changes)

    def set_output(self, **changes) -> None:
        self._update_section("output", **changes)

    def apply_chain_state(self, state: ChainState) -> None:
        self._publish(replace(state.clamped(), version=self._chain_state.version + 1))

    def set_volume(self, v: float):
        try:
            v = float(v)
        except (TypeError, ValueError):
            return
        if math.isfinite(v):
            self._volume = clamp(v, 0.0, 1.0)
            self._refresh_output_gain()

    def volume(self) -> float:
        return self._volume

    def set_muted(self, muted: bool):
        self._muted = bool(muted)
        self._refresh_output_gain()

    def is_muted(self) -> bool:
        return self._muted

    def set_gain_match_offset(self, offset_db: float) -> None:
        self._gain_match_offset = float(offset_db)
        self._refresh_output_gain()

    def gain_match_offset(self) -> float:
        return self._gain_match_offset

    def _output_gain_target(self) -> float:
        volume = 0.0 if self._muted else self._volume
        return output_gain_for(self._chain_state, volume, self._gain_match_offset)

    def _refresh_output_gain(self) -> None:
        self._graph.output_gain.set_target(self._output_gain_target())

    def output_gain_target(self) -> float:
        return self._graph.output_gain.target

    # ---- metering ----

    def _on_meter(self, snapshot: MeterSnapshot) -> None:
        self._meter_snapshot = snapshot
        self.meterUpdated.emit(snapshot)

    def meter_snapshot(self) -> MeterSnapshot:
        return self._meter_snapshot

    def reset_integrated_loudness(self) -> None:
        self._graph.meter.reset_integrated()
        self._meter_snapshot = replace(self._meter_snapshot, lufs_integrated=self._graph.meter.integrated_loudness())

    def compressor_gain_reduction_db(self) -> float:
        return self._graph.compressor.gain_reduction_db()

    def limiter_gain_reduction_db(self) -> float:
        return self._graph.limiter.gain_reduction_db()

    def set_metrics_enabled(self, enabled: bool):
        self._metrics_enabled = bool(enabled) or self._metrics_force_enabled

    # ---- buffers ----

    def set_buffer_preset(self, preset_name: str) -> None:
        if preset_name not in BUFFER_PRESETS:
            logger.warning("Unknown buffer preset %r, using %s", preset_name, DEFAULT_BUFFER_PRESET)
            preset_name = DEFAULT_BUFFER_PRESET
        self._buffer_preset_name = preset_name
        self._buffer_preset = BUFFER_PRESETS[preset_name]
        self._blocksize_frames = self._buffer_preset.blocksize_frames
        self._latency = self._buffer_preset.latency
        if self.state == PlaybackState.STOPPED:
            self._ensure_audio_buffers()

    def buffer_preset_name(self) -> str:
        return self._buffer_preset_name

    def _ensure_audio_buffers(self) -> None:
        """(Re)build the ring and visualizer tap when preset or format changed."""
        seconds = self._buffer_preset.ring_max_seconds
        shape = (max(1, int(seconds * self.sample_rate)), self.channels)
        ring = self._ring
        if ring is None or (ring.max_frames, ring.channels) != shape:
            self._ring = AudioRingBuffer(self.channels, seconds, self.sample_rate)
        viz = self._viz_buffer
        if viz is None or (viz.max_frames, viz.channels) != shape:
            self._viz_buffer = VisualizerBuffer(self.channels, seconds, self.sample_rate)

    def get_visualizer_frames(self, frames: Optional[int] = None, mono: bool = False) -> np.ndarray:
        return self._viz_buffer.get_recent(frames=frames, mono=mono)

    def attach_visualizer(self, visualizer) -> None:
        self._visualizer = visualizer

    # ---- track ----

    def track(self) -> Optional[TrackBuffer]:
        return self._track

    def track_info(self) -> Optional[TrackInfo]:
        return self._track_info

    def load_track(self, track: TrackBuffer, info: Optional[TrackInfo] = None) -> None:
        self.stop()
        if track.sample_rate != self.sample_rate or track.channels != self.channels:
            self.sample_rate = track.sample_rate
            self.channels = track.channels
            old_graph = self._graph
            old_graph.release()
            self._graph = self._make_graph()
            self._graph.meter.carry_integrated(old_graph.meter)
            self._ensure_audio_buffers()
        self._track = track
        self._track_info = info or TrackInfo(path="", duration_sec=track.duration_sec)
        self._start_frame = 0
        self._frames_played = 0
        self._meter_snapshot = MeterSnapshot(lufs_integrated=self._graph.meter.integrated_loudness())
        self.trackChanged.emit(self._track_info)
        self.durationChanged.emit(track.duration_sec)

    def load_file(self, path: str) -> bool:
        try:
            track = decode_file(path, sample_rate=self.sample_rate, channels=self.channels)
        except DecodeError as e:
            logger.error("Decode failed: %s", e)
            self._set_error(str(e))
            return False
        self.load_track(track, probe_track_info(path))
        return True

    # ---- transport ----

    def play(self):
        if self._track is None:
            return
        if sd is None:
            self._set_error(str(InitializationError(f"sounddevice not available: {_sounddevice_import_error}")))
            return

        if self.state == PlaybackState.PAUSED:
            self._paused = False
            self._set_state(PlaybackState.PLAYING)
            return
        if self.state == PlaybackState.SUSPENDED:
            self.resume()
            return

        start_frame = self._position_frames()
        if start_frame >= self._track.frames:
            start_frame = 0
        self._stop_chain()
        self._close_stream()

        self._ensure_audio_buffers()
        self._ring.clear()
        self._viz_buffer.clear()
        self._graph.reset()
        self._start_frame = start_frame
        self._frames_played = 0
        self._source_done = False
        self._finished_event.clear()
        self._playing = True
        self._paused = False
        self._session += 1
        session = self._session

        def state_cb(kind, msg):
            if session != self._session:
                return
            if kind == "error":
                self._set_error(msg or "Unknown error")
            elif kind == "loading":
                self._set_state(PlaybackState.LOADING)
            elif kind == "ready":
                if self._ensure_stream():
                    self._set_state(PlaybackState.PAUSED if self._paused else PlaybackState.PLAYING)
            elif kind == "eof":
                self._source_done = True
                if self._stream is None and self.state != PlaybackState.SUSPENDED:
                    self._finished_event.set()

        self._chain_thread = ChainThread(
            track=self._track,
            start_frame=start_frame,
            graph=self._graph,
            ring=self._ring,
            buffer_preset=self._buffer_preset,
            state_provider=lambda: self._chain_state,
            state_cb=state_cb,
            tick_cb=self.log_metrics_if_needed,
        )
        self._chain_thread.start()

    def pause(self):
        if self.state == PlaybackState.PLAYING:
            self._paused = True
            self._set_state(PlaybackState.PAUSED)

    def stop(self):
        position = self._position_frames()
        self._playing = False
        self._paused = False
        self._session += 1
        self._stop_chain()
        self._close_stream()
        self._ring.clear()
        self._viz_buffer.clear()
        self._start_frame = 0 if self._track is None else min(position, self._track.frames)
        self._frames_played = 0
        self._set_state(PlaybackState.STOPPED)

    def seek(self, target_sec: float):
        if self._track is None:
            return
        target = int(clamp(float(target_sec), 0.0, self._track.duration_sec) * self.sample_rate)
        active = self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED, PlaybackState.LOADING)
        was_paused = self.state == PlaybackState.PAUSED
        if active:
            self.stop()
        self._start_frame = target
        self._frames_played = 0
        if active:
            self.play()
            if was_paused:
                self._paused = True

    def suspend(self) -> None:
        """Stop the output stream only; the chain thread and position are kept."""
        if self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return
        self._resume_paused = self.state == PlaybackState.PAUSED
        self._close_stream()
        self._set_state(PlaybackState.SUSPENDED)

    def resume(self) -> None:
        if self.state != PlaybackState.SUSPENDED:
            return
        if not self._ensure_stream():
            return
        self._paused = self._resume_paused
        self._set_state(PlaybackState.PAUSED if self._resume_paused else PlaybackState.PLAYING)

    def shutdown(self) -> None:
        self.cancel_export()
        self.stop()
        if self._visualizer is not None:
            self._visualizer.destroy()
            self._visualizer = None
        self._graph.release()
        self._capture = None
        self._track = None
        logger.info("Engine shut down")

    def _stop_chain(self) -> None:
        if self._chain_thread is not None:
            self._chain_thread.stop()
            self._ring.clear()
            self._chain_thread.join(timeout=1.0)
            self._chain_thread = None

    def _close_stream(self):
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.warning("Failed to close output stream: %s", e)
            self._stream = None

    def _ensure_stream(self) -> bool:
        if self._stream is not None:
            return True

        def callback(outdata, frames, time_info, status):
            start = time.perf_counter()
            underflow = bool(status) and bool(getattr(status, "output_underflow", False))
            try:
                self._fill_output(outdata, frames)
            finally:
                self._cb_stats.record(time.perf_counter() - start, underflow)

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="float32",
                blocksize=self._blocksize_frames,
                latency=self._latency,
                callback=callback,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            self._set_error(str(InitializationError(f"Audio output error: {e}")))
            return False
        return True

    def _fill_output(self, outdata: np.ndarray, frames: int) -> None:
        """Output-callback body: ring -> fade at dry-up -> output gain -> taps."""
        if not self._playing or self._paused:
            outdata.fill(0)
            return

        filled = self._ring.pop_into(outdata)
        if filled < frames:
            # ring ran dry mid-block: fade out the tail
            n = min(filled, self._fade_out_ramp.shape[0])
            if n > 1:
                outdata[filled - n:filled] *= self._fade_out_ramp[:n, None]
        gained = self._graph.output_gain.process(outdata)
        if gained is not outdata:
            outdata[:] = gained
        self._frames_played += filled
        if filled:
            played = outdata[:filled]
            self._viz_buffer.push(played)
            capture = self._capture
            if capture is not None:
                capture.push(played.copy())
        drained = filled < frames and self._source_done
        if drained and not self._finished_event.is_set():
            self._finished_event.set()
            self._drained.emit()

    @QtCore.Slot()
    def _on_drained(self) -> None:
        if not self._playing:
            return
        end = self._position_frames()
        self.stop()
        self._start_frame = end
        self.trackFinished.emit()

    # ---- position / resume state ----

    def _position_frames(self) -> int:
        return self._start_frame + self._frames_played

    def get_position(self) -> float:
        return self._position_frames() / float(self.sample_rate)

    def get_buffer_seconds(self) -> float:
        return self._ring.frames_available() / float(self.sample_rate)

    def resume_state(self) -> ResumeState:
        return ResumeState(volume=self._volume, muted=self._muted, position_sec=self.get_position())

    def restore_resume_state(self, resume: ResumeState) -> None:
        self.set_volume(resume.volume)
        self.set_muted(resume.muted)
        if self._track is not None:
            self.seek(resume.position_sec)

    # ---- export ----

    def capture_output(self, cancel_event: threading.Event, timeout_sec: Optional[float] = None) -> np.ndarray:
        """
        Record the live output tap while playing the track from the start.

        Used as the export fallback; returns an empty array when cancelled.
        """
        if sd is None:
            raise CaptureUnavailable(f"sounddevice not available: {_sounddevice_import_error}")
        if self._track is None:
            raise CaptureUnavailable("No track loaded")

        sink = CaptureBuffer(self.channels, self.sample_rate)
        if timeout_sec is None:
            timeout_sec = self._track.duration_sec * 1.5 + 5.0
        self.stop()
        self._start_frame = 0
        self._capture = sink
        try:
            self.play()
            deadline = time.monotonic() + timeout_sec
            while not self._finished_event.wait(0.05):
                if self.state == PlaybackState.ERROR:
                    raise CaptureUnavailable(self.last_error or "Audio output unavailable")
                if cancel_event.is_set():
                    break
                if time.monotonic() > deadline:
                    logger.warning("Live capture stopped after %.1fs without reaching end of track", timeout_sec)
                    break
        finally:
            self._capture = None
            self.stop()

        if cancel_event.is_set():
            return np.zeros((0, self.channels), dtype=np.float32)
        return sink.take()

    def start_export(
        self,
        output_dir: str,
        *,
        normalize: bool = False,
        target_lufs: float = DEFAULT_TARGET_LUFS,
    ) -> Optional[ExportThread]:
        if self._track is None:
            self.exportFailed.emit("No audio loaded.")
            return None
        if self._export_thread is not None and self._export_thread.is_alive():
            logger.warning("Export already running")
            return self._export_thread
        title = track_title(self._track_info)
        path = Path(output_dir) / export_filename(title)
        self._export_thread = ExportThread(
            self._track,
            self._chain_state,
            path,
            volume=self._volume,
            normalize=normalize,
            target_lufs=target_lufs,
            capture=self.capture_output,
            done_cb=self.exportFinished.emit,
            error_cb=self.exportFailed.emit,
        )
        self._export_thread.start()
        return self._export_thread

    def cancel_export(self) -> None:
        if self._export_thread is not None:
            self._export_thread.cancel()
            self._export_thread.join(timeout=2.0)
            self._export_thread = None

    # ---- metrics ----

    def log_metrics_if_needed(self) -> None:
        now = time.monotonic()
        if not self._playing:
            self._metrics_last_log = now
            return
        elapsed = now - self._metrics_last_log
        if elapsed < 1.0:
            return
        self._metrics_last_log = now

        chain = self._chain_thread
        ring_underruns = chain.consume_ring_underruns() if chain else 0
        fill = self._ring.frames_available()
        calls, underflows, busy, worst = self._cb_stats.drain()
        if not self._metrics_enabled:
            return
        logger.info(
            "Audio metrics: buffer=%.2fs (frames=%d) ring_underruns=%.2f/s "
            "cb_underflows=%.2f/s cb_avg=%.2fms cb_max=%.2fms blocksize=%d latency=%s",
            fill / float(self.sample_rate),
            fill,
            ring_underruns / elapsed,
            underflows / elapsed,
            busy / calls * 1000.0 if calls else 0.0,
            worst * 1000.0,
            self._blocksize_frames,
            self._latency,
        )

    # ---- state ----

    def _set_state(self, st: PlaybackState):
        if self.state != st:
            self.state = st
            self.stateChanged.emit(st)

    def _set_error(self, msg: str):
        self.last_error = msg
        logger.error("%s", msg)
        self._set_state(PlaybackState.ERROR)
        self.errorOccurred.emit(msg)
