from __future__ import annotations

import threading
from typing import Optional

import numpy as np


def _as_frames(frames: np.ndarray, channels: int) -> np.ndarray:
    if frames.dtype != np.float32:
        frames = frames.astype(np.float32, copy=False)
    if frames.ndim != 2 or frames.shape[1] != channels:
        raise ValueError(f"frames must be (n,{channels}) float32, got {frames.shape} {frames.dtype}")
    return frames


class _FrameRing:
    """Preallocated circular (capacity, channels) frame store. Callers lock."""

    def __init__(self, channels: int, capacity: int):
        self.channels = int(channels)
        self.capacity = max(1, int(capacity))
        self._data = np.zeros((self.capacity, self.channels), dtype=np.float32)
        self._start = 0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    @property
    def space(self) -> int:
        return self.capacity - self._count

    def reset(self) -> None:
        self._start = 0
        self._count = 0

    def append(self, frames: np.ndarray) -> None:
        """Append frames; when full the oldest frames are overwritten."""
        n = frames.shape[0]
        if n >= self.capacity:
            self._data[:] = frames[-self.capacity:]
            self._start = 0
            self._count = self.capacity
            return
        overflow = self._count + n - self.capacity
        if overflow > 0:
            self._start = (self._start + overflow) % self.capacity
            self._count -= overflow
        end = (self._start + self._count) % self.capacity
        first = min(n, self.capacity - end)
        self._data[end:end + first] = frames[:first]
        if first < n:
            self._data[:n - first] = frames[first:]
        self._count += n

    def take_into(self, out: np.ndarray) -> int:
        """Move the oldest frames into ``out``; returns how many were moved."""
        n = min(out.shape[0], self._count)
        first = min(n, self.capacity - self._start)
        out[:first] = self._data[self._start:self._start + first]
        if first < n:
            out[first:n] = self._data[:n - first]
        self._start = (self._start + n) % self.capacity
        self._count -= n
        return n

    def latest(self, n: int) -> np.ndarray:
        n = min(max(0, n), self._count)
        begin = (self._start + self._count - n) % self.capacity
        if begin + n <= self.capacity:
            return self._data[begin:begin + n].copy()
        return np.concatenate((self._data[begin:], self._data[:begin + n - self.capacity]))


class AudioRingBuffer:
    """
    Bounded FIFO between the chain thread and the output callback.

    The producer blocks in ``push_blocking`` while the ring is full. The
    consumer never waits: ``pop_into`` zero-fills whatever the ring cannot
    supply and counts it as an underrun.
    """

    def __init__(self, channels: int, max_seconds: float, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self._ring = _FrameRing(channels, int(max_seconds * sample_rate))
        self._underruns = 0
        self._cond = threading.Condition()

    @property
    def max_frames(self) -> int:
        return self._ring.capacity

    def clear(self) -> None:
        with self._cond:
            self._ring.reset()
            self._cond.notify_all()

    def frames_available(self) -> int:
        with self._cond:
            return self._ring.count

    def push_blocking(self, frames: np.ndarray, stop_event: Optional[threading.Event] = None) -> None:
        if frames.size == 0:
            return
        frames = _as_frames(frames, self.channels)
        offset = 0
        total = frames.shape[0]
        with self._cond:
            while offset < total:
                if stop_event is not None and stop_event.is_set():
                    return
                space = self._ring.space
                if space == 0:
                    self._cond.wait(timeout=0.05)
                    continue
                take = min(space, total - offset)
                self._ring.append(frames[offset:offset + take])
                offset += take

    def pop_into(self, out: np.ndarray) -> int:
        if out.ndim != 2 or out.shape[1] != self.channels:
            raise ValueError(f"out must be (n,{self.channels}) float32, got {out.shape} {out.dtype}")
        with self._cond:
            filled = self._ring.take_into(out)
            if filled < out.shape[0]:
                self._underruns += 1
            self._cond.notify_all()
        out[filled:].fill(0)
        return filled

    def consume_underruns(self) -> int:
        with self._cond:
            underruns = self._underruns
            self._underruns = 0
            return underruns


class VisualizerBuffer:
    """Most recent output-tap frames; older audio is overwritten."""

    def __init__(self, channels: int, max_seconds: float, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self._ring = _FrameRing(channels, int(max_seconds * sample_rate))
        self._lock = threading.Lock()

    @property
    def max_frames(self) -> int:
        return self._ring.capacity

    def clear(self) -> None:
        with self._lock:
            self._ring.reset()

    def push(self, frames: np.ndarray) -> None:
        if frames.size == 0:
            return
        frames = _as_frames(frames, self.channels)
        with self._lock:
            self._ring.append(frames)

    def get_recent(self, frames: Optional[int] = None, mono: bool = False) -> np.ndarray:
        with self._lock:
            n = frames if frames is not None and frames > 0 else self._ring.count
            data = self._ring.latest(n)
        if mono and data.size:
            return data.mean(axis=1, dtype=np.float32).reshape(-1, 1)
        return data


class CaptureBuffer:
    """
    Append-only recorder attached to the output tap during a capture export.

    The output callback only appends; concatenation happens on the export
    thread in ``take()``.
    """

    def __init__(self, channels: int, sample_rate: int):
        self.channels = channels
        self.sample_rate = sample_rate
        self._chunks: list[np.ndarray] = []
        self._frames = 0
        self._lock = threading.Lock()

    @property
    def frames(self) -> int:
        with self._lock:
            return self._frames

    def push(self, frames: np.ndarray) -> None:
        if frames.size == 0:
            return
        with self._lock:
            self._chunks.append(frames)
            self._frames += frames.shape[0]

    def clear(self) -> None:
        with self._lock:
            self._chunks = []
            self._frames = 0

    def take(self) -> np.ndarray:
        with self._lock:
            chunks = self._chunks
            self._chunks = []
            self._frames = 0
        if not chunks:
            return np.zeros((0, self.channels), dtype=np.float32)
        return np.concatenate(chunks, axis=0).astype(np.float32, copy=False)
