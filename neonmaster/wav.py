from __future__ import annotations

import io
import wave
from pathlib import Path

import numpy as np


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1], scale by 0x8000 below zero and 0x7fff otherwise, truncate toward zero."""
    s = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.where(s < 0.0, s * 32768.0, s * 32767.0)
    return np.trunc(scaled).astype("<i2")


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """16-bit PCM RIFF/WAVE bytes; ``samples`` is (frames, channels) or mono (frames,)."""
    data = np.asarray(samples)
    if data.ndim == 1:
        data = data.reshape(-1, 1)
    if data.ndim != 2 or data.shape[1] < 1:
        raise ValueError(f"expected (frames, channels) samples, got {data.shape}")

    pcm = float_to_pcm16(data)
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(int(data.shape[1]))
        wf.setsampwidth(2)
        wf.setframerate(int(sample_rate))
        wf.writeframes(np.ascontiguousarray(pcm).tobytes())
    return buf.getvalue()


def write_wav(path: Path, samples: np.ndarray, *, sample_rate: int) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_wav(samples, sample_rate))
    return path


def read_wav(path: Path) -> tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV back as float32 (frames, channels)."""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"unsupported sample width: {wf.getsampwidth()}")
        channels = wf.getnchannels()
        sample_rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())
    pcm = np.frombuffer(raw, dtype="<i2").reshape(-1, channels)
    data = np.where(pcm < 0, pcm / 32768.0, pcm / 32767.0).astype(np.float32)
    return data, sample_rate
