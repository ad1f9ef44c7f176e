from __future__ import annotations

import json
import logging
import os
import subprocess
from typing import Any, List, Optional

import numpy as np

from .config import DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE
from .errors import DecodeError
from .models import TrackBuffer, TrackInfo
from .utils import have_exe, safe_float

logger = logging.getLogger(__name__)


def _startupinfo():
    # Keep Windows from opening a console window per subprocess
    if os.name != "nt":
        return None
    startupinfo = subprocess.STARTUPINFO()
    startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
    return startupinfo


def make_ffmpeg_cmd(path: str, sample_rate: int, channels: int) -> List[str]:
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "error",
        "-i", path,
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-f", "f32le",
        "pipe:1",
    ]


def make_ffprobe_cmd(path: str) -> List[str]:
    entries = "format=duration:format_tags=artist,album,album_artist,title:stream=codec_type,sample_rate,channels"
    return ["ffprobe", "-v", "error", "-print_format", "json", "-show_entries", entries, path]


def pcm_from_bytes(data: bytes, channels: int) -> np.ndarray:
    """Interleaved f32le bytes -> (frames, channels) float32; a trailing partial frame is dropped."""
    frame_bytes = channels * 4
    usable = len(data) - (len(data) % frame_bytes)
    x = np.frombuffer(data[:usable], dtype="<f4")
    return x.reshape((-1, channels)).astype(np.float32)


def _run_ffprobe(path: str) -> Optional[dict[str, Any]]:
    if not have_exe("ffprobe"):
        return None
    try:
        p = subprocess.run(
            make_ffprobe_cmd(path),
            capture_output=True,
            text=True,
            check=False,
            startupinfo=_startupinfo(),
        )
    except OSError as e:
        logger.warning("ffprobe failed for %s: %s", path, e)
        return None
    if p.returncode != 0:
        logger.debug("ffprobe returned %d for %s: %s", p.returncode, path, p.stderr.strip())
        return None
    try:
        data = json.loads(p.stdout or "{}")
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _audio_stream(data: dict[str, Any]) -> dict[str, Any]:
    for stream in data.get("streams", []) or []:
        if stream.get("codec_type") == "audio":
            return stream
    return {}


def parse_track_info(path: str, data: Optional[dict[str, Any]]) -> TrackInfo:
    """Build a TrackInfo from ffprobe JSON output (or nothing)."""
    info = TrackInfo(path=path)
    if not data:
        return info
    fmt = data.get("format", {}) or {}
    tags = fmt.get("tags", {}) or {}
    tags_lower = {str(k).lower(): str(v) for k, v in tags.items()}
    info.artist = tags_lower.get("artist") or tags_lower.get("album_artist") or ""
    info.album = tags_lower.get("album") or ""
    info.title = tags_lower.get("title") or ""
    info.duration_sec = max(0.0, safe_float(str(fmt.get("duration", "0")), 0.0))
    return info


def probe_track_info(path: str) -> TrackInfo:
    """Best-effort tags and duration; never raises for unreadable files."""
    return parse_track_info(path, _run_ffprobe(path))


def decode_file(
    path: str,
    sample_rate: Optional[int] = None,
    channels: Optional[int] = None,
) -> TrackBuffer:
    """
    Decode a whole file to float32 PCM with ffmpeg.

    Without an explicit rate or channel count the source's own values are
    used (falling back to 44.1 kHz stereo when ffprobe cannot tell).
    """
    if not path or not os.path.exists(path):
        raise DecodeError(f"File not found: {path}")
    if not have_exe("ffmpeg"):
        raise DecodeError("ffmpeg not found in PATH.")

    if sample_rate is None or channels is None:
        stream = _audio_stream(_run_ffprobe(path) or {})
        if sample_rate is None:
            sample_rate = int(safe_float(str(stream.get("sample_rate", "")), 0.0)) or DEFAULT_SAMPLE_RATE
        if channels is None:
            channels = int(stream.get("channels") or 0) or DEFAULT_CHANNELS

    cmd = make_ffmpeg_cmd(path, int(sample_rate), int(channels))
    try:
        p = subprocess.run(cmd, capture_output=True, check=False, startupinfo=_startupinfo())
    except OSError as e:
        raise DecodeError(f"Failed to start ffmpeg: {e}") from e
    if p.returncode != 0:
        message = p.stderr.decode("utf-8", errors="replace").strip()
        raise DecodeError(f"ffmpeg could not decode {path}: {message or p.returncode}")

    data = pcm_from_bytes(p.stdout, int(channels))
    if data.shape[0] == 0:
        raise DecodeError(f"No audio decoded from {path}")
    logger.info("Decoded %s: %d frames, %d Hz, %d ch", path, data.shape[0], sample_rate, channels)
    return TrackBuffer(sample_rate=int(sample_rate), data=data)
