from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from neonmaster.decoder import decode_file, make_ffmpeg_cmd, parse_track_info, pcm_from_bytes
from neonmaster.errors import DecodeError


def test_pcm_from_bytes_deinterleaves_and_drops_partial_frame() -> None:
    samples = np.array([0.1, -0.1, 0.2, -0.2, 0.3], dtype="<f4")
    data = pcm_from_bytes(samples.tobytes(), channels=2)
    assert data.shape == (2, 2)
    np.testing.assert_allclose(data[:, 1], [-0.1, -0.2])


def test_ffmpeg_command_requests_float_pcm() -> None:
    cmd = make_ffmpeg_cmd("in.flac", 48000, 2)
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "f32le"
    assert cmd[cmd.index("-ar") + 1] == "48000"
    assert cmd[-1] == "pipe:1"
    assert "-ss" not in cmd


def test_parse_track_info_from_ffprobe_json() -> None:
    probe = {
        "format": {"duration": "183.5", "tags": {"TITLE": "Night Drive", "ALBUM_ARTIST": "Neon"}},
        "streams": [{"codec_type": "audio", "sample_rate": "44100", "channels": 2}],
    }
    info = parse_track_info("/tmp/a.flac", probe)
    assert info.title == "Night Drive"
    assert info.artist == "Neon"
    assert info.duration_sec == pytest.approx(183.5)


def test_parse_track_info_without_probe() -> None:
    info = parse_track_info("/tmp/a.flac", None)
    assert info.path == "/tmp/a.flac"
    assert info.duration_sec == 0.0


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(DecodeError):
        decode_file(str(tmp_path / "missing.wav"))
