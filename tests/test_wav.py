from __future__ import annotations

import struct
from pathlib import Path

import numpy as np

from neonmaster.wav import encode_wav, float_to_pcm16, read_wav, write_wav


def test_pcm16_conversion_is_asymmetric_and_truncates() -> None:
    x = np.array([-1.0, 1.0, 0.5, -0.5, 2.0, -2.0, -0.00001, 0.0])
    np.testing.assert_array_equal(
        float_to_pcm16(x), [-32768, 32767, 16383, -16384, 32767, -32768, 0, 0]
    )


def test_wav_header_layout() -> None:
    samples = np.zeros((10, 2), dtype=np.float32)
    data = encode_wav(samples, 44100)
    assert len(data) == 44 + 10 * 4
    assert data[0:4] == b"RIFF"
    assert struct.unpack("<I", data[4:8])[0] == 36 + 40
    assert data[8:12] == b"WAVE"
    assert data[12:16] == b"fmt "
    fmt_size, audio_format, channels, rate, byte_rate, block_align, bits = struct.unpack("<IHHIIHH", data[16:36])
    assert (fmt_size, audio_format, channels, rate) == (16, 1, 2, 44100)
    assert (byte_rate, block_align, bits) == (44100 * 4, 4, 16)
    assert data[36:40] == b"data"
    assert struct.unpack("<I", data[40:44])[0] == 40


def test_samples_are_interleaved_little_endian() -> None:
    samples = np.array([[1.0, -1.0], [0.0, 0.5]], dtype=np.float32)
    data = encode_wav(samples, 8000)
    assert struct.unpack("<4h", data[44:]) == (32767, -32768, 0, 16383)


def test_write_and_read_back(tmp_path: Path) -> None:
    samples = np.array([[0.25, -0.25], [0.5, -1.0]], dtype=np.float32)
    path = write_wav(tmp_path / "out" / "Mastered_song.wav", samples, sample_rate=22050)
    assert path.exists()
    data, sr = read_wav(path)
    assert sr == 22050
    np.testing.assert_allclose(data, samples, atol=1e-4)


def test_mono_input() -> None:
    data = encode_wav(np.zeros(5, dtype=np.float32), 8000)
    assert struct.unpack("<H", data[22:24])[0] == 1
