from __future__ import annotations

import threading

import numpy as np
import pytest

from neonmaster.audio.render import normalize_loudness, render_offline
from neonmaster.dsp import integrated_lufs
from neonmaster.errors import RenderCancelled, RenderError
from neonmaster.models import ChainState, TrackBuffer
from neonmaster.wav import encode_wav

SR = 44100


def _bypassed() -> ChainState:
    return (
        ChainState()
        .with_section("compressor", bypass=True)
        .with_section("saturation", bypass=True)
        .with_section("stereo", bypass=True)
        .with_section("limiter", bypass=True)
    )


@pytest.fixture
def track(sine) -> TrackBuffer:
    return TrackBuffer(sample_rate=SR, data=sine(1000.0, 0.8, 1.0, sample_rate=SR))


def test_render_is_deterministic(track: TrackBuffer) -> None:
    state = ChainState().with_section("eq", air=3.0).with_section("stereo", width=1.4)
    first = render_offline(track, state)
    second = render_offline(track, state)
    assert encode_wav(first.samples, SR) == encode_wav(second.samples, SR)
    assert first.frames == track.frames
    assert first.sample_rate == SR


def test_render_does_not_touch_source(track: TrackBuffer) -> None:
    before = track.data.copy()
    render_offline(track, ChainState().with_section("eq", sub=12.0))
    np.testing.assert_array_equal(track.data, before)


def test_block_size_does_not_change_output(track: TrackBuffer) -> None:
    state = ChainState()
    a = render_offline(track, state, block_frames=8192)
    b = render_offline(track, state, block_frames=1000)
    np.testing.assert_allclose(a.samples, b.samples, atol=1e-6)


def test_constant_output_gain(track: TrackBuffer) -> None:
    state = _bypassed().with_section("output", trim=-6.0)
    result = render_offline(track, state, volume=0.5)
    expected = track.data * np.float32(0.5 * 10 ** (-6.0 / 20.0))
    np.testing.assert_allclose(result.samples, expected, rtol=1e-6, atol=1e-7)


def test_limited_render_respects_ceiling(track: TrackBuffer) -> None:
    result = render_offline(track, ChainState().with_section("eq", mid=12.0))
    assert np.max(np.abs(result.samples)) <= 10 ** (-0.3 / 20.0) + 1e-6


def test_normalization_reaches_target(sine) -> None:
    quiet = TrackBuffer(sample_rate=SR, data=sine(1000.0, 0.1531, 2.0, sample_rate=SR))
    result = render_offline(quiet, _bypassed(), normalize=True, target_lufs=-14.0)
    assert result.lufs == pytest.approx(-14.0, abs=0.01)
    assert result.normalize_gain_db == pytest.approx(6.0, abs=0.05)
    assert integrated_lufs(result.samples) == pytest.approx(-14.0, abs=0.01)


def test_normalization_clamps_peaks(sine) -> None:
    x = sine(1000.0, 0.9, 0.5, sample_rate=SR)
    out, delta = normalize_loudness(x, target_lufs=0.0)
    assert delta > 0.0
    assert np.max(np.abs(out)) <= 1.0


def test_normalizing_silence_is_a_no_op() -> None:
    silence = np.zeros((1000, 2), dtype=np.float32)
    out, delta = normalize_loudness(silence, -14.0)
    assert delta == 0.0
    assert out is silence


def test_cancelled_render(track: TrackBuffer) -> None:
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(RenderCancelled):
        render_offline(track, ChainState(), cancel_event=cancel)


def test_progress_reaches_one(track: TrackBuffer) -> None:
    progress: list[float] = []
    render_offline(track, ChainState(), progress_cb=progress.append, block_frames=10000)
    assert progress[-1] == 1.0
    assert progress == sorted(progress)


def test_disabled_offline_render_raises(track: TrackBuffer, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NEONMASTER_DISABLE_OFFLINE", "1")
    with pytest.raises(RenderError):
        render_offline(track, ChainState())
