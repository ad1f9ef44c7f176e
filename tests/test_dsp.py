from __future__ import annotations

import math

import numpy as np
import pytest
from scipy.signal import freqz

from neonmaster.dsp import (
    AudioParam,
    CompressorEffect,
    EqualizerDSP,
    OutputGainEffect,
    SaturationEffect,
    StereoPannerEffect,
    StereoWidthEffect,
    biquad_coeffs,
    integrated_lufs,
    lufs_from_mean_square,
    sanitize_samples,
)

SR = 48000


def _response_at(coeffs, freq: float) -> float:
    b0, b1, b2, a1, a2 = coeffs
    _, h = freqz([b0, b1, b2], [1.0, a1, a2], worN=[freq], fs=SR)
    return float(np.abs(h[0]))


def test_peaking_gain_at_center_frequency() -> None:
    coeffs = biquad_coeffs("peaking", 1000.0, 6.0, 1.0, SR)
    assert _response_at(coeffs, 1000.0) == pytest.approx(10 ** (6.0 / 20.0), rel=1e-6)


def test_lowshelf_gain_at_dc() -> None:
    b0, b1, b2, a1, a2 = biquad_coeffs("lowshelf", 80.0, -9.0, 1.0, SR)
    dc = (b0 + b1 + b2) / (1.0 + a1 + a2)
    assert dc == pytest.approx(10 ** (-9.0 / 20.0), rel=1e-6)


def test_highshelf_gain_at_nyquist() -> None:
    b0, b1, b2, a1, a2 = biquad_coeffs("highshelf", 12000.0, 4.0, 1.0, SR)
    nyquist = (b0 - b1 + b2) / (1.0 - a1 + a2)
    assert nyquist == pytest.approx(10 ** (4.0 / 20.0), rel=1e-6)


def test_unknown_filter_type() -> None:
    with pytest.raises(ValueError):
        biquad_coeffs("bandpass", 1000.0, 0.0, 1.0, SR)


def test_flat_equalizer_passes_audio_through(sine) -> None:
    eq = EqualizerDSP(SR, 2)
    x = sine(440.0, 0.5, 0.1)
    assert eq.process(x) is x


def test_equalizer_state_carries_across_blocks(sine) -> None:
    x = sine(200.0, 0.5, 0.2)

    whole = EqualizerDSP(SR, 2)
    whole.set_band_gain("low", 6.0)
    expected = whole.process(x)

    split = EqualizerDSP(SR, 2)
    split.set_band_gain("low", 6.0)
    got = np.concatenate([split.process(x[:1000]), split.process(x[1000:])])

    np.testing.assert_allclose(got, expected, atol=1e-6)


def test_equalizer_reactivation_starts_from_clean_state(sine) -> None:
    x = sine(200.0, 0.5, 0.1)

    reused = EqualizerDSP(SR, 2)
    reused.set_band_gain("low", 6.0)
    reused.process(x)
    reused.set_band_gain("low", 0.0)
    reused.process(x)
    reused.set_band_gain("low", 6.0)

    fresh = EqualizerDSP(SR, 2)
    fresh.set_band_gain("low", 6.0)

    np.testing.assert_allclose(reused.process(x), fresh.process(x), atol=1e-6)


def test_equalizer_clamps_band_gain() -> None:
    eq = EqualizerDSP(SR, 2)
    eq.set_band_gain("air", 40.0)
    assert eq.gain_db("air") == 24.0


def test_audio_param_automation_then_holds_last_value() -> None:
    p = AudioParam("ceiling", -0.3, -6.0, 0.0)
    p.set_values([-1.0, -2.0, -9.0])
    block = p.block(5)
    np.testing.assert_allclose(block, [-1.0, -2.0, -6.0, -6.0, -6.0])
    assert p.value == -6.0
    np.testing.assert_allclose(p.block(2), [-6.0, -6.0])

    p.set_value(math.nan)
    assert p.value == -6.0


def test_width_zero_is_mono_sum() -> None:
    x = np.array([[1.0, 0.0], [0.2, -0.6]], dtype=np.float32)
    fx = StereoWidthEffect(width=0.0)
    y = fx.process(x)
    np.testing.assert_allclose(y[:, 0], y[:, 1])
    np.testing.assert_allclose(y[:, 0], [0.5, -0.2], atol=1e-7)


def test_width_two_widens() -> None:
    x = np.array([[1.0, 0.0]], dtype=np.float32)
    y = StereoWidthEffect(width=2.0).process(x)
    np.testing.assert_allclose(y, [[1.5, -0.5]])


def test_unity_width_and_center_pan_are_identity() -> None:
    x = np.random.default_rng(1).uniform(-1, 1, (64, 2)).astype(np.float32)
    assert StereoWidthEffect(width=1.0).process(x) is x
    assert StereoPannerEffect(pan=0.0).process(x) is x


def test_hard_pan_folds_into_one_side() -> None:
    x = np.array([[0.25, 0.5]], dtype=np.float32)
    left = StereoPannerEffect(pan=-1.0).process(x)
    np.testing.assert_allclose(left, [[0.75, 0.0]], atol=1e-7)
    right = StereoPannerEffect(pan=1.0).process(x)
    np.testing.assert_allclose(right, [[0.0, 0.75]], atol=1e-7)


def test_stereo_stages_leave_mono_untouched() -> None:
    x = np.ones((16, 1), dtype=np.float32)
    assert StereoWidthEffect(width=0.0).process(x) is x
    assert StereoPannerEffect(pan=1.0).process(x) is x


def test_saturation_dry_and_wet() -> None:
    x = np.array([[0.1, -0.5], [2.0, -3.0]], dtype=np.float32)
    dry = SaturationEffect(SR, 2, drive=0.5, mix=0.0)
    assert dry.process(x) is x

    wet = SaturationEffect(SR, 2, drive=0.0, mix=1.0)
    y = wet.process(x)
    np.testing.assert_allclose(y[0], np.tanh([0.1, -0.5]), rtol=1e-6)
    np.testing.assert_allclose(y[1], np.tanh([1.0, -1.0]), rtol=1e-6)


def test_compressor_reduces_loud_signal(sine) -> None:
    comp = CompressorEffect(SR, 2, threshold_db=-20.0, ratio=4.0, attack_sec=0.001, release_sec=0.1)
    x = sine(1000.0, 0.9, 0.5)
    y = comp.process(x)
    assert np.max(np.abs(y[-4800:])) < 0.9 * 0.5
    assert comp.gain_reduction_db() > 6.0


def test_compressor_soft_knee_acts_just_below_threshold(sine) -> None:
    # about -25 dBFS peak: inside the 30 dB knee around -20, below the threshold itself
    x = sine(1000.0, 0.056, 0.5)
    soft = CompressorEffect(SR, 2, threshold_db=-20.0, ratio=4.0, attack_sec=0.001, release_sec=0.1)
    hard = CompressorEffect(SR, 2, threshold_db=-20.0, ratio=4.0, attack_sec=0.001, release_sec=0.1, knee_db=0.0)
    soft.process(x)
    hard.process(x)
    assert 0.5 < soft.gain_reduction_db() < 2.5
    assert hard.gain_reduction_db() == 0.0


def test_disabled_compressor_is_identity(sine) -> None:
    comp = CompressorEffect(SR, 2, enabled=False)
    x = sine(1000.0, 0.9, 0.1)
    assert comp.process(x) is x


def test_output_gain_ramps_toward_target() -> None:
    stage = OutputGainEffect(44100, gain=1.0)
    stage.set_target(0.0)
    y = stage.process(np.ones((4410, 2), dtype=np.float32))
    assert y[0, 0] > 0.9
    assert y[-1, 0] < 1e-2
    assert np.all(np.diff(y[:, 0]) <= 0.0)
    assert stage.current == pytest.approx(float(y[-1, 0]), rel=1e-5)


def test_output_gain_snap_and_non_finite_target() -> None:
    stage = OutputGainEffect(44100, gain=0.5)
    stage.set_target(math.inf)
    assert stage.target == 0.5
    stage.set_target(0.25)
    stage.snap()
    y = stage.process(np.ones((4, 1), dtype=np.float32))
    np.testing.assert_allclose(y, 0.25)


def test_sanitize_samples() -> None:
    x = np.array([[np.nan, np.inf], [-np.inf, 0.5]], dtype=np.float32)
    np.testing.assert_array_equal(sanitize_samples(x), [[0.0, 1.0], [-1.0, 0.5]])


def test_loudness_formula() -> None:
    assert lufs_from_mean_square(0.0) == -120.0
    assert lufs_from_mean_square(1e-30) == -120.0
    assert lufs_from_mean_square(0.01) == pytest.approx(-20.691)
    assert integrated_lufs(np.zeros((0, 2), dtype=np.float32)) == -120.0
