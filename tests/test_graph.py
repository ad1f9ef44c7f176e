from __future__ import annotations

import numpy as np
import pytest

from neonmaster.graph import SignalGraph, output_gain_for
from neonmaster.models import ChainState, MeterSnapshot

SR = 48000


def _all_bypassed() -> ChainState:
    return (
        ChainState()
        .with_section("compressor", bypass=True)
        .with_section("saturation", bypass=True)
        .with_section("stereo", bypass=True)
        .with_section("limiter", bypass=True)
    )


def test_output_gain_for_volume_trim_and_offset() -> None:
    state = ChainState().with_section("output", trim=6.0)
    assert output_gain_for(state, 0.5) == pytest.approx(0.5 * 10 ** (6.0 / 20.0))
    assert output_gain_for(state, 1.0, offset_db=-6.0) == pytest.approx(1.0)
    assert output_gain_for(state, 0.0) == 0.0

    bypassed = state.with_section("output", bypass=True)
    assert output_gain_for(bypassed, 1.0) == pytest.approx(1.0)
    assert output_gain_for(bypassed, 1.0, offset_db=6.0) == pytest.approx(10 ** (6.0 / 20.0))


def test_sync_applies_only_new_versions() -> None:
    graph = SignalGraph(SR, 2)
    state = ChainState().with_section("stereo", width=1.5)
    assert graph.sync(state) is True
    assert graph.applied_version == state.version
    assert graph.sync(state) is False


def test_bypass_flags_map_onto_stages() -> None:
    graph = SignalGraph(SR, 2)
    state = _all_bypassed().with_section("stereo", pan=0.7, width=0.2)
    graph.apply_state(state)
    assert graph.compressor.enabled is False
    assert graph.saturation._mix == 0.0
    assert graph.stereo_width._width == 1.0
    assert graph.stereo_panner._pan == 0.0
    assert graph.limiter.bypass.value == 1.0


def test_mono_collapses_width() -> None:
    graph = SignalGraph(SR, 2)
    graph.apply_state(ChainState().with_section("stereo", mono=True, width=1.8))
    assert graph.stereo_width._width == 0.0


def test_fully_bypassed_graph_is_transparent(sine) -> None:
    graph = SignalGraph(SR, 2)
    graph.apply_state(_all_bypassed())
    x = sine(440.0, 0.5, 0.1)
    np.testing.assert_allclose(graph.process(x), x, atol=1e-7)


def test_default_chain_keeps_loud_input_under_ceiling(sine) -> None:
    graph = SignalGraph(SR, 2)
    x = sine(220.0, 2.0, 0.5)
    y = np.concatenate([graph.process(x[i : i + 1024]) for i in range(0, x.shape[0], 1024)])
    assert np.max(np.abs(y)) <= 10 ** (-0.3 / 20.0) + 1e-6


def test_non_finite_input_is_sanitized() -> None:
    graph = SignalGraph(SR, 2)
    x = np.full((512, 2), np.nan, dtype=np.float32)
    assert np.all(np.isfinite(graph.process(x)))


def test_meter_listener_sees_graph_output(sine) -> None:
    reports: list[MeterSnapshot] = []
    graph = SignalGraph(SR, 2, meter_listener=reports.append)
    graph.process(sine(1000.0, 0.5, 0.1))
    assert len(reports) == 2
    assert reports[-1].peak > 0.0

    graph.release()
    graph.process(sine(1000.0, 0.5, 0.1))
    assert len(reports) == 2


def test_integrated_loudness_survives_graph_reset(sine) -> None:
    graph = SignalGraph(SR, 2)
    graph.apply_state(_all_bypassed())
    x = sine(1000.0, 0.5, 1.0)
    for start in range(0, x.shape[0], 512):
        graph.process(x[start : start + 512])
    before = graph.meter.snapshot().lufs_integrated
    assert before > -120.0

    graph.reset()
    assert graph.meter.snapshot().lufs_integrated == pytest.approx(before)
    assert graph.meter.snapshot().lufs_momentary == -120.0
