from __future__ import annotations

import os

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import numpy as np
import pytest
from PySide6 import QtGui


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QtGui.QGuiApplication.instance()
    if app is None:
        app = QtGui.QGuiApplication([])
    yield app


@pytest.fixture
def sine():
    def make(freq: float, amplitude: float, seconds: float, sample_rate: int = 48000, channels: int = 2) -> np.ndarray:
        t = np.arange(int(round(seconds * sample_rate)), dtype=np.float64) / sample_rate
        mono = amplitude * np.sin(2.0 * np.pi * freq * t)
        return np.repeat(mono[:, None], channels, axis=1).astype(np.float32)

    return make
