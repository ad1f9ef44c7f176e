from __future__ import annotations

import math
import os
import shutil


def have_exe(name: str) -> bool:
    return shutil.which(name) is not None

def clamp(x: float, lo: float, hi: float) -> float:
    return lo if x < lo else hi if x > hi else x

def db_to_gain(db: float) -> float:
    return float(10.0 ** (db / 20.0))

def gain_to_db(gain: float, floor_db: float = -120.0) -> float:
    if gain <= 0.0 or not math.isfinite(gain):
        return floor_db
    return max(floor_db, 20.0 * math.log10(gain))

def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")

def safe_float(x: str, default: float = 0.0) -> float:
    try:
        return float(x)
    except Exception:
        return default
