"""Real-time mastering signal chain: EQ, dynamics, saturation, stereo, limiting and metering."""

__version__ = "0.1.0"
