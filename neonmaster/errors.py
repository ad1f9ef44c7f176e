from __future__ import annotations


class EngineError(RuntimeError):
    pass


class InitializationError(EngineError):
    """The audio output subsystem could not be started."""


class DecodeError(EngineError):
    """A source file could not be decoded into PCM."""


class RenderError(EngineError):
    """The deterministic offline render failed."""


class RenderCancelled(RenderError):
    pass


class CaptureUnavailable(EngineError):
    """The real-time capture fallback cannot run in this environment."""


class ValidationError(ValueError):
    """A preset document is malformed."""
