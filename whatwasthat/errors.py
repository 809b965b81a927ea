"""Typed failures reported by the engine."""


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class InvalidInput(EngineError, ValueError):
    """Empty or too-short sample buffer, bad sample rate or bad parameter."""


class NotFound(EngineError, KeyError):
    """Unknown reference identifier."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""


class StoreIOError(EngineError, OSError):
    """Reading or writing the fingerprint database failed."""
