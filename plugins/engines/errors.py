"""Engine error types."""

from __future__ import annotations


class EngineError(RuntimeError):
    """The reasoning engine failed or returned an unusable stream."""
