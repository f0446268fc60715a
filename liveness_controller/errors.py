"""Exceptions raised by the liveness core when a caller breaks its contract."""
from __future__ import annotations


class LivenessError(RuntimeError):
    """Base class for liveness contract violations."""


class SessionStateError(LivenessError):
    """Raised when an operation is invoked in a state that does not allow it."""


class SampleOrderError(LivenessError):
    """Raised when frames or yaw samples arrive out of capture order."""

    def __init__(self, previous: float, received: float) -> None:
        super().__init__(f"sample timestamp {received:.6f} is not after previous sample {previous:.6f}")
        self.previous = previous
        self.received = received


class ThresholdStoreError(LivenessError):
    """Raised when calibrated thresholds cannot be written."""


__all__ = ["LivenessError", "SessionStateError", "SampleOrderError", "ThresholdStoreError"]
