"""Shared state definitions for the liveness controller."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class SessionPhase(str, enum.Enum):
    """
    Verification phases in chronological order:

    1. IDLE         - No verification running
    2. DEPTH_CHECK  - Depth frames evaluated by the decision engine (5s window)
    3. CHALLENGE    - Head-turn fallback when a face was seen but not confirmed (10s)
    4. COMPLETE     - Final verdict available until the next start
    """
    IDLE = "idle"
    DEPTH_CHECK = "depth_check"
    CHALLENGE = "challenge"
    COMPLETE = "complete"


class Verdict(str, enum.Enum):
    LIVE = "live"
    NOT_LIVE = "not_live"
    INSUFFICIENT_DATA = "insufficient_data"


class Pose(str, enum.Enum):
    """Head positions prompted during enrollment."""
    CENTER = "center"
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"
    CLOSER = "closer"
    FURTHER = "further"


class ChallengeDirection(str, enum.Enum):
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"


class ChallengePhase(str, enum.Enum):
    IDLE = "idle"
    AWAITING_P1 = "awaiting_p1"
    AWAITING_P2 = "awaiting_p2"
    AWAITING_P3 = "awaiting_p3"
    DONE = "done"


class ChallengeStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"


class EnrollmentState(str, enum.Enum):
    NOT_ENROLLED = "not_enrolled"
    CAPTURING = "capturing"
    CALCULATING = "calculating"
    COMPLETE = "complete"
    FAILED = "failed"


class VerificationMethod(str, enum.Enum):
    """Which stage produced the final verdict of a session."""
    DEPTH = "depth"
    DEFAULT_BOUNDS_RETRY = "default_bounds_retry"
    CHALLENGE = "challenge"
    MANUAL = "manual"


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    phase: SessionPhase
    error: Optional[str] = None


__all__ = [
    "SessionPhase",
    "Verdict",
    "Pose",
    "ChallengeDirection",
    "ChallengePhase",
    "ChallengeStatus",
    "EnrollmentState",
    "VerificationMethod",
    "ControllerEvent",
]
