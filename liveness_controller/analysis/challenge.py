"""
Head-turn challenge used when depth checks could not confirm a face in time.

The user turns toward the requested side and back. Three milestones are
tracked on the yaw stream (degrees, positive = turned left):

    P1  leaving a centered sample toward the requested side
    P2  beyond the far threshold (25 deg)
    P3  back inside the centered threshold (5 deg)

Yaw between P1 and P2 and between P2 and P3 is recorded and checked once
P3 is reached: the two legs must differ, each must move the right way, and
they must not share the same speed. Turning the wrong way is not detected
early; such a session simply runs out of time.
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..config import ChallengeSettings
from ..errors import SampleOrderError, SessionStateError
from ..state import ChallengeDirection, ChallengePhase, ChallengeStatus

logger = logging.getLogger(__name__)

_DYNAMICS_TOLERANCE_DEG = 1e-6


@dataclass
class ChallengeSession:
    direction: ChallengeDirection
    started_at: float
    phase: ChallengePhase = ChallengePhase.IDLE
    yaw_p1_to_p2: List[float] = field(default_factory=list)
    yaw_p2_to_p3: List[float] = field(default_factory=list)
    last_yaw: Optional[float] = None
    last_sample_at: Optional[float] = None
    outcome: Optional[ChallengeStatus] = None
    failure_reason: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.outcome is not None

    @property
    def status(self) -> ChallengeStatus:
        return self.outcome or ChallengeStatus.IN_PROGRESS

    @property
    def sign(self) -> float:
        return 1.0 if self.direction is ChallengeDirection.TURN_LEFT else -1.0


@dataclass(frozen=True)
class MovementVerification:
    non_static: bool
    directional: bool
    dynamics: bool

    @property
    def passed(self) -> bool:
        return self.non_static and self.directional and self.dynamics

    def failure_reason(self) -> Optional[str]:
        if not self.non_static:
            return "static_movement"
        if not self.directional:
            return "wrong_direction"
        if not self.dynamics:
            return "identical_dynamics"
        return None


def _mostly_moving(values: Sequence[float], expected_sign: float) -> bool:
    deltas = np.diff(np.asarray(values, dtype=np.float64)) * expected_sign
    if deltas.size == 0:
        return False
    return int(np.count_nonzero(deltas > 0)) * 2 > deltas.size


def _mean_abs_delta(values: Sequence[float]) -> float:
    deltas = np.diff(np.asarray(values, dtype=np.float64))
    if deltas.size == 0:
        return 0.0
    return float(np.mean(np.abs(deltas)))


def verify_movement(outward: Sequence[float], inward: Sequence[float], sign: float) -> MovementVerification:
    """Checks on the two recorded legs; ``sign`` is +1 for a left turn, -1 for right."""
    non_static = sorted(outward) != sorted(inward)
    directional = _mostly_moving(outward, sign) and _mostly_moving(inward, -sign)
    dynamics = not math.isclose(
        _mean_abs_delta(outward),
        _mean_abs_delta(inward),
        rel_tol=0.0,
        abs_tol=_DYNAMICS_TOLERANCE_DEG,
    )
    return MovementVerification(non_static=non_static, directional=directional, dynamics=dynamics)


class ChallengeResponseVerifier:
    """Drives one ``ChallengeSession`` at a time from a stream of yaw samples."""

    def __init__(self, settings: Optional[ChallengeSettings] = None) -> None:
        self.settings = settings or ChallengeSettings()
        self.session: Optional[ChallengeSession] = None

    @property
    def status(self) -> ChallengeStatus:
        if self.session is None:
            return ChallengeStatus.IN_PROGRESS
        return self.session.status

    def start(self, direction: ChallengeDirection, now: Optional[float] = None) -> ChallengeSession:
        started_at = time.monotonic() if now is None else now
        self.session = ChallengeSession(
            direction=direction,
            started_at=started_at,
            phase=ChallengePhase.AWAITING_P1,
        )
        logger.info("Challenge started: %s (timeout %.1fs)", direction.value, self.settings.timeout_s)
        return self.session

    def process(self, yaw: Optional[float], timestamp: Optional[float] = None) -> ChallengeStatus:
        """Feed one yaw sample in capture order; ``None`` means face tracking was lost."""
        session = self._require_session()
        if session.done:
            return session.status

        timestamp = time.monotonic() if timestamp is None else timestamp
        if session.last_sample_at is not None and timestamp <= session.last_sample_at:
            raise SampleOrderError(session.last_sample_at, timestamp)
        session.last_sample_at = timestamp

        if self._timed_out(session, timestamp):
            return self._finish(session, ChallengeStatus.TIMEOUT, "timeout")
        if yaw is None:
            return self._finish(session, ChallengeStatus.FAIL, "face_lost")
        if not math.isfinite(yaw):
            raise ValueError(f"yaw must be finite, got {yaw!r}")

        self._advance(session, float(yaw))
        session.last_yaw = float(yaw)
        return session.status

    def expire(self, now: Optional[float] = None) -> ChallengeStatus:
        """Let the orchestration layer close a session that stopped receiving samples."""
        session = self._require_session()
        if session.done:
            return session.status
        now = time.monotonic() if now is None else now
        if self._timed_out(session, now):
            return self._finish(session, ChallengeStatus.TIMEOUT, "timeout")
        return session.status

    def face_lost(self) -> ChallengeStatus:
        session = self._require_session()
        if session.done:
            return session.status
        return self._finish(session, ChallengeStatus.FAIL, "face_lost")

    def _require_session(self) -> ChallengeSession:
        if self.session is None:
            raise SessionStateError("challenge sample received before start()")
        return self.session

    def _timed_out(self, session: ChallengeSession, now: float) -> bool:
        return now - session.started_at >= self.settings.timeout_s

    def _advance(self, session: ChallengeSession, yaw: float) -> None:
        # Work in the turn's own frame: positive is always toward the requested side
        turn = yaw * session.sign
        previous = None if session.last_yaw is None else session.last_yaw * session.sign
        p1 = self.settings.p1_threshold_deg
        p2 = self.settings.p2_threshold_deg

        if session.phase is ChallengePhase.AWAITING_P1:
            # The previous sample was centered; a fast turn may already be past p1
            if previous is not None and previous < p1 and turn > previous:
                session.phase = ChallengePhase.AWAITING_P2
                logger.debug("Challenge P1 reached at yaw=%.2f", yaw)
        if session.phase is ChallengePhase.AWAITING_P2:
            session.yaw_p1_to_p2.append(yaw)
            if turn > p2:
                session.phase = ChallengePhase.AWAITING_P3
                session.yaw_p2_to_p3.append(yaw)
                logger.debug("Challenge P2 reached at yaw=%.2f", yaw)
        elif session.phase is ChallengePhase.AWAITING_P3:
            session.yaw_p2_to_p3.append(yaw)
            if turn < p1:
                logger.debug("Challenge P3 reached at yaw=%.2f", yaw)
                self._conclude(session)

    def _conclude(self, session: ChallengeSession) -> None:
        verification = verify_movement(session.yaw_p1_to_p2, session.yaw_p2_to_p3, session.sign)
        logger.info(
            "Challenge movement: non_static=%s directional=%s dynamics=%s",
            verification.non_static,
            verification.directional,
            verification.dynamics,
        )
        if verification.passed:
            self._finish(session, ChallengeStatus.PASS, None)
        else:
            self._finish(session, ChallengeStatus.FAIL, verification.failure_reason())

    def _finish(self, session: ChallengeSession, outcome: ChallengeStatus, reason: Optional[str]) -> ChallengeStatus:
        session.phase = ChallengePhase.DONE
        session.outcome = outcome
        session.failure_reason = reason
        if outcome is ChallengeStatus.PASS:
            logger.info("✅ Challenge passed (%s)", session.direction.value)
        else:
            logger.info("❌ Challenge %s: %s", outcome.value, reason)
        return outcome


__all__ = [
    "ChallengeSession",
    "MovementVerification",
    "verify_movement",
    "ChallengeResponseVerifier",
]
