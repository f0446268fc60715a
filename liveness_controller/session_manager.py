"""Session orchestration: depth verification window, challenge fallback, enrollment."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .analysis.challenge import ChallengeResponseVerifier
from .analysis.engine import CheckOutcome, EvaluationResult, LivenessEngine
from .analysis.enrollment import EnrollmentFlow
from .analysis.features import DepthGrid, to_grid
from .analysis.thresholds import PersonalizedThresholds
from .config import Settings, get_settings
from .errors import SessionStateError, ThresholdStoreError
from .state import (
    ChallengeDirection,
    ChallengeStatus,
    ControllerEvent,
    EnrollmentState,
    SessionPhase,
    Verdict,
    VerificationMethod,
)
from .storage.result_log import ResultLog
from .storage.threshold_store import ThresholdStore

logger = logging.getLogger(__name__)


@dataclass
class VerificationContext:
    session_id: str
    started_at: float
    requested_direction: Optional[ChallengeDirection] = None
    face_seen: bool = False
    consecutive_live: int = 0
    frames_evaluated: int = 0
    last_grid: Optional[np.ndarray] = None
    last_result: Optional[EvaluationResult] = None
    is_live: Optional[bool] = None
    method: Optional[VerificationMethod] = None
    failure_reason: Optional[str] = None


class SessionManager:
    """Coordinates the liveness engine, challenge fallback, enrollment and UI updates."""

    _EXPIRY_TICK_SECONDS: float = 0.25
    _UI_QUEUE_SIZE: int = 8

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        threshold_store: Optional[ThresholdStore] = None,
        result_log: Optional[ResultLog] = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or get_settings()
        data_dir = self.settings.data_directory
        self.threshold_store = threshold_store or ThresholdStore(data_dir / "user_thresholds.json")
        self.result_log = result_log or ResultLog(
            data_dir / "verification_results.json",
            capacity=self.settings.result_log_capacity,
        )
        self._clock = clock
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()
        self._phase: SessionPhase = SessionPhase.IDLE
        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._context: Optional[VerificationContext] = None
        self._expiry_task: Optional[asyncio.Task[None]] = None

        self._engine = LivenessEngine(defaults=self.settings.thresholds, settings=self.settings.engine)
        self._challenge = ChallengeResponseVerifier(self.settings.challenge)
        self._enrollment = EnrollmentFlow(
            self.settings.calibration,
            min_valid_points=self.settings.engine.min_valid_points,
        )

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def thresholds(self) -> Optional[PersonalizedThresholds]:
        return self._engine.thresholds

    @property
    def enrollment_state(self) -> EnrollmentState:
        return self._enrollment.state

    async def start(self) -> None:
        logger.info("Starting session manager")
        self._engine.thresholds = self.threshold_store.load()
        if self._engine.thresholds is not None:
            self._enrollment.state = EnrollmentState.COMPLETE
            logger.info("Using personalized thresholds from enrollment")
        else:
            logger.info("No enrollment on file - using default thresholds")
        if not self._expiry_task or self._expiry_task.done():
            self._expiry_task = asyncio.create_task(self._expiry_loop(), name="liveness-expiry")
        logger.info("Session manager started in IDLE state")

    async def stop(self) -> None:
        logger.info("Stopping session manager")
        if self._expiry_task and not self._expiry_task.done():
            self._expiry_task.cancel()
            try:
                await self._expiry_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping expiry task: %s", e)
        self._expiry_task = None
        logger.info("Session manager stopped")

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self._UI_QUEUE_SIZE)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def start_verification(
        self,
        *,
        direction: Optional[ChallengeDirection] = None,
        now: Optional[float] = None,
    ) -> str:
        async with self._lock:
            if self._phase in (SessionPhase.DEPTH_CHECK, SessionPhase.CHALLENGE):
                raise SessionStateError(f"verification already running ({self._phase.value})")
            if self._enrollment.active:
                raise SessionStateError("cannot verify while enrollment is in progress")
            now = self._now(now)
            self._context = VerificationContext(
                session_id=uuid.uuid4().hex,
                started_at=now,
                requested_direction=direction,
            )
            self._engine.reset()
            self._challenge.session = None
            logger.info(
                "🔍 Verification %s started (%s thresholds, %.1fs window)",
                self._context.session_id[:8],
                "personalized" if self._engine.thresholds else "default",
                self.settings.verification.window_seconds,
            )
            await self._advance_phase(SessionPhase.DEPTH_CHECK, data={"session_id": self._context.session_id})
            return self._context.session_id

    async def submit_depth_frame(
        self,
        depth_grid: DepthGrid,
        *,
        face_detected: bool = True,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            context = self._require_phase(SessionPhase.DEPTH_CHECK)
            now = self._now(now)
            if await self._close_window_if_elapsed(context, now):
                return self._status_locked()
            if not face_detected:
                context.consecutive_live = 0
                return self._status_locked()

            grid = to_grid(depth_grid)
            result = self._engine.evaluate(grid, timestamp=now)
            context.face_seen = True
            context.frames_evaluated += 1
            context.last_result = result
            if result.verdict is not Verdict.INSUFFICIENT_DATA:
                context.last_grid = grid

            if result.is_live:
                context.consecutive_live += 1
                logger.debug(
                    "Liveness check PASSED (%d/%d checks). Consecutive: %d/%d",
                    result.checks_passed,
                    CheckOutcome.TOTAL_CHECKS,
                    context.consecutive_live,
                    self.settings.verification.required_consecutive_frames,
                )
                if context.consecutive_live >= self.settings.verification.required_consecutive_frames:
                    await self._complete(context, True, VerificationMethod.DEPTH, result=result)
            else:
                if context.consecutive_live:
                    logger.debug("Liveness check FAILED; resetting consecutive count from %d", context.consecutive_live)
                context.consecutive_live = 0

            await self._broadcast(
                ControllerEvent(type="frame", phase=self._phase, data=result.as_dict())
            )
            return self._status_locked()

    async def submit_yaw(self, yaw: Optional[float], *, now: Optional[float] = None) -> ChallengeStatus:
        async with self._lock:
            context = self._require_phase(SessionPhase.CHALLENGE)
            status = self._challenge.process(yaw, self._now(now))
            if status is not ChallengeStatus.IN_PROGRESS:
                await self._finish_challenge(context)
            return status

    async def tick(self, now: Optional[float] = None) -> None:
        """Close any window whose time is up; called periodically by the expiry loop."""
        async with self._lock:
            now = self._now(now)
            context = self._context
            if self._phase is SessionPhase.DEPTH_CHECK and context is not None:
                await self._close_window_if_elapsed(context, now)
            elif self._phase is SessionPhase.CHALLENGE and context is not None:
                if self._challenge.expire(now) is not ChallengeStatus.IN_PROGRESS:
                    await self._finish_challenge(context)
            if self._enrollment.state is EnrollmentState.CAPTURING:
                self._enrollment.expire(now)

    async def record_manual_result(self, is_live: bool) -> bool:
        async with self._lock:
            if self._context is None:
                raise SessionStateError("no verification session to record a result for")
            logger.info("📄 Manual result for %s: %s", self._context.session_id[:8], "LIVE" if is_live else "NOT LIVE")
            return self.result_log.record_manual(self._context.session_id, is_live)

    def status(self) -> Dict[str, Any]:
        return self._status_locked()

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def start_enrollment(self, *, now: Optional[float] = None) -> EnrollmentState:
        async with self._lock:
            if self._phase in (SessionPhase.DEPTH_CHECK, SessionPhase.CHALLENGE):
                raise SessionStateError("cannot enroll while a verification is running")
            self._enrollment.start(self._now(now))
            await self._broadcast_enrollment()
            return self._enrollment.state

    async def submit_enrollment_frame(self, depth_grid: DepthGrid, *, now: Optional[float] = None) -> EnrollmentState:
        async with self._lock:
            state = self._enrollment.submit_frame(depth_grid, self._now(now))
            if state is EnrollmentState.COMPLETE and self._enrollment.thresholds is not None:
                self._apply_thresholds(self._enrollment.thresholds)
            await self._broadcast_enrollment()
            return state

    async def cancel_enrollment(self) -> EnrollmentState:
        async with self._lock:
            self._enrollment.cancel()
            await self._broadcast_enrollment()
            return self._enrollment.state

    async def reset_enrollment(self) -> None:
        async with self._lock:
            logger.info("Resetting enrollment")
            self._enrollment.cancel()
            self.threshold_store.clear()
            self._engine.thresholds = None
            self._enrollment.state = EnrollmentState.NOT_ENROLLED
            await self._broadcast_enrollment()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def _require_phase(self, phase: SessionPhase) -> VerificationContext:
        if self._phase is not phase or self._context is None:
            raise SessionStateError(f"expected phase {phase.value}, current phase is {self._phase.value}")
        return self._context

    def _apply_thresholds(self, thresholds: PersonalizedThresholds) -> None:
        self._engine.thresholds = thresholds
        try:
            self.threshold_store.save(thresholds)
        except ThresholdStoreError:
            logger.error("Personalized thresholds active for this run only; they were not persisted")

    async def _close_window_if_elapsed(self, context: VerificationContext, now: float) -> bool:
        if now - context.started_at < self.settings.verification.window_seconds:
            return False

        logger.info(
            "⏱️ Depth window elapsed for %s (%d frames evaluated, face seen: %s)",
            context.session_id[:8],
            context.frames_evaluated,
            context.face_seen,
        )
        verification = self.settings.verification
        if verification.retry_with_default_bounds and self._engine.thresholds is not None and context.last_grid is not None:
            retry = self._engine.evaluate_with_defaults(context.last_grid, timestamp=now)
            logger.info("Default-bounds retry on last frame: %s", retry.verdict.value)
            if retry.is_live:
                await self._complete(context, True, VerificationMethod.DEFAULT_BOUNDS_RETRY, result=retry)
                return True

        if context.face_seen and verification.challenge_enabled:
            direction = context.requested_direction or self._rng.choice(list(ChallengeDirection))
            self._challenge.start(direction, now)
            await self._advance_phase(
                SessionPhase.CHALLENGE,
                data={"session_id": context.session_id, "direction": direction.value},
            )
            return True

        reason = "no_face" if not context.face_seen else "not_confirmed"
        await self._complete(context, False, VerificationMethod.DEPTH, result=context.last_result, reason=reason)
        return True

    async def _finish_challenge(self, context: VerificationContext) -> None:
        session = self._challenge.session
        passed = session is not None and session.status is ChallengeStatus.PASS
        reason = None if session is None else session.failure_reason
        await self._complete(context, passed, VerificationMethod.CHALLENGE, result=context.last_result, reason=reason)

    async def _complete(
        self,
        context: VerificationContext,
        is_live: bool,
        method: VerificationMethod,
        *,
        result: Optional[EvaluationResult] = None,
        reason: Optional[str] = None,
    ) -> None:
        context.is_live = is_live
        context.method = method
        context.failure_reason = reason
        logger.info(
            "%s Verification %s complete via %s%s",
            "✅" if is_live else "❌",
            context.session_id[:8],
            method.value,
            f" ({reason})" if reason else "",
        )
        if (
            not is_live
            and method is VerificationMethod.DEPTH
            and result is not None
            and result.verdict is Verdict.INSUFFICIENT_DATA
        ):
            self.result_log.record_insufficient_data(context.session_id, result.sample_count)
        else:
            self.result_log.record_completed(
                context.session_id,
                is_live=is_live,
                method=method,
                result=result,
                face_detected=context.face_seen,
                failure_reason=reason,
            )
        await self._advance_phase(
            SessionPhase.COMPLETE,
            data={"session_id": context.session_id, "is_live": is_live, "method": method.value},
            error=reason,
        )

    def _status_locked(self) -> Dict[str, Any]:
        context = self._context
        status: Dict[str, Any] = {
            "phase": self._phase.value,
            "personalized": self._engine.thresholds is not None,
            "enrollment": {
                "state": self._enrollment.state.value,
                "pose": self._enrollment.current_pose.value if self._enrollment.current_pose else None,
                "failure_reason": self._enrollment.failure_reason,
            },
        }
        if context is not None:
            status.update(
                session_id=context.session_id,
                is_live=context.is_live,
                method=context.method.value if context.method else None,
                failure_reason=context.failure_reason,
                consecutive_live=context.consecutive_live,
                frames_evaluated=context.frames_evaluated,
                last_result=context.last_result.as_dict() if context.last_result else None,
            )
        session = self._challenge.session
        if session is not None and self._phase in (SessionPhase.CHALLENGE, SessionPhase.COMPLETE):
            status["challenge"] = {
                "direction": session.direction.value,
                "phase": session.phase.value,
                "status": session.status.value,
                "failure_reason": session.failure_reason,
            }
        return status

    async def _expiry_loop(self) -> None:
        while True:
            await asyncio.sleep(self._EXPIRY_TICK_SECONDS)
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Expiry tick failed: %s", e)

    async def _broadcast(self, event: ControllerEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest event when a queue is full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)

    async def _broadcast_enrollment(self) -> None:
        await self._broadcast(
            ControllerEvent(
                type="enrollment",
                phase=self._phase,
                data=self._status_locked()["enrollment"],
                error=self._enrollment.failure_reason,
            )
        )

    async def _advance_phase(
        self,
        phase: SessionPhase,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        logger.info("Phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        await self._broadcast(ControllerEvent(type="state", data=data or {}, phase=phase, error=error))


__all__ = ["SessionManager", "VerificationContext"]
