"""Enrollment pose sequence feeding the threshold calibrator."""
from __future__ import annotations

import logging
import time
from typing import Optional, Tuple

from ..config import CalibrationSettings
from ..errors import SessionStateError
from ..state import EnrollmentState, Pose
from .calibration import EnrollmentCaptureSet, ThresholdCalibrator
from .features import MIN_VALID_POINTS, DepthGrid, FrameStatistics, extract_features
from .thresholds import PersonalizedThresholds

logger = logging.getLogger(__name__)


class EnrollmentFlow:
    """
    Walks the user through Center, Closer and Further captures.

    Closer must bring the face at least ``closer_delta_m`` nearer than Center;
    Further must end at least ``further_delta_m`` beyond Closer and behind
    Center. A pose whose average depth misses its target is discarded and
    captured again; a pose that cannot be completed within ``pose_timeout_s``
    fails the enrollment.
    """

    SEQUENCE: Tuple[Pose, ...] = (Pose.CENTER, Pose.CLOSER, Pose.FURTHER)

    def __init__(
        self,
        settings: Optional[CalibrationSettings] = None,
        *,
        calibrator: Optional[ThresholdCalibrator] = None,
        min_valid_points: int = MIN_VALID_POINTS,
    ) -> None:
        self.settings = settings or CalibrationSettings()
        self.calibrator = calibrator or ThresholdCalibrator(self.settings)
        self.min_valid_points = min_valid_points
        self.state = EnrollmentState.NOT_ENROLLED
        self.capture_set = EnrollmentCaptureSet()
        self.thresholds: Optional[PersonalizedThresholds] = None
        self.failure_reason: Optional[str] = None
        self._pose_index = -1
        self._pose_started_at = 0.0

    @property
    def current_pose(self) -> Optional[Pose]:
        if self.state is not EnrollmentState.CAPTURING:
            return None
        return self.SEQUENCE[self._pose_index]

    @property
    def active(self) -> bool:
        return self.state in (EnrollmentState.CAPTURING, EnrollmentState.CALCULATING)

    def start(self, now: Optional[float] = None) -> None:
        if self.active:
            raise SessionStateError(f"enrollment already in progress ({self.state.value})")
        self.capture_set = EnrollmentCaptureSet()
        self.thresholds = None
        self.failure_reason = None
        self._pose_index = -1
        logger.info("Enrollment sequence started")
        self._next_pose(time.monotonic() if now is None else now)

    def cancel(self) -> None:
        if self.active:
            self._fail("cancelled")
            logger.info("Enrollment sequence cancelled")

    def expire(self, now: Optional[float] = None) -> EnrollmentState:
        now = time.monotonic() if now is None else now
        if self.state is EnrollmentState.CAPTURING and now - self._pose_started_at >= self.settings.pose_timeout_s:
            self._fail(f"timeout capturing {self.current_pose.value}")
        return self.state

    def submit_frame(self, depth_grid: DepthGrid, now: Optional[float] = None) -> EnrollmentState:
        """Add one depth frame for the current pose; frames without enough depth are skipped."""
        now = time.monotonic() if now is None else now
        if self.expire(now) is not EnrollmentState.CAPTURING:
            return self._require_capturing()
        extracted = extract_features(depth_grid, min_valid_points=self.min_valid_points)
        if extracted.insufficient:
            logger.debug("Enrollment frame skipped: %d valid points", extracted.valid_count)
            return self.state
        return self.submit_statistics(extracted.statistics, now)

    def submit_statistics(self, stats: FrameStatistics, now: Optional[float] = None) -> EnrollmentState:
        now = time.monotonic() if now is None else now
        if self.expire(now) is not EnrollmentState.CAPTURING:
            return self._require_capturing()

        pose = self.current_pose
        captured = self.capture_set.add(pose, stats)
        logger.debug("Enrollment frame %d/%d for %s", captured, self.settings.frames_per_pose, pose.value)
        if captured < self.settings.frames_per_pose:
            return self.state

        if self._pose_on_target(pose):
            self._next_pose(now)
        else:
            self.capture_set.clear(pose)
        return self.state

    def _require_capturing(self) -> EnrollmentState:
        if self.state is EnrollmentState.FAILED:
            return self.state
        raise SessionStateError(f"enrollment frame received while {self.state.value}")

    def _pose_on_target(self, pose: Pose) -> bool:
        average = self.capture_set.average_mean_depth(pose)
        center = self.capture_set.average_mean_depth(Pose.CENTER)
        closer = self.capture_set.average_mean_depth(Pose.CLOSER)

        if pose is Pose.CLOSER:
            delta = center - average
            if delta < self.settings.closer_delta_m:
                logger.warning(
                    "Insufficient closer movement (required >= %.2fm, actual %.3fm); capturing again",
                    self.settings.closer_delta_m,
                    delta,
                )
                return False
        elif pose is Pose.FURTHER:
            delta = average - closer
            if delta < self.settings.further_delta_m or average <= center:
                logger.warning(
                    "Insufficient further movement (close->far %.3fm, required >= %.2fm, "
                    "further %.3fm vs center %.3fm); capturing again",
                    delta,
                    self.settings.further_delta_m,
                    average,
                    center,
                )
                return False
        logger.info("Pose %s captured (average depth %.3fm)", pose.value, average)
        return True

    def _next_pose(self, now: float) -> None:
        self._pose_index += 1
        if self._pose_index >= len(self.SEQUENCE):
            self._calculate()
            return
        self.state = EnrollmentState.CAPTURING
        self._pose_started_at = now
        logger.info("Enrollment capturing pose: %s", self.SEQUENCE[self._pose_index].value)

    def _calculate(self) -> None:
        self.state = EnrollmentState.CALCULATING
        thresholds = self.calibrator.calibrate(self.capture_set)
        if thresholds is None:
            self._fail("calibration failed")
            return
        self.thresholds = thresholds
        self.state = EnrollmentState.COMPLETE
        logger.info("Enrollment complete")

    def _fail(self, reason: str) -> None:
        self.state = EnrollmentState.FAILED
        self.failure_reason = reason
        logger.warning("Enrollment failed: %s", reason)


__all__ = ["EnrollmentFlow"]
