"""Per-user threshold calibration from enrollment captures."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..config import CalibrationSettings
from ..state import Pose
from .features import FrameStatistics
from .thresholds import PersonalizedThresholds

logger = logging.getLogger(__name__)


@dataclass
class EnrollmentCaptureSet:
    """Statistics gathered per enrollment pose, in capture order."""

    samples: Dict[Pose, List[FrameStatistics]] = field(default_factory=dict)

    def add(self, pose: Pose, stats: FrameStatistics) -> int:
        captured = self.samples.setdefault(pose, [])
        captured.append(stats)
        return len(captured)

    def extend(self, pose: Pose, stats: Iterable[FrameStatistics]) -> int:
        captured = self.samples.setdefault(pose, [])
        captured.extend(stats)
        return len(captured)

    def get(self, pose: Pose) -> List[FrameStatistics]:
        return list(self.samples.get(pose, ()))

    def count(self, pose: Pose) -> int:
        return len(self.samples.get(pose, ()))

    def clear(self, pose: Optional[Pose] = None) -> None:
        if pose is None:
            self.samples.clear()
        else:
            self.samples.pop(pose, None)

    def average_mean_depth(self, pose: Pose) -> Optional[float]:
        captured = self.samples.get(pose)
        if not captured:
            return None
        return float(np.mean([stats.mean for stats in captured]))


def _mean_and_std(values: List[float]) -> Tuple[float, float]:
    array = np.asarray(values, dtype=np.float64)
    return float(np.mean(array)), float(np.std(array))


class ThresholdCalibrator:
    """
    Turns the Center-pose captures into personalised bounds: ``mean - k*std``
    for each minimum and ``mean + k*std`` for each maximum. Other poses are
    kept in the capture set but do not influence the bounds, since off-axis
    depth profiles widen them in unhelpful directions.

    Returns None on failure; choosing the fallback bounds is the caller's job.
    """

    def __init__(self, settings: Optional[CalibrationSettings] = None) -> None:
        self.settings = settings or CalibrationSettings()

    def calibrate(
        self,
        capture_set: EnrollmentCaptureSet,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[PersonalizedThresholds]:
        center = capture_set.get(Pose.CENTER)
        if len(center) < self.settings.min_center_samples:
            logger.warning(
                "Calibration failed: %d Center samples, need at least %d",
                len(center),
                self.settings.min_center_samples,
            )
            return None

        k = self.settings.k_multiplier

        def lower(attribute: str) -> float:
            mean, std = _mean_and_std([getattr(stats, attribute) for stats in center])
            bound = mean - k * std
            # max() would hide a NaN bound
            return max(0.0, bound) if math.isfinite(bound) else bound

        def upper(attribute: str) -> float:
            mean, std = _mean_and_std([getattr(stats, attribute) for stats in center])
            return mean + k * std

        bounds = {
            "min_mean_depth": lower("mean"),
            "max_mean_depth": upper("mean"),
            "min_std_dev": lower("std_dev"),
            "min_range": lower("range"),
            "min_edge_std_dev": lower("edge_std_dev"),
            "min_center_std_dev": lower("center_std_dev"),
            "max_gradient_mean": upper("gradient_mean"),
            "min_gradient_std_dev": lower("gradient_std_dev"),
        }
        non_finite = [name for name, value in bounds.items() if not math.isfinite(value)]
        if non_finite:
            logger.warning("Calibration failed: non-finite bounds for %s", ", ".join(non_finite))
            return None

        thresholds = PersonalizedThresholds(
            calculation_date=now or datetime.now(timezone.utc),
            **bounds,
        )
        logger.info(
            "Calibrated thresholds from %d Center samples (poses captured: %s)",
            len(center),
            ", ".join(f"{pose.value}={len(stats)}" for pose, stats in capture_set.samples.items()),
        )
        thresholds.log_summary()
        return thresholds


__all__ = ["EnrollmentCaptureSet", "ThresholdCalibrator"]
