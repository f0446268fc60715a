"""
Liveness decision engine.

Nine checks run on every frame. Two are mandatory (realistic depth, center
variation); of the remaining seven at least ``required_optional_checks`` must
pass. Temporal history lives in an explicit ``TemporalState`` value that
``evaluate_frame`` takes and returns, so a session is just the latest state.
``LivenessEngine`` wraps that loop for callers that prefer an object.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import EngineSettings
from ..errors import SampleOrderError, SessionStateError
from ..state import Verdict
from .features import DepthGrid, ExtractedFrame, FrameStatistics, extract_features
from .thresholds import DEFAULT_BOUNDS, DepthBounds, PersonalizedThresholds

logger = logging.getLogger(__name__)

_EPSILON = 1e-12


# ============================================================
# Session state
# ============================================================

@dataclass(frozen=True, eq=False)
class GradientSnapshot:
    captured_at: float
    pattern: np.ndarray


@dataclass(frozen=True)
class TemporalState:
    """History carried between frames of one verification session."""

    previous_mean: Optional[float] = None
    gradient_history: Tuple[GradientSnapshot, ...] = ()
    last_sample_count: Optional[int] = None
    last_timestamp: Optional[float] = None

    def check_order(self, timestamp: float) -> None:
        if self.last_timestamp is not None and timestamp <= self.last_timestamp:
            raise SampleOrderError(self.last_timestamp, timestamp)

    def record_sample_count(self, sample_count: int, timestamp: float) -> "TemporalState":
        return replace(self, last_sample_count=sample_count, last_timestamp=timestamp)

    def advance(
        self,
        *,
        mean: float,
        pattern: np.ndarray,
        timestamp: float,
        sample_count: int,
        capacity: int,
    ) -> "TemporalState":
        history = self.gradient_history + (GradientSnapshot(captured_at=timestamp, pattern=pattern),)
        if len(history) > capacity:
            history = history[-capacity:]
        return TemporalState(
            previous_mean=mean,
            gradient_history=history,
            last_sample_count=sample_count,
            last_timestamp=timestamp,
        )


# ============================================================
# Results
# ============================================================

@dataclass(frozen=True)
class CheckOutcome:
    realistic_depth: bool
    center_variation: bool
    edge_variation: bool
    depth_profile: bool
    depth_variation: bool
    natural_distribution: bool
    gradient_pattern: bool
    temporal_consistency: bool
    natural_micro_movements: bool
    statistics: FrameStatistics

    MANDATORY: ClassVar[Tuple[str, ...]] = ("realistic_depth", "center_variation")
    OPTIONAL: ClassVar[Tuple[str, ...]] = (
        "edge_variation",
        "depth_profile",
        "depth_variation",
        "natural_distribution",
        "gradient_pattern",
        "temporal_consistency",
        "natural_micro_movements",
    )
    TOTAL_CHECKS: ClassVar[int] = 9

    @property
    def mandatory_passed(self) -> bool:
        return all(getattr(self, name) for name in self.MANDATORY)

    @property
    def optional_passed(self) -> int:
        return sum(1 for name in self.OPTIONAL if getattr(self, name))

    @property
    def checks_passed(self) -> int:
        return sum(1 for name in self.MANDATORY + self.OPTIONAL if getattr(self, name))

    def checks(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in self.MANDATORY + self.OPTIONAL}

    def failed_checks(self) -> List[str]:
        return [name for name, passed in self.checks().items() if not passed]


@dataclass(frozen=True)
class EvaluationResult:
    """What one frame produced; safe to log or serialise."""

    verdict: Verdict
    checks_passed: int
    sample_count: int
    timestamp: float
    statistics: Optional[FrameStatistics] = None
    outcome: Optional[CheckOutcome] = field(default=None, repr=False)
    personalized: bool = False

    @property
    def is_live(self) -> bool:
        return self.verdict is Verdict.LIVE

    def as_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "checks_passed": self.checks_passed,
            "sample_count": self.sample_count,
            "timestamp": self.timestamp,
            "personalized": self.personalized,
            "statistics": asdict(self.statistics) if self.statistics else None,
            "checks": self.outcome.checks() if self.outcome else None,
        }


# ============================================================
# Individual checks
# ============================================================

def has_realistic_depth(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    return bounds.min_mean_depth <= stats.mean <= bounds.max_mean_depth


def has_center_variation(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    # Photos and screens read 0.001-0.004 here, real faces around 0.011
    return stats.center_std_dev >= bounds.min_center_std_dev


def has_edge_variation(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    return stats.edge_std_dev >= bounds.min_edge_std_dev


def has_depth_profile(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    return stats.std_dev >= bounds.min_std_dev or stats.range >= bounds.min_range


def has_depth_variation(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    return stats.std_dev >= bounds.min_std_dev and stats.range >= bounds.min_range


def has_gradient_pattern(stats: FrameStatistics, bounds: DepthBounds) -> bool:
    return stats.gradient_std_dev >= bounds.min_gradient_std_dev and stats.gradient_mean <= bounds.max_gradient_mean


def has_natural_distribution(values: np.ndarray, ratio: float = 0.3) -> bool:
    """False when the sorted depths climb in near-even steps, as a tilted flat surface does."""
    steps = np.diff(np.sort(values))
    if steps.size == 0:
        return False
    average_step = float(np.mean(steps))
    if average_step <= _EPSILON:
        # Every depth identical: as linear as it gets
        return False
    step_std = float(np.std(steps))
    return not step_std < average_step * ratio


def has_temporal_consistency(
    mean: float,
    previous_mean: Optional[float],
    *,
    min_delta: float = 0.0005,
    max_delta: float = 1.5,
) -> bool:
    if previous_mean is None:
        # First frame of a session is never consistent
        return False
    change = abs(mean - previous_mean)
    too_static = change < min_delta
    too_erratic = change > max_delta
    logger.debug(
        "Temporal check: delta_mean=%.6f too_static=%s too_erratic=%s",
        change,
        too_static,
        too_erratic,
    )
    return not (too_static or too_erratic)


def micro_movement_variances(history: Sequence[GradientSnapshot]) -> List[float]:
    variances: List[float] = []
    for previous, current in zip(history, history[1:]):
        differences = np.abs(current.pattern - previous.pattern)
        differences = differences[~np.isnan(differences)]
        if differences.size == 0:
            continue
        variances.append(float(np.var(differences)))
    return variances


def has_natural_micro_movements(
    history: Sequence[GradientSnapshot],
    *,
    min_span_s: float = 0.5,
    ratio: float = 0.5,
) -> bool:
    """Masks move as one rigid piece; real skin shifts unevenly from frame to frame."""
    if len(history) < 3:
        return True
    span = history[-1].captured_at - history[0].captured_at
    if span < min_span_s:
        return True

    variances = micro_movement_variances(history)
    if not variances:
        return True

    mean_variance = float(np.mean(variances))
    if mean_variance <= _EPSILON:
        return False
    variance_std = float(np.std(variances))
    logger.debug(
        "Micro-movements: mean_variance=%.3e std=%.3e span=%.2fs patterns=%d",
        mean_variance,
        variance_std,
        span,
        len(history),
    )
    return not variance_std < mean_variance * ratio


# ============================================================
# Frame evaluation
# ============================================================

def run_checks(
    extracted: ExtractedFrame,
    state: TemporalState,
    bounds: DepthBounds,
    settings: EngineSettings,
) -> CheckOutcome:
    stats = extracted.statistics
    sample = extracted.sample
    if stats is None or sample is None:
        raise ValueError("checks need a frame with sufficient depth data")

    return CheckOutcome(
        realistic_depth=has_realistic_depth(stats, bounds),
        center_variation=has_center_variation(stats, bounds),
        edge_variation=has_edge_variation(stats, bounds),
        depth_profile=has_depth_profile(stats, bounds),
        depth_variation=has_depth_variation(stats, bounds),
        natural_distribution=has_natural_distribution(sample.values, settings.linear_step_ratio),
        gradient_pattern=has_gradient_pattern(stats, bounds),
        temporal_consistency=has_temporal_consistency(
            stats.mean,
            state.previous_mean,
            min_delta=settings.temporal_min_delta_m,
            max_delta=settings.temporal_max_delta_m,
        ),
        natural_micro_movements=has_natural_micro_movements(
            state.gradient_history,
            min_span_s=settings.micro_movement_min_span_s,
            ratio=settings.micro_movement_ratio,
        ),
        statistics=stats,
    )


def decide(outcome: CheckOutcome, required_optional: int = 4) -> Verdict:
    if outcome.mandatory_passed and outcome.optional_passed >= required_optional:
        return Verdict.LIVE
    return Verdict.NOT_LIVE


def evaluate_frame(
    extracted: ExtractedFrame,
    state: TemporalState,
    *,
    timestamp: float,
    bounds: DepthBounds = DEFAULT_BOUNDS,
    settings: Optional[EngineSettings] = None,
) -> Tuple[EvaluationResult, TemporalState]:
    """Evaluate one frame against ``state`` and return the verdict with the next state."""
    settings = settings or EngineSettings()
    state.check_order(timestamp)
    personalized = isinstance(bounds, PersonalizedThresholds)

    if extracted.insufficient:
        logger.debug("Insufficient depth data: %d valid points", extracted.valid_count)
        result = EvaluationResult(
            verdict=Verdict.INSUFFICIENT_DATA,
            checks_passed=0,
            sample_count=extracted.valid_count,
            timestamp=timestamp,
            personalized=personalized,
        )
        return result, state.record_sample_count(extracted.valid_count, timestamp)

    outcome = run_checks(extracted, state, bounds, settings)
    verdict = decide(outcome, settings.required_optional_checks)
    # History records what was observed, whatever the verdict
    next_state = state.advance(
        mean=outcome.statistics.mean,
        pattern=extracted.sample.gradient_pattern,
        timestamp=timestamp,
        sample_count=extracted.valid_count,
        capacity=settings.gradient_history_size,
    )
    result = EvaluationResult(
        verdict=verdict,
        checks_passed=outcome.checks_passed,
        sample_count=extracted.valid_count,
        timestamp=timestamp,
        statistics=outcome.statistics,
        outcome=outcome,
        personalized=personalized,
    )
    return result, next_state


class LivenessEngine:
    """Stateful convenience wrapper: one instance per stream of frames."""

    def __init__(
        self,
        *,
        thresholds: Optional[PersonalizedThresholds] = None,
        defaults: DepthBounds = DEFAULT_BOUNDS,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.thresholds = thresholds
        self.defaults = defaults
        self.settings = settings or EngineSettings()
        self._state: Optional[TemporalState] = None

    @property
    def active_bounds(self) -> DepthBounds:
        return self.thresholds if self.thresholds is not None else self.defaults

    @property
    def state(self) -> Optional[TemporalState]:
        return self._state

    def reset(self) -> None:
        """Start a new session; required before the first ``evaluate``."""
        self._state = TemporalState()
        logger.debug("Liveness engine state reset")

    def evaluate(self, depth_grid: DepthGrid, timestamp: Optional[float] = None) -> EvaluationResult:
        if self._state is None:
            raise SessionStateError("LivenessEngine.evaluate called before reset()")
        if timestamp is None:
            timestamp = time.monotonic()
        extracted = extract_features(depth_grid, min_valid_points=self.settings.min_valid_points)
        result, self._state = evaluate_frame(
            extracted,
            self._state,
            timestamp=timestamp,
            bounds=self.active_bounds,
            settings=self.settings,
        )
        return result

    def evaluate_with_defaults(self, depth_grid: DepthGrid, timestamp: Optional[float] = None) -> EvaluationResult:
        """One-off check of a grid against the default bounds on a fresh history."""
        if timestamp is None:
            timestamp = time.monotonic()
        extracted = extract_features(depth_grid, min_valid_points=self.settings.min_valid_points)
        result, _ = evaluate_frame(
            extracted,
            TemporalState(),
            timestamp=timestamp,
            bounds=self.defaults,
            settings=self.settings,
        )
        return result


__all__ = [
    "GradientSnapshot",
    "TemporalState",
    "CheckOutcome",
    "EvaluationResult",
    "has_realistic_depth",
    "has_center_variation",
    "has_edge_variation",
    "has_depth_profile",
    "has_depth_variation",
    "has_gradient_pattern",
    "has_natural_distribution",
    "has_temporal_consistency",
    "has_natural_micro_movements",
    "micro_movement_variances",
    "run_checks",
    "decide",
    "evaluate_frame",
    "LivenessEngine",
]
