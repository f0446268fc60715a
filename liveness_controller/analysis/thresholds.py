"""Decision bounds consulted by the liveness engine."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class DepthBounds(BaseModel):
    """Bounds for the statistical checks; the defaults are the fixed fallback values."""

    model_config = ConfigDict(frozen=True)

    min_mean_depth: float = Field(0.2, description="Closest acceptable mean face depth (meters)")
    max_mean_depth: float = Field(3.0, description="Farthest acceptable mean face depth (meters)")
    min_std_dev: float = Field(0.02, description="Minimum overall depth standard deviation (meters)")
    min_range: float = Field(0.05, description="Minimum overall depth range (meters)")
    min_edge_std_dev: float = Field(0.02, description="Minimum border-cell standard deviation (meters)")
    min_center_std_dev: float = Field(0.005, description="Minimum inner 6x6 standard deviation (meters)")
    max_gradient_mean: float = Field(0.5, description="Maximum mean neighbour gradient (meters)")
    min_gradient_std_dev: float = Field(0.001, description="Minimum neighbour gradient standard deviation (meters)")

    def is_finite(self) -> bool:
        return all(math.isfinite(value) for value in self.bound_values())

    def bound_values(self) -> tuple[float, ...]:
        return (
            self.min_mean_depth,
            self.max_mean_depth,
            self.min_std_dev,
            self.min_range,
            self.min_edge_std_dev,
            self.min_center_std_dev,
            self.max_gradient_mean,
            self.min_gradient_std_dev,
        )


class PersonalizedThresholds(DepthBounds):
    """Per-user bounds produced by enrollment; replaced wholesale, never edited."""

    calculation_date: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the thresholds were calculated",
    )

    def same_bounds(self, other: DepthBounds) -> bool:
        return self.bound_values() == other.bound_values()

    def log_summary(self) -> None:
        logger.info(
            "Personalized thresholds (%s)\n"
            "  mean depth range : [%.3f - %.3f]\n"
            "  min std dev      : %.4f\n"
            "  min range        : %.4f\n"
            "  min edge std dev : %.4f\n"
            "  min center std   : %.4f\n"
            "  max gradient mean: %.4f\n"
            "  min gradient std : %.4f",
            self.calculation_date.isoformat(),
            self.min_mean_depth,
            self.max_mean_depth,
            self.min_std_dev,
            self.min_range,
            self.min_edge_std_dev,
            self.min_center_std_dev,
            self.max_gradient_mean,
            self.min_gradient_std_dev,
        )


DEFAULT_BOUNDS = DepthBounds()


__all__ = ["DepthBounds", "PersonalizedThresholds", "DEFAULT_BOUNDS"]
