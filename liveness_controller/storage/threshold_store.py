"""File-backed persistence for calibrated thresholds."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..analysis.thresholds import PersonalizedThresholds
from ..errors import ThresholdStoreError

logger = logging.getLogger(__name__)


class ThresholdStore:
    """Keeps one ``PersonalizedThresholds`` record as JSON; a missing file means defaults."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def save(self, thresholds: PersonalizedThresholds) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(thresholds.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Failed to save user thresholds to %s: %s", self.path, exc)
            raise ThresholdStoreError(f"could not write {self.path}") from exc
        logger.info("Saved user thresholds to %s", self.path)

    def load(self) -> Optional[PersonalizedThresholds]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No saved user thresholds found at %s", self.path)
            return None
        except OSError as exc:
            logger.error("Failed to read user thresholds from %s: %s", self.path, exc)
            return None

        try:
            thresholds = PersonalizedThresholds.model_validate_json(raw)
        except ValidationError as exc:
            logger.error("Invalid user thresholds in %s (%s); clearing saved data", self.path, exc.error_count())
            self.clear()
            return None

        if not thresholds.is_finite():
            logger.error("Saved user thresholds in %s are not finite; clearing saved data", self.path)
            self.clear()
            return None

        logger.info("Loaded user thresholds from %s", self.path)
        thresholds.log_summary()
        return thresholds

    def clear(self) -> None:
        try:
            self.path.unlink()
            logger.info("Cleared saved user thresholds at %s", self.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove user thresholds at %s: %s", self.path, exc)


__all__ = ["ThresholdStore"]
