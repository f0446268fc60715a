"""Bounded on-disk history of finished verification sessions, most recent first."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..analysis.engine import CheckOutcome, EvaluationResult
from ..state import VerificationMethod

logger = logging.getLogger(__name__)


class VerificationRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_live: bool
    method: VerificationMethod

    depth_mean: float = 0.0
    depth_std_dev: float = 0.0
    depth_range: float = 0.0
    edge_std_dev: float = 0.0
    center_std_dev: float = 0.0
    gradient_mean: float = 0.0
    gradient_std_dev: float = 0.0

    checks: Dict[str, bool] = Field(default_factory=dict)
    checks_passed: int = 0
    total_checks: int = CheckOutcome.TOTAL_CHECKS
    sample_count: int = 0
    face_detected: bool = False
    failure_reason: Optional[str] = None

    def failed_checks(self) -> List[str]:
        return [name for name, passed in self.checks.items() if not passed]


_RECORDS = TypeAdapter(List[VerificationRecord])


class ResultLog:
    def __init__(self, path: Path, capacity: int = 20) -> None:
        self.path = Path(path)
        self.capacity = max(int(capacity), 1)
        self._records: List[VerificationRecord] = self._load()
        logger.info("Result log initialised with %d saved results", len(self._records))

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, record: VerificationRecord) -> bool:
        if self.has_result(record.session_id):
            logger.warning("Result for session %s already stored; ignoring duplicate", record.session_id[:8])
            return False
        self._records.insert(0, record)
        del self._records[self.capacity:]
        self._save()
        logger.info(
            "Stored result for session %s: %s via %s (%d/%d checks, failed: %s)",
            record.session_id[:8],
            "LIVE" if record.is_live else "NOT LIVE",
            record.method.value,
            record.checks_passed,
            record.total_checks,
            ", ".join(record.failed_checks()) or "none",
        )
        return True

    def record_completed(
        self,
        session_id: str,
        *,
        is_live: bool,
        method: VerificationMethod,
        result: Optional[EvaluationResult] = None,
        face_detected: bool = True,
        failure_reason: Optional[str] = None,
    ) -> bool:
        fields: Dict[str, object] = {}
        if result is not None:
            fields["sample_count"] = result.sample_count
            fields["checks_passed"] = result.checks_passed
            if result.statistics is not None:
                stats = result.statistics
                fields.update(
                    depth_mean=stats.mean,
                    depth_std_dev=stats.std_dev,
                    depth_range=stats.range,
                    edge_std_dev=stats.edge_std_dev,
                    center_std_dev=stats.center_std_dev,
                    gradient_mean=stats.gradient_mean,
                    gradient_std_dev=stats.gradient_std_dev,
                )
            if result.outcome is not None:
                fields["checks"] = result.outcome.checks()
        return self.record(
            VerificationRecord(
                session_id=session_id,
                is_live=is_live,
                method=method,
                face_detected=face_detected,
                failure_reason=failure_reason,
                **fields,
            )
        )

    def record_insufficient_data(self, session_id: str, sample_count: int) -> bool:
        logger.warning("Insufficient depth data for session %s: %d samples", session_id[:8], sample_count)
        return self.record(
            VerificationRecord(
                session_id=session_id,
                is_live=False,
                method=VerificationMethod.DEPTH,
                sample_count=sample_count,
                failure_reason="insufficient_data",
            )
        )

    def record_manual(self, session_id: str, is_live: bool) -> bool:
        return self.record(
            VerificationRecord(
                session_id=session_id,
                is_live=is_live,
                method=VerificationMethod.MANUAL,
                checks_passed=CheckOutcome.TOTAL_CHECKS if is_live else 0,
            )
        )

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def all(self) -> List[VerificationRecord]:
        return list(self._records)

    def last(self) -> Optional[VerificationRecord]:
        return self._records[0] if self._records else None

    def has_result(self, session_id: str) -> bool:
        return any(record.session_id == session_id for record in self._records)

    def clear(self) -> None:
        self._records = []
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.info("All test results cleared")

    def export_json(self) -> str:
        return _RECORDS.dump_json(self._records, indent=2).decode("utf-8")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[VerificationRecord]:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return []
        try:
            records = _RECORDS.validate_json(raw)
        except ValidationError as exc:
            logger.error("Error loading results from %s (%d errors); clearing saved data", self.path, exc.error_count())
            self.path.unlink(missing_ok=True)
            return []
        records.sort(key=lambda record: record.timestamp, reverse=True)
        return records[: self.capacity]

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_bytes(_RECORDS.dump_json(self._records))
        except OSError as exc:
            logger.error("Error saving results to %s: %s", self.path, exc)


__all__ = ["VerificationRecord", "ResultLog"]
