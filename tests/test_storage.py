"""
Unit tests for threshold persistence and the result log
"""
import json
import math

import pytest

from conftest import face_grid
from liveness_controller.analysis.engine import LivenessEngine
from liveness_controller.analysis.thresholds import PersonalizedThresholds
from liveness_controller.errors import ThresholdStoreError
from liveness_controller.state import VerificationMethod
from liveness_controller.storage import ResultLog, ThresholdStore


def live_result():
    engine = LivenessEngine()
    engine.reset()
    return engine.evaluate(face_grid(), timestamp=1.0)


class TestThresholdStore:
    """Test saving and loading calibrated thresholds"""

    def test_round_trip(self, tmp_path):
        store = ThresholdStore(tmp_path / "thresholds.json")
        thresholds = PersonalizedThresholds(min_mean_depth=0.45, max_mean_depth=0.7, min_std_dev=0.018)
        store.save(thresholds)

        assert store.load() == thresholds

    def test_missing_file_means_defaults(self, tmp_path):
        assert ThresholdStore(tmp_path / "absent.json").load() is None

    def test_corrupt_file_is_cleared(self, tmp_path):
        path = tmp_path / "thresholds.json"
        path.write_text("{not json", encoding="utf-8")

        assert ThresholdStore(path).load() is None
        assert not path.exists()

    def test_non_finite_thresholds_are_cleared(self, tmp_path):
        path = tmp_path / "thresholds.json"
        store = ThresholdStore(path)
        store.save(PersonalizedThresholds(min_range=math.inf))

        assert store.load() is None
        assert not path.exists()

    def test_unwritable_location(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("", encoding="utf-8")
        store = ThresholdStore(blocker / "thresholds.json")

        with pytest.raises(ThresholdStoreError):
            store.save(PersonalizedThresholds())

    def test_clear(self, tmp_path):
        store = ThresholdStore(tmp_path / "thresholds.json")
        store.save(PersonalizedThresholds())
        store.clear()
        store.clear()

        assert store.load() is None


class TestResultLog:
    """Test the bounded verification history"""

    def test_records_are_most_recent_first(self, tmp_path):
        log = ResultLog(tmp_path / "results.json")
        log.record_completed("first", is_live=True, method=VerificationMethod.DEPTH)
        log.record_completed("second", is_live=False, method=VerificationMethod.CHALLENGE, failure_reason="timeout")

        assert [record.session_id for record in log.all()] == ["second", "first"]
        assert log.last().failure_reason == "timeout"

    def test_capacity_drops_oldest(self, tmp_path):
        log = ResultLog(tmp_path / "results.json", capacity=3)
        for i in range(5):
            log.record_completed(f"session-{i}", is_live=True, method=VerificationMethod.DEPTH)

        assert [record.session_id for record in log.all()] == ["session-4", "session-3", "session-2"]

    def test_duplicate_session_ignored(self, tmp_path):
        log = ResultLog(tmp_path / "results.json")

        assert log.record_completed("abc", is_live=True, method=VerificationMethod.DEPTH)
        assert not log.record_manual("abc", False)
        assert len(log.all()) == 1

    def test_statistics_and_checks_are_copied(self, tmp_path):
        result = live_result()
        log = ResultLog(tmp_path / "results.json")
        log.record_completed("abc", is_live=True, method=VerificationMethod.DEPTH, result=result)
        record = log.last()

        assert record.depth_mean == pytest.approx(result.statistics.mean)
        assert record.checks_passed == result.checks_passed
        assert record.total_checks == 9
        assert record.sample_count == 100
        assert record.failed_checks() == result.outcome.failed_checks()

    def test_insufficient_data_record(self, tmp_path):
        log = ResultLog(tmp_path / "results.json")
        log.record_insufficient_data("abc", 12)
        record = log.last()

        assert not record.is_live
        assert record.sample_count == 12
        assert record.failure_reason == "insufficient_data"

    def test_manual_record(self, tmp_path):
        log = ResultLog(tmp_path / "results.json")
        log.record_manual("abc", True)

        assert log.last().method is VerificationMethod.MANUAL
        assert log.last().checks_passed == 9

    def test_history_survives_restart(self, tmp_path):
        path = tmp_path / "results.json"
        ResultLog(path).record_completed("abc", is_live=True, method=VerificationMethod.DEPTH, result=live_result())

        reloaded = ResultLog(path)
        assert reloaded.has_result("abc")
        assert reloaded.last().checks

    def test_corrupt_history_is_discarded(self, tmp_path):
        path = tmp_path / "results.json"
        path.write_text('[{"session_id": 5}]', encoding="utf-8")

        assert ResultLog(path).all() == []
        assert not path.exists()

    def test_export_and_clear(self, tmp_path):
        log = ResultLog(tmp_path / "results.json")
        log.record_completed("abc", is_live=False, method=VerificationMethod.DEFAULT_BOUNDS_RETRY)

        exported = json.loads(log.export_json())
        assert exported[0]["session_id"] == "abc"
        assert exported[0]["method"] == "default_bounds_retry"

        log.clear()
        assert log.all() == []
        assert not (tmp_path / "results.json").exists()
