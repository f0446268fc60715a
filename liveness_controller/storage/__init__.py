"""Persistence for calibrated thresholds and verification history."""
from .result_log import ResultLog, VerificationRecord
from .threshold_store import ThresholdStore

__all__ = ["ResultLog", "ThresholdStore", "VerificationRecord"]
