"""Logging bootstrap for the liveness controller."""
from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

ANALYSIS_LOGGER = "liveness_controller.analysis"


def build_logging_config(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 14,
    analysis_level: Optional[str] = None,
) -> Dict[str, Any]:
    """dictConfig payload; handlers pass everything and the loggers do the filtering."""

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[1] / "logs"
    log_dir = Path(log_dir).expanduser()

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
            "runtime_file": {
                "class": "logging.handlers.TimedRotatingFileHandler",
                "formatter": "default",
                "filename": str(log_dir / "liveness-runtime.log"),
                "when": "midnight",
                "backupCount": max(int(retention_days), 1),
                "utc": True,
                "delay": True,
                "encoding": "utf-8",
            },
        },
        "loggers": {
            # Per-frame check and temporal diagnostics are emitted at DEBUG here
            ANALYSIS_LOGGER: {"level": analysis_level or level},
            "uvicorn.access": {"level": "WARNING"},
        },
        "root": {"level": level, "handlers": ["console", "runtime_file"]},
    }


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    retention_days: int = 14,
    analysis_level: Optional[str] = None,
) -> None:
    config = build_logging_config(level, log_dir, retention_days, analysis_level)
    Path(config["handlers"]["runtime_file"]["filename"]).parent.mkdir(parents=True, exist_ok=True)
    dictConfig(config)


__all__ = ["ANALYSIS_LOGGER", "build_logging_config", "configure_logging"]
