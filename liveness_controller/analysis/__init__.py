"""Depth liveness analysis: feature extraction, decision engine, calibration, challenge."""
