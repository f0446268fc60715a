"""Depth-camera face liveness controller."""
