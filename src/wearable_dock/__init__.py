"""Unattended dock controller for the wearable IMU logger."""

__version__ = "0.1.0"
