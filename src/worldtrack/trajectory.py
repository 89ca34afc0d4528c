from __future__ import annotations

"""Trajectory smoothing and short-horizon extrapolation over position histories."""

from typing import Optional, Protocol, Sequence

import numpy as np

from .model import Vec3


class _TimedPosition(Protocol):
    position: Vec3
    timestamp_ms: float


def smooth_trajectory(history: Sequence[_TimedPosition], smoothing_factor: float = 0.7) -> Optional[Vec3]:
    """Exponential moving average over a chronological history.

    ``smoothing_factor`` is the share of the running estimate kept at each step, so
    later entries count more.
    """
    if not history:
        return None
    smoothed = np.asarray(history[0].position, dtype=np.float64)
    alpha = 1.0 - smoothing_factor
    for entry in history[1:]:
        smoothed = smoothed + (np.asarray(entry.position, dtype=np.float64) - smoothed) * alpha
    return (float(smoothed[0]), float(smoothed[1]), float(smoothed[2]))


def trajectory_velocity(history: Sequence[_TimedPosition]) -> Vec3:
    """Velocity (m/s) between the two most recent entries; zero without a positive time step."""
    if len(history) < 2:
        return (0.0, 0.0, 0.0)
    previous, latest = history[-2], history[-1]
    dt = (latest.timestamp_ms - previous.timestamp_ms) / 1000.0
    if dt <= 0.0:
        return (0.0, 0.0, 0.0)
    delta = (np.asarray(latest.position, dtype=np.float64) - np.asarray(previous.position, dtype=np.float64)) / dt
    return (float(delta[0]), float(delta[1]), float(delta[2]))


def predict_position(history: Sequence[_TimedPosition], horizon_s: float = 0.1) -> Optional[Vec3]:
    if len(history) < 2:
        return None
    velocity = np.asarray(trajectory_velocity(history), dtype=np.float64)
    predicted = np.asarray(history[-1].position, dtype=np.float64) + velocity * horizon_s
    return (float(predicted[0]), float(predicted[1]), float(predicted[2]))
