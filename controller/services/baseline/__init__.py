"""
Baseline Estimator - comparable-day energy baseline
"""

from .estimator import (
    BaselineEstimator,
    BaselinePoint,
    BaselineSeries,
    compute_baseline,
    interval_energy,
)

__all__ = [
    "BaselineEstimator",
    "BaselinePoint",
    "BaselineSeries",
    "compute_baseline",
    "interval_energy",
]
