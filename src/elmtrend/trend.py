"""Least-squares trend fitting over evenly spaced samples."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass
class TrendFit:
    """Straight line fitted against sample index (0, 1, 2, ...)."""

    slope: float
    intercept: float
    samples: int

    def predict(self, index: float) -> float:
        return self.intercept + self.slope * index

    def as_dict(self) -> dict[str, float]:
        return {"slope": self.slope, "intercept": self.intercept, "samples": self.samples}


def build_design_matrix(count: int) -> np.ndarray:
    """Return the ``[1, index]`` design matrix for ``count`` samples."""

    index = np.arange(count, dtype=float)
    return np.column_stack([np.ones_like(index), index])


def fit_trend(values: Sequence[float]) -> TrendFit:
    """
    Ordinary least squares over (index, value) pairs.

    The x axis is the sample position, not wall time, so irregular collection
    gaps do not stretch the slope. Fewer than two samples give a flat line.
    """

    y = np.asarray(values, dtype=float)
    if y.ndim != 1:
        raise ValueError("values must be a 1-D sequence")
    if y.size < 2:
        return TrendFit(slope=0.0, intercept=float(y[0]) if y.size else 0.0, samples=int(y.size))
    X = build_design_matrix(y.size)
    coef, *_ = np.linalg.lstsq(X, y, rcond=None)
    intercept, slope = (float(c) for c in coef)
    return TrendFit(slope=slope, intercept=intercept, samples=int(y.size))
