"""Bottleneck count forecasting with Holt's linear trend method."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import stats
from statsmodels.tsa.holtwinters import Holt

from models.errors import InsufficientHistory
from models.records import ForecastPoint


@dataclass(frozen=True, slots=True)
class HoltFit:
    """Final smoothing state and in-sample one-step-ahead errors."""

    level: float
    trend: float
    residuals: Tuple[float, ...]

    @property
    def residual_std(self) -> float:
        if not self.residuals:
            return 0.0
        errors = np.asarray(self.residuals, dtype=float)
        return float(np.sqrt(np.mean(errors**2)))


class Forecaster:
    """Stateless double exponential smoothing forecaster.

    The statsmodels ``Holt`` model is fitted with fixed ``alpha`` and ``beta``
    on every period after the first, with the known initial state
    ``level = y0`` and ``trend = y1 - y0``. Its residuals are the in-sample
    one-step-ahead errors.

    Point forecasts are floored at zero because bottleneck counts cannot be
    negative. When that floor applies the interval is re-centred on the floored
    point with an unchanged half-width, so the lower bound may dip below zero
    while the bounds never invert.
    """

    def __init__(self, alpha: float = 0.5, beta: float = 0.3, confidence: float = 0.95) -> None:
        if not 0 < alpha < 1 or not 0 < beta < 1:
            raise ValueError("Smoothing factors must lie strictly between 0 and 1.")
        if not 0 < confidence < 1:
            raise ValueError("Confidence must lie strictly between 0 and 1.")
        self.alpha = alpha
        self.beta = beta
        self.confidence = confidence

    @property
    def z_score(self) -> float:
        return float(stats.norm.ppf(0.5 + self.confidence / 2.0))

    def fit(self, history: Sequence[float]) -> HoltFit:
        series = np.asarray(list(history), dtype=float)
        if series.size < 2:
            raise InsufficientHistory(
                f"At least 2 historical periods are required, got {series.size}."
            )
        if not np.all(np.isfinite(series)) or np.any(series < 0):
            raise ValueError("History counts must be finite and non-negative.")

        model = Holt(
            series[1:],
            initialization_method="known",
            initial_level=float(series[0]),
            initial_trend=float(series[1] - series[0]),
        )
        # A perfect fit has zero SSE; only the information criteria take its log.
        with np.errstate(divide="ignore"):
            result = model.fit(
                smoothing_level=self.alpha, smoothing_trend=self.beta, optimized=False
            )
        return HoltFit(
            level=float(result.level[-1]),
            trend=float(result.trend[-1]),
            residuals=tuple(float(error) for error in result.resid),
        )

    def forecast(
        self,
        history: Sequence[float],
        horizon: int,
        labels: Optional[Sequence[str]] = None,
    ) -> Tuple[ForecastPoint, ...]:
        if horizon < 1:
            raise ValueError("Forecast horizon must be a positive integer.")
        if labels is not None and len(labels) < horizon:
            raise ValueError("Not enough period labels for the requested horizon.")

        fit = self.fit(history)
        spread = self.z_score * fit.residual_std
        basis = len(fit.residuals) + 1

        points = []
        for step in range(1, horizon + 1):
            predicted = max(0.0, fit.level + step * fit.trend)
            half_width = spread * math.sqrt(step)
            points.append(
                ForecastPoint(
                    step=step,
                    period_label=labels[step - 1] if labels is not None else f"period+{step}",
                    predicted_count=predicted,
                    lower_bound=predicted - half_width,
                    upper_bound=predicted + half_width,
                    basis_periods=basis,
                )
            )
        return tuple(points)
