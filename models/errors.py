"""Typed failures raised by the bottleneck engine."""

from __future__ import annotations


class BottleneckEngineError(Exception):
    """Base exception for all engine errors."""


class InvalidSample(BottleneckEngineError, ValueError):
    """Raised when a telemetry sample violates a range constraint."""


class StaleSample(BottleneckEngineError, ValueError):
    """Raised when a sample is older than the retention horizon."""


class InsufficientData(BottleneckEngineError):
    """Raised when a window holds no samples to score."""


class InsufficientHistory(BottleneckEngineError):
    """Raised when fewer than two historical periods are available."""


class EmptyInput(BottleneckEngineError):
    """Raised when an analysis run has no scoreable stations at all."""


class ConfigurationError(BottleneckEngineError):
    """Raised when configuration values are inconsistent."""


class AnalysisCancelled(BottleneckEngineError):
    """Raised when a caller cancels an in-flight analysis run."""


class AnalysisInProgress(BottleneckEngineError):
    """Raised when the run gate could not be acquired in time."""
