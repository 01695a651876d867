"""Rolling in-memory store for raw station telemetry."""

from __future__ import annotations

import bisect
import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Lock
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from models.errors import InvalidSample, StaleSample
from models.records import StationMetricSample, ensure_utc
from settings import get_settings

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp_of(sample: StationMetricSample) -> datetime:
    return sample.timestamp


def _check_finite(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise InvalidSample(f"{name} must be a finite number, got {value!r}.")


def validate_sample(
    sample: StationMetricSample, max_downtime_seconds: Optional[float] = None
) -> StationMetricSample:
    """Check every range constraint and return the sample with a UTC timestamp."""
    if not isinstance(sample.station_id, str) or not sample.station_id.strip():
        raise InvalidSample("station_id must be a non-empty string.")
    if not isinstance(sample.timestamp, datetime):
        raise InvalidSample("timestamp must be a datetime.")

    for name in ("throughput", "target_throughput", "downtime_seconds", "utilization"):
        _check_finite(name, getattr(sample, name))

    if sample.throughput < 0:
        raise InvalidSample("throughput must not be negative.")
    if sample.target_throughput <= 0:
        raise InvalidSample("target_throughput must be positive.")
    if isinstance(sample.queue_depth, bool) or not isinstance(sample.queue_depth, int):
        raise InvalidSample("queue_depth must be an integer.")
    if sample.queue_depth < 0:
        raise InvalidSample("queue_depth must not be negative.")
    if sample.downtime_seconds < 0:
        raise InvalidSample("downtime_seconds must not be negative.")
    if max_downtime_seconds is not None and sample.downtime_seconds > max_downtime_seconds:
        raise InvalidSample(
            f"downtime_seconds exceeds the {max_downtime_seconds:g}s analysis window."
        )
    if not 0.0 <= sample.utilization <= 1.0:
        raise InvalidSample("utilization must lie within [0, 1].")

    return replace(
        sample,
        station_id=sample.station_id.strip(),
        timestamp=ensure_utc(sample.timestamp),
    )


class SampleWindow:
    """Lazy, restartable view over the samples captured by one query."""

    def __init__(
        self,
        station_id: str,
        start: datetime,
        end: datetime,
        chunks: Tuple[Tuple[StationMetricSample, ...], ...],
    ) -> None:
        self.station_id = station_id
        self.start = start
        self.end = end
        self._chunks = chunks

    def __iter__(self) -> Iterator[StationMetricSample]:
        for chunk in self._chunks:
            for sample in chunk:
                if self.start <= sample.timestamp < self.end:
                    yield sample


class TelemetrySampleStore:
    """Append-only telemetry buffer bucketed by time for cheap eviction."""

    def __init__(
        self,
        retention_seconds: float,
        bucket_seconds: float = 60.0,
        max_downtime_seconds: Optional[float] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive.")
        self.retention = timedelta(seconds=retention_seconds)
        self.bucket_seconds = bucket_seconds
        self.max_downtime_seconds = max_downtime_seconds
        self._clock = clock or utc_now
        self._buckets: Dict[int, Dict[str, List[StationMetricSample]]] = {}
        self._bucket_keys: List[int] = []
        self._stations: Set[str] = set()
        self._watermark: Optional[datetime] = None
        self._count = 0
        self._lock = Lock()

    def record(self, sample: StationMetricSample) -> StationMetricSample:
        """Validate and append a sample, returning the stored (normalised) copy."""
        sample = validate_sample(sample, self.max_downtime_seconds)
        key = self._bucket_for(sample.timestamp)
        retention_floor = self._clock() - self.retention

        with self._lock:
            horizon = self._horizon(retention_floor)
            if sample.timestamp < horizon:
                raise StaleSample(
                    f"Sample at {sample.timestamp.isoformat()} is older than the "
                    f"retention horizon {horizon.isoformat()}."
                )
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = {}
                self._buckets[key] = bucket
                bisect.insort(self._bucket_keys, key)
            series = bucket.setdefault(sample.station_id, [])
            bisect.insort(series, sample, key=_timestamp_of)
            self._stations.add(sample.station_id)
            self._count += 1
        return sample

    def query(self, station_id: str, window_start: datetime, window_end: datetime) -> SampleWindow:
        """Return the station's samples in ``[window_start, window_end)``, oldest first."""
        start = ensure_utc(window_start)
        end = ensure_utc(window_end)
        if end <= start:
            return SampleWindow(station_id, start, end, ())

        first_key = self._bucket_for(start)
        last_key = self._bucket_for(end)
        with self._lock:
            lo = bisect.bisect_left(self._bucket_keys, first_key)
            hi = bisect.bisect_right(self._bucket_keys, last_key)
            chunks = tuple(
                tuple(self._buckets[key][station_id])
                for key in self._bucket_keys[lo:hi]
                if station_id in self._buckets[key]
            )
        return SampleWindow(station_id, start, end, chunks)

    def evict_before(self, threshold: datetime) -> int:
        """Discard samples older than ``threshold`` and return how many were dropped."""
        threshold = ensure_utc(threshold)
        cutoff_key = self._bucket_for(threshold)
        evicted = 0

        with self._lock:
            idx = bisect.bisect_left(self._bucket_keys, cutoff_key)
            for key in self._bucket_keys[:idx]:
                bucket = self._buckets.pop(key)
                evicted += sum(len(series) for series in bucket.values())
            del self._bucket_keys[:idx]

            boundary = self._buckets.get(cutoff_key)
            if boundary is not None:
                for station_id in list(boundary):
                    series = boundary[station_id]
                    cut = bisect.bisect_left(series, threshold, key=_timestamp_of)
                    if cut:
                        boundary[station_id] = series[cut:]
                        evicted += cut
                    if not boundary[station_id]:
                        del boundary[station_id]
                if not boundary:
                    del self._buckets[cutoff_key]
                    self._bucket_keys.remove(cutoff_key)

            self._count -= evicted
            if self._watermark is None or threshold > self._watermark:
                self._watermark = threshold
        return evicted

    def register_station(self, station_id: str) -> None:
        candidate = station_id.strip()
        if not candidate:
            raise InvalidSample("station_id must be a non-empty string.")
        with self._lock:
            self._stations.add(candidate)

    def stations(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._stations))

    def sample_count(self) -> int:
        with self._lock:
            return self._count

    def horizon(self) -> datetime:
        """Oldest timestamp the store still accepts."""
        retention_floor = self._clock() - self.retention
        with self._lock:
            return self._horizon(retention_floor)

    def _horizon(self, retention_floor: datetime) -> datetime:
        if self._watermark is not None and self._watermark > retention_floor:
            return self._watermark
        return retention_floor

    def _bucket_for(self, timestamp: datetime) -> int:
        return math.floor(timestamp.timestamp() / self.bucket_seconds)


@lru_cache
def build_default_store() -> TelemetrySampleStore:
    engine = get_settings().engine
    return TelemetrySampleStore(
        retention_seconds=engine.retention_horizon_seconds,
        bucket_seconds=engine.store_bucket_seconds,
        max_downtime_seconds=engine.analysis_window_seconds,
    )
