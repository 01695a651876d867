"""Telemetry ingestion: single samples, batches and CSV imports."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, TextIO

from models.errors import InvalidSample, StaleSample
from models.records import StationMetricSample
from storage.sample_store import TelemetrySampleStore, build_default_store

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "station_id",
    "timestamp",
    "throughput",
    "target_throughput",
    "queue_depth",
    "utilization",
)
OPTIONAL_COLUMNS = ("downtime_seconds",)


@dataclass
class RowError:
    """Details about a record that failed parsing or validation."""

    row_number: int
    reason: str
    station_id: Optional[str] = None


@dataclass
class IngestionReport:
    accepted: int = 0
    rejected: List[RowError] = field(default_factory=list)


class IngestionService:
    """Front door for upstream connectors delivering station telemetry."""

    def __init__(self, store: TelemetrySampleStore) -> None:
        self.store = store

    def ingest(self, sample: StationMetricSample) -> StationMetricSample:
        """Record one sample; rejections are logged and re-raised."""
        try:
            return self.store.record(sample)
        except (InvalidSample, StaleSample) as exc:
            logger.warning(
                "Rejected telemetry sample",
                extra={"station_id": sample.station_id, "reason": str(exc)},
            )
            raise

    def ingest_many(self, samples: Iterable[StationMetricSample]) -> IngestionReport:
        report = IngestionReport()
        for index, sample in enumerate(samples, start=1):
            try:
                self.ingest(sample)
            except (InvalidSample, StaleSample) as exc:
                report.rejected.append(
                    RowError(row_number=index, reason=str(exc), station_id=sample.station_id)
                )
                continue
            report.accepted += 1
        return report

    def ingest_csv(self, stream: TextIO) -> IngestionReport:
        """Import telemetry rows from CSV, skipping and reporting bad rows."""
        reader = csv.DictReader(stream)
        if not reader.fieldnames:
            raise ValueError("CSV file is missing a header row.")

        normalized = {name.lower().strip(): name for name in reader.fieldnames if name}
        missing = [column for column in REQUIRED_COLUMNS if column not in normalized]
        if missing:
            raise ValueError(f"CSV missing required columns: {', '.join(missing)}")

        columns = {
            column: normalized[column]
            for column in (*REQUIRED_COLUMNS, *OPTIONAL_COLUMNS)
            if column in normalized
        }

        report = IngestionReport()
        for row_number, row in enumerate(reader, start=2):
            station_id = (row.get(columns["station_id"]) or "").strip() or None
            try:
                sample = self._parse_row(row, columns)
                self.store.record(sample)
            except (InvalidSample, StaleSample) as exc:
                reason = str(exc)
                logger.warning(
                    "Skipping row %s: %s",
                    row_number,
                    reason,
                    extra={"row_number": row_number, "reason": reason, "station_id": station_id},
                )
                report.rejected.append(
                    RowError(row_number=row_number, reason=reason, station_id=station_id)
                )
                continue
            report.accepted += 1

        logger.info(
            "CSV import finished with %s accepted and %s rejected rows",
            report.accepted,
            len(report.rejected),
        )
        return report

    def _parse_row(self, row: Dict[str, Optional[str]], columns: Dict[str, str]) -> StationMetricSample:
        def raw(column: str) -> str:
            name = columns.get(column)
            if name is None:
                return ""
            return (row.get(name) or "").strip()

        station_id = raw("station_id")
        if not station_id:
            raise InvalidSample("missing station_id")

        timestamp_raw = raw("timestamp")
        if not timestamp_raw:
            raise InvalidSample("missing timestamp")
        try:
            timestamp = self.parse_timestamp(timestamp_raw)
        except ValueError as exc:
            raise InvalidSample("invalid timestamp") from exc

        values: Dict[str, float] = {}
        for column in ("throughput", "target_throughput", "utilization"):
            values[column] = self._parse_float(column, raw(column))
        downtime_raw = raw("downtime_seconds")
        downtime = self._parse_float("downtime_seconds", downtime_raw) if downtime_raw else 0.0

        return StationMetricSample(
            station_id=station_id,
            timestamp=timestamp,
            throughput=values["throughput"],
            target_throughput=values["target_throughput"],
            queue_depth=self._parse_int("queue_depth", raw("queue_depth")),
            downtime_seconds=downtime,
            utilization=values["utilization"],
        )

    @staticmethod
    def _parse_float(column: str, value: str) -> float:
        if not value:
            raise InvalidSample(f"missing {column}")
        try:
            return float(value)
        except ValueError as exc:
            raise InvalidSample(f"invalid numeric value for {column}") from exc

    @staticmethod
    def _parse_int(column: str, value: str) -> int:
        if not value:
            raise InvalidSample(f"missing {column}")
        try:
            return int(value)
        except ValueError:
            pass
        try:
            parsed = float(value)
        except ValueError as exc:
            raise InvalidSample(f"invalid numeric value for {column}") from exc
        if not parsed.is_integer():
            raise InvalidSample(f"{column} must be an integer")
        return int(parsed)

    @staticmethod
    def parse_timestamp(value: str) -> datetime:
        candidate = value.strip()
        if not candidate:
            raise ValueError("Timestamp is empty.")

        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"

        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError as exc:
            raise ValueError("Invalid timestamp format") from exc

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)

        return parsed.astimezone(timezone.utc)


@lru_cache
def build_default_ingestion_service() -> IngestionService:
    return IngestionService(store=build_default_store())
