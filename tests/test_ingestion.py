import io
import logging
from datetime import datetime, timedelta, timezone

import pytest

from models.errors import InvalidSample, StaleSample
from models.records import StationMetricSample
from services.ingestion import IngestionService
from storage.sample_store import TelemetrySampleStore

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def _service() -> IngestionService:
    store = TelemetrySampleStore(
        retention_seconds=86400.0,
        max_downtime_seconds=3600.0,
        clock=lambda: T0 + timedelta(hours=1),
    )
    return IngestionService(store=store)


def _sample(station_id: str = "line-a", **overrides) -> StationMetricSample:
    values = dict(
        station_id=station_id,
        timestamp=T0 + timedelta(minutes=5),
        throughput=80.0,
        target_throughput=100.0,
        queue_depth=3,
        downtime_seconds=0.0,
        utilization=0.7,
    )
    values.update(overrides)
    return StationMetricSample(**values)


def test_ingest_csv_accepts_valid_rows() -> None:
    service = _service()
    csv_content = """station_id,timestamp,throughput,target_throughput,queue_depth,downtime_seconds,utilization
line-a,2024-01-01T08:05:00Z,50,100,20,0,0.95
line-b,2024-01-01T08:10:00+00:00,90.5,100,2,120,0.6
"""

    report = service.ingest_csv(io.StringIO(csv_content))

    assert report.accepted == 2
    assert report.rejected == []
    assert service.store.stations() == ("line-a", "line-b")
    (sample,) = service.store.query("line-b", T0, T0 + timedelta(hours=1))
    assert sample.throughput == 90.5
    assert sample.downtime_seconds == 120.0
    assert sample.timestamp == T0 + timedelta(minutes=10)


def test_downtime_column_is_optional() -> None:
    service = _service()
    csv_content = """Station_ID,Timestamp,Throughput,Target_Throughput,Queue_Depth,Utilization
line-a,2024-01-01T08:05:00,50,100,20.0,0.95
"""

    report = service.ingest_csv(io.StringIO(csv_content))

    assert report.accepted == 1
    (sample,) = service.store.query("line-a", T0, T0 + timedelta(hours=1))
    assert sample.downtime_seconds == 0.0
    assert sample.queue_depth == 20


def test_ingest_csv_collects_row_errors() -> None:
    service = _service()
    csv_content = """station_id,timestamp,throughput,target_throughput,queue_depth,downtime_seconds,utilization
line-a,2024-01-01T08:05:00Z,50,100,20,0,0.95
,2024-01-01T08:06:00Z,50,100,20,0,0.95
line-b,not-a-timestamp,50,100,20,0,0.95
line-c,2024-01-01T08:07:00Z,fast,100,20,0,0.95
line-d,2024-01-01T08:08:00Z,50,100,2.5,0,0.95
line-e,2024-01-01T08:09:00Z,50,100,3,0,1.5
line-f,2023-12-01T08:09:00Z,50,100,3,0,0.5
line-g,2024-01-01T08:10:00Z,,100,3,0,0.5
"""

    report = service.ingest_csv(io.StringIO(csv_content))

    assert report.accepted == 1
    reasons = {error.row_number: error.reason for error in report.rejected}
    assert reasons[3] == "missing station_id"
    assert reasons[4] == "invalid timestamp"
    assert reasons[5] == "invalid numeric value for throughput"
    assert reasons[6] == "queue_depth must be an integer"
    assert reasons[7] == "utilization must lie within [0, 1]."
    assert "retention horizon" in reasons[8]
    assert reasons[9] == "missing throughput"
    assert {error.station_id for error in report.rejected if error.row_number == 4} == {"line-b"}


def test_ingest_csv_logs_skipped_rows(caplog) -> None:
    service = _service()
    csv_content = """station_id,timestamp,throughput,target_throughput,queue_depth,utilization
line-a,2024-01-01T08:05:00Z,-1,100,20,0.5
"""
    caplog.set_level(logging.WARNING, logger="services.ingestion")

    report = service.ingest_csv(io.StringIO(csv_content))

    assert report.accepted == 0
    (record,) = [r for r in caplog.records if r.name == "services.ingestion"]
    assert record.levelno == logging.WARNING
    assert record.row_number == 2
    assert record.station_id == "line-a"
    assert "throughput must not be negative" in record.getMessage()


def test_ingest_csv_requires_header_columns() -> None:
    service = _service()

    with pytest.raises(ValueError, match="CSV missing required columns: queue_depth, utilization"):
        service.ingest_csv(io.StringIO("station_id,timestamp,throughput,target_throughput\n"))

    with pytest.raises(ValueError, match="missing a header row"):
        service.ingest_csv(io.StringIO(""))


def test_ingest_rejects_and_logs_single_sample(caplog) -> None:
    service = _service()
    caplog.set_level(logging.WARNING, logger="services.ingestion")

    with pytest.raises(InvalidSample):
        service.ingest(_sample(utilization=2.0))
    with pytest.raises(StaleSample):
        service.ingest(_sample(timestamp=T0 - timedelta(days=2)))

    messages = [r.getMessage() for r in caplog.records if r.name == "services.ingestion"]
    assert messages == ["Rejected telemetry sample", "Rejected telemetry sample"]
    assert service.store.sample_count() == 0


def test_ingest_many_reports_per_entry() -> None:
    service = _service()

    report = service.ingest_many(
        [_sample("line-a"), _sample("line-b", queue_depth=-4), _sample("line-c")]
    )

    assert report.accepted == 2
    (error,) = report.rejected
    assert error.row_number == 2
    assert error.station_id == "line-b"
    assert error.reason == "queue_depth must not be negative."


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2024-01-01T08:00:00Z", T0),
        ("2024-01-01T08:00:00", T0),
        ("2024-01-01T10:00:00+02:00", T0),
    ],
)
def test_parse_timestamp_normalises_to_utc(raw: str, expected: datetime) -> None:
    assert IngestionService.parse_timestamp(raw) == expected


def test_parse_timestamp_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        IngestionService.parse_timestamp("yesterday")
