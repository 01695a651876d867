import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Thread
from typing import Callable, List

import pytest

from app.schemas import RunStatus
from datastore.run_table import AnalysisRunTable
from datastore.snapshot_history import SnapshotHistory
from models.errors import AnalysisCancelled, AnalysisInProgress, EmptyInput, InsufficientHistory, InvalidSample
from models.records import AnalysisWindow, StationMetricSample
from models.taxonomy import CauseType, ImpactTier
from services.aggregator import Aggregator
from services.classifier import Classifier
from services.forecaster import Forecaster
from services.ingestion import IngestionService
from services.orchestrator import AnalysisService
from services.scoring import SeverityScorer
from settings import EngineConfig
from storage.sample_store import TelemetrySampleStore

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
W1 = AnalysisWindow(start=T0, end=T0 + timedelta(hours=1))
W2 = W1.shifted(1)
W3 = W1.shifted(2)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture()
def clock() -> _Clock:
    return _Clock(T0 + timedelta(hours=4))


@pytest.fixture()
def make_service(clock: _Clock) -> Callable[..., AnalysisService]:
    services: List[AnalysisService] = []

    def factory(config: EngineConfig = None, run_lock_timeout: float = 1.0) -> AnalysisService:
        config = config or EngineConfig()
        store = TelemetrySampleStore(
            retention_seconds=config.retention_horizon_seconds,
            bucket_seconds=config.store_bucket_seconds,
            max_downtime_seconds=config.analysis_window_seconds,
            clock=clock,
        )
        service = AnalysisService(
            store=store,
            history=SnapshotHistory(limit=config.snapshot_history_limit),
            runs=AnalysisRunTable(name="test"),
            scorer=SeverityScorer(config),
            classifier=Classifier(config),
            aggregator=Aggregator(noise_floor=config.noise_floor),
            forecaster=Forecaster(config.smoothing_alpha, config.smoothing_beta, config.forecast_confidence),
            config=config,
            workers=1,
            run_lock_timeout=run_lock_timeout,
            clock=clock,
        )
        services.append(service)
        return service

    yield factory

    for service in services:
        service.shutdown()


def _record(
    service: AnalysisService,
    station_id: str,
    window: AnalysisWindow,
    throughput: float = 100.0,
    queue: int = 0,
    downtime: float = 0.0,
) -> None:
    service.store.record(
        StationMetricSample(
            station_id=station_id,
            timestamp=window.start + timedelta(minutes=10),
            throughput=throughput,
            target_throughput=100.0,
            queue_depth=queue,
            downtime_seconds=downtime,
            utilization=0.9,
        )
    )


def _await_run(service: AnalysisService, run_id: str) -> None:
    with service._futures_lock:
        future = service._futures.get(run_id)
    if future is not None:
        future.result(timeout=5)


def test_default_window_is_last_complete_period(make_service, clock) -> None:
    clock.now = T0 + timedelta(hours=1, minutes=10)
    service = make_service()

    assert service.default_window() == W1


def test_run_without_stations_fails_with_empty_input(make_service) -> None:
    service = make_service()

    with pytest.raises(EmptyInput):
        service.run_analysis(W1)

    (record,) = service.runs.scan()
    assert record.status == RunStatus.failed
    assert "No stations" in (record.error or "")
    assert service.get_latest_snapshot() is None


def test_station_without_samples_is_skipped_and_others_ranked(make_service, caplog) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    _record(service, "line-b", W1, throughput=10.0, queue=20)
    _record(service, "line-c", W1, downtime=1800.0)
    _record(service, "line-d", W1)
    service.store.register_station("line-e")
    caplog.set_level(logging.WARNING, logger="services.orchestrator")

    outcome = service.run_analysis(W1)

    snapshot = outcome.snapshot
    assert [(e.station_id, e.severity) for e in snapshot.events] == [
        ("line-b", 71),
        ("line-a", 55),
        ("line-c", 13),
    ]
    assert [e.impact_tier for e in snapshot.events] == [ImpactTier.high, ImpactTier.medium, ImpactTier.low]
    assert [e.cause_type for e in snapshot.events] == [
        CauseType.resource_constraint,
        CauseType.resource_constraint,
        CauseType.equipment_issue,
    ]
    assert snapshot.scored_station_count == 4
    assert snapshot.efficiency_estimate == pytest.approx(0.6525)
    assert [skip.station_id for skip in outcome.skipped] == ["line-e"]
    assert any(
        record.getMessage() == "Skipping station" and getattr(record, "station_id", None) == "line-e"
        for record in caplog.records
    )

    record = service.fetch_run(outcome.run_id)
    assert record.status == RunStatus.completed
    assert record.snapshot is not None
    assert record.snapshot.bottleneck_count == 3
    assert [skip.station_id for skip in record.skipped] == ["line-e"]
    assert record.duration_ms is not None


def test_invalid_station_data_does_not_abort_run(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    _record(service, "line-b", W1)

    class _RejectingScorer(SeverityScorer):
        def evaluate(self, samples, window_seconds):
            batch = list(samples)
            if batch and batch[0].station_id == "line-b":
                raise InvalidSample("corrupt telemetry")
            return super().evaluate(batch, window_seconds)

    service.scorer = _RejectingScorer(service.config)

    outcome = service.run_analysis(W1)

    assert [e.station_id for e in outcome.snapshot.events] == ["line-a"]
    assert [(s.station_id, s.reason) for s in outcome.skipped] == [("line-b", "corrupt telemetry")]


def test_history_forecast_and_accuracy_across_runs(make_service) -> None:
    service = make_service()
    for window in (W1, W2, W3):
        _record(service, "line-a", window, throughput=50.0, queue=20)
    _record(service, "line-b", W1)
    _record(service, "line-b", W2, throughput=10.0, queue=20)
    _record(service, "line-b", W3, throughput=10.0, queue=20)

    first = service.run_analysis(W1)
    assert first.forecast == ()
    assert first.efficiency_change is None
    with pytest.raises(InsufficientHistory):
        service.get_forecast()

    second = service.run_analysis(W2)
    assert len(second.forecast) == 4
    assert [p.period_label for p in second.forecast] == [
        W2.shifted(step).start.isoformat() for step in range(1, 5)
    ]
    assert second.forecast[0].predicted_count == pytest.approx(3.0)
    assert second.efficiency_change == pytest.approx(0.37 - 0.725)

    third = service.run_analysis(W3)
    assert third.snapshot.bottleneck_count == 2

    (accuracy,) = service.get_forecast_accuracy()
    assert accuracy.period_label == W3.start.isoformat()
    assert accuracy.actual_count == 2
    assert accuracy.absolute_error == pytest.approx(1.0)

    points = service.get_forecast(horizon=3)
    assert [p.period_label for p in points] == [W3.shifted(step).start.isoformat() for step in range(1, 4)]
    assert [s.run_id for s in service.get_snapshot_history()] == [first.run_id, second.run_id, third.run_id]
    assert service.get_latest_snapshot().run_id == third.run_id


def test_snapshot_history_is_bounded(make_service) -> None:
    service = make_service(EngineConfig(snapshot_history_limit=2))
    for window in (W1, W2, W3):
        _record(service, "line-a", window, throughput=50.0, queue=20)
        service.run_analysis(window)

    history = service.get_snapshot_history()
    assert [s.window_start for s in history] == [W2.start, W3.start]
    assert service.get_snapshot_history(1)[0].window_start == W3.start


def test_cancelled_run_discards_results(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    cancel_event = Event()
    cancel_event.set()

    with pytest.raises(AnalysisCancelled):
        service.run_analysis(W1, cancel_event=cancel_event)

    (record,) = service.runs.scan()
    assert record.status == RunStatus.cancelled
    assert record.snapshot is None
    assert len(service.history) == 0


def test_cancellation_mid_run_leaves_history_untouched(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    _record(service, "line-b", W1, throughput=50.0, queue=20)
    cancel_event = Event()

    class _CancellingScorer(SeverityScorer):
        def evaluate(self, samples, window_seconds):
            cancel_event.set()
            return super().evaluate(samples, window_seconds)

    service.scorer = _CancellingScorer(service.config)

    with pytest.raises(AnalysisCancelled):
        service.run_analysis(W1, cancel_event=cancel_event)

    assert service.get_latest_snapshot() is None
    assert service.get_forecast_accuracy() == ()


def test_concurrent_run_times_out_on_gate(make_service) -> None:
    service = make_service(run_lock_timeout=0.05)
    _record(service, "line-a", W1, throughput=50.0, queue=20)

    service._run_gate.acquire()
    try:
        with pytest.raises(AnalysisInProgress):
            service.run_analysis(W1, run_id="blocked")
    finally:
        service._run_gate.release()

    assert service.fetch_run("blocked").status == RunStatus.failed
    assert service.run_analysis(W1).snapshot.bottleneck_count == 1


def test_run_evicts_samples_beyond_retention(make_service, clock) -> None:
    clock.now = T0 + timedelta(hours=1)
    service = make_service(EngineConfig(retention_horizon_seconds=7200.0))
    _record(service, "line-a", W1.shifted(-1))
    late = W1.shifted(2)
    _record(service, "line-b", late, throughput=50.0, queue=20)
    assert service.store.sample_count() == 2

    clock.now = late.end
    outcome = service.run_analysis(late)

    assert service.store.sample_count() == 1
    assert [s.station_id for s in outcome.skipped] == ["line-a"]
    assert [e.station_id for e in outcome.snapshot.events] == ["line-b"]


def test_submitted_run_completes_in_background(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)

    run_id = service.submit_analysis(W1)
    _await_run(service, run_id)

    record = service.fetch_run(run_id)
    assert record.status == RunStatus.completed
    assert record.window_start == W1.start
    assert record.snapshot is not None
    assert record.snapshot.events[0].station_id == "line-a"
    assert service.cancel_analysis(run_id) is False


def test_submitted_run_failure_is_recorded(make_service) -> None:
    service = make_service()

    run_id = service.submit_analysis(W1)
    _await_run(service, run_id)

    record = service.fetch_run(run_id)
    assert record.status == RunStatus.failed
    assert record.error


def test_unknown_run_lookups_raise(make_service) -> None:
    service = make_service()

    with pytest.raises(KeyError):
        service.fetch_run("missing")
    with pytest.raises(KeyError):
        service.cancel_analysis("missing")


def _four_station_floor(service: AnalysisService) -> None:
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    _record(service, "line-b", W1, throughput=10.0, queue=20)
    _record(service, "line-c", W1, downtime=1800.0)
    _record(service, "line-d", W1)


def test_per_run_noise_floor_changes_events_not_efficiency(make_service) -> None:
    service = make_service()
    _four_station_floor(service)

    default = service.run_analysis(W1)
    strict = service.run_analysis(W1, noise_floor=60)
    lenient = service.run_analysis(W1, noise_floor=0)

    assert [e.station_id for e in default.snapshot.events] == ["line-b", "line-a", "line-c"]
    assert [e.station_id for e in strict.snapshot.events] == ["line-b"]
    assert [e.station_id for e in lenient.snapshot.events] == ["line-b", "line-a", "line-c", "line-d"]
    for outcome in (default, strict, lenient):
        assert outcome.snapshot.efficiency_estimate == pytest.approx(0.6525)
    assert service.fetch_run(strict.run_id).noise_floor == 60
    assert service.fetch_run(default.run_id).noise_floor is None
    assert service.aggregator.noise_floor == 10.0


def test_submitted_noise_floor_is_recorded_and_validated(make_service) -> None:
    service = make_service()
    _four_station_floor(service)

    run_id = service.submit_analysis(W1, noise_floor=60)
    _await_run(service, run_id)

    record = service.fetch_run(run_id)
    assert record.noise_floor == 60
    assert [e.station_id for e in record.snapshot.events] == ["line-b"]
    with pytest.raises(ValueError):
        service.submit_analysis(W1, noise_floor=101)
    with pytest.raises(ValueError):
        service.run_analysis(W1, noise_floor=-1)


class _BlockingScorer(SeverityScorer):
    def __init__(self, config: EngineConfig) -> None:
        super().__init__(config)
        self.entered = Event()
        self.release = Event()

    def evaluate(self, samples, window_seconds):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().evaluate(samples, window_seconds)


def test_ingestion_proceeds_while_analysis_runs(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    scorer = _BlockingScorer(service.config)
    service.scorer = scorer
    ingestion = IngestionService(service.store)

    run_id = service.submit_analysis(W1)
    assert scorer.entered.wait(timeout=5)
    accepted: List[StationMetricSample] = []
    writer = Thread(
        target=lambda: accepted.append(
            ingestion.ingest(
                StationMetricSample(
                    station_id="line-b",
                    timestamp=W1.start + timedelta(minutes=20),
                    throughput=90.0,
                    target_throughput=100.0,
                    queue_depth=2,
                    downtime_seconds=0.0,
                    utilization=0.8,
                )
            )
        )
    )
    try:
        writer.start()
        writer.join(timeout=1)
        assert not writer.is_alive()
        assert [sample.station_id for sample in accepted] == ["line-b"]
        assert service.fetch_run(run_id).status == RunStatus.running
    finally:
        scorer.release.set()
    _await_run(service, run_id)
    assert service.fetch_run(run_id).status == RunStatus.completed


def test_shutdown_cancels_runs_still_in_queue(make_service) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)
    scorer = _BlockingScorer(service.config)
    service.scorer = scorer

    running_id = service.submit_analysis(W1)
    assert scorer.entered.wait(timeout=5)
    queued_id = service.submit_analysis(W2)
    with service._futures_lock:
        running_future = service._futures[running_id]

    service.shutdown()
    scorer.release.set()
    running_future.result(timeout=5)

    queued = service.fetch_run(queued_id)
    assert queued.status == RunStatus.cancelled
    assert queued.finished_at is not None
    assert service.fetch_run(running_id).status == RunStatus.cancelled
    assert service.get_latest_snapshot() is None


def test_list_runs_newest_first_with_status_filter(make_service, clock) -> None:
    service = make_service()
    _record(service, "line-a", W1, throughput=50.0, queue=20)

    first = service.run_analysis(W1).run_id
    clock.advance(minutes=1)
    with pytest.raises(EmptyInput):
        service.run_analysis(W3, run_id="empty-window")
    clock.advance(minutes=1)
    third = service.run_analysis(W1).run_id

    assert [run.run_id for run in service.list_runs()] == [third, "empty-window", first]
    assert [run.run_id for run in service.list_runs(status=RunStatus.failed)] == ["empty-window"]
    assert [run.run_id for run in service.list_runs(limit=1)] == [third]


def test_forecast_horizon_zero_is_rejected(make_service) -> None:
    service = make_service()
    for window in (W1, W2):
        _record(service, "line-a", window, throughput=50.0, queue=20)
        service.run_analysis(window)

    with pytest.raises(ValueError):
        service.get_forecast(horizon=0)
    assert len(service.get_forecast()) == service.config.forecast_horizon
