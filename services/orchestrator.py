"""Analysis run orchestration: the only impure analysis entry point."""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from threading import Event, Lock
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from app.schemas import (
    AnalysisRunRecord,
    AnalysisSnapshotOut,
    ForecastPointOut,
    RunStatus,
    StationSkipOut,
)
from datastore.run_table import AnalysisRunTable, build_default_run_table
from datastore.snapshot_history import SnapshotHistory
from models.errors import (
    AnalysisCancelled,
    AnalysisInProgress,
    BottleneckEngineError,
    InsufficientData,
    InvalidSample,
)
from models.records import (
    AnalysisOutcome,
    AnalysisSnapshot,
    AnalysisWindow,
    ForecastAccuracy,
    ForecastPoint,
    StationAssessment,
    StationSkip,
)
from services.aggregator import Aggregator
from services.classifier import Classifier
from services.forecaster import Forecaster
from services.scoring import SeverityScorer
from settings import EngineConfig, get_settings
from storage.sample_store import Clock, TelemetrySampleStore, build_default_store, utc_now

logger = logging.getLogger(__name__)

StationOutcome = Union[StationAssessment, StationSkip]

_FINISHED_STATUSES = frozenset({RunStatus.completed, RunStatus.failed, RunStatus.cancelled})


def _period_label(window: AnalysisWindow) -> str:
    return window.start.isoformat()


def _check_noise_floor(noise_floor: Optional[float]) -> None:
    if noise_floor is not None and not 0 <= noise_floor <= 100:
        raise ValueError("Noise floor must lie within [0, 100].")


class AnalysisService:
    """Coordinates sample retrieval, scoring, aggregation, history and forecasts."""

    def __init__(
        self,
        store: TelemetrySampleStore,
        history: SnapshotHistory,
        runs: AnalysisRunTable,
        scorer: SeverityScorer,
        classifier: Classifier,
        aggregator: Aggregator,
        forecaster: Forecaster,
        config: EngineConfig,
        workers: int = 1,
        run_lock_timeout: float = 5.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.history = history
        self.runs = runs
        self.scorer = scorer
        self.classifier = classifier
        self.aggregator = aggregator
        self.forecaster = forecaster
        self.config = config
        self.run_lock_timeout = run_lock_timeout
        self._clock = clock or utc_now
        self.executor = ThreadPoolExecutor(max_workers=workers)
        self._futures: Dict[str, Future[None]] = {}
        self._cancel_events: Dict[str, Event] = {}
        self._futures_lock = Lock()
        self._run_gate = Lock()
        self._pending_forecast: Optional[ForecastPoint] = None
        self._accuracy: Tuple[ForecastAccuracy, ...] = ()

    def default_window(self) -> AnalysisWindow:
        """Most recently completed window aligned to the configured length."""
        seconds = self.config.analysis_window_seconds
        end_epoch = math.floor(self._clock().timestamp() / seconds) * seconds
        end = datetime.fromtimestamp(end_epoch, tz=timezone.utc)
        return AnalysisWindow(start=end - timedelta(seconds=seconds), end=end)

    def run_analysis(
        self,
        window: Optional[AnalysisWindow] = None,
        cancel_event: Optional[Event] = None,
        run_id: Optional[str] = None,
        noise_floor: Optional[float] = None,
    ) -> AnalysisOutcome:
        """Score every known station for ``window`` and commit a new snapshot.

        ``noise_floor`` replaces the configured floor for this run only.
        """
        _check_noise_floor(noise_floor)
        window = window or self.default_window()
        run_id = run_id or str(uuid4())
        existing = self.runs.get_item(run_id)
        requested_at = existing.requested_at if existing else self._clock()

        if not self._run_gate.acquire(timeout=self.run_lock_timeout):
            message = "Another analysis run is still in progress."
            self.runs.put_item(
                AnalysisRunRecord(
                    run_id=run_id,
                    status=RunStatus.failed,
                    requested_at=requested_at,
                    window_start=window.start,
                    window_end=window.end,
                    noise_floor=noise_floor,
                    finished_at=self._clock(),
                    error=message,
                )
            )
            raise AnalysisInProgress(message)

        try:
            return self._run_locked(window, run_id, cancel_event, requested_at, noise_floor)
        finally:
            self._run_gate.release()

    def submit_analysis(
        self, window: Optional[AnalysisWindow] = None, noise_floor: Optional[float] = None
    ) -> str:
        """Queue an analysis run on the worker pool and return its identifier."""
        _check_noise_floor(noise_floor)
        window = window or self.default_window()
        run_id = str(uuid4())
        requested_at = self._clock()
        self.runs.put_item(
            AnalysisRunRecord(
                run_id=run_id,
                status=RunStatus.queued,
                requested_at=requested_at,
                window_start=window.start,
                window_end=window.end,
                noise_floor=noise_floor,
            )
        )

        cancel_event = Event()
        with self._futures_lock:
            future = self.executor.submit(
                self._run_in_background,
                run_id=run_id,
                window=window,
                cancel_event=cancel_event,
                noise_floor=noise_floor,
            )
            self._futures[run_id] = future
            self._cancel_events[run_id] = cancel_event
        future.add_done_callback(lambda _f, rid=run_id: self._clear_future(rid))
        return run_id

    def cancel_analysis(self, run_id: str) -> bool:
        """Request cooperative cancellation; False if the run already finished."""
        record = self.runs.get_item(run_id)
        if record is None:
            raise KeyError(f"Analysis run {run_id!r} not found.")
        with self._futures_lock:
            cancel_event = self._cancel_events.get(run_id)
        if cancel_event is None or record.status in _FINISHED_STATUSES:
            return False
        cancel_event.set()
        logger.info("Cancellation requested", extra={"run_id": run_id})
        return True

    def fetch_run(self, run_id: str) -> AnalysisRunRecord:
        result = self.runs.get_item(run_id)
        if result is None:
            raise KeyError(f"Analysis run {run_id!r} not found.")
        return result

    def list_runs(
        self, status: Optional[RunStatus] = None, limit: Optional[int] = None
    ) -> List[AnalysisRunRecord]:
        return self.runs.scan(status=status, limit=limit)

    def get_latest_snapshot(self) -> Optional[AnalysisSnapshot]:
        return self.history.latest()

    def get_snapshot_history(self, limit: Optional[int] = None) -> Tuple[AnalysisSnapshot, ...]:
        return self.history.recent(limit)

    def get_forecast(self, horizon: Optional[int] = None) -> Tuple[ForecastPoint, ...]:
        if horizon is None:
            horizon = self.config.forecast_horizon
        snapshots = self.history.recent()
        counts = [snapshot.bottleneck_count for snapshot in snapshots]
        labels = self._future_labels(snapshots[-1].window, horizon) if snapshots else None
        return self.forecaster.forecast(counts, horizon, labels=labels)

    def get_forecast_accuracy(self, limit: Optional[int] = None) -> Tuple[ForecastAccuracy, ...]:
        accuracy = self._accuracy
        if limit is None:
            return accuracy
        return accuracy[-limit:] if limit > 0 else ()

    def shutdown(self) -> None:
        """Cancel outstanding runs and release executor resources.

        Runs that never left the queue are recorded as cancelled; running ones
        observe their cancel event and record themselves.
        """
        with self._futures_lock:
            futures = dict(self._futures)
            events = list(self._cancel_events.values())
        for cancel_event in events:
            cancel_event.set()
        self.executor.shutdown(wait=False, cancel_futures=True)
        for run_id, future in futures.items():
            if future.cancelled():
                self._mark_never_started(run_id)

    def _mark_never_started(self, run_id: str) -> None:
        record = self.runs.get_item(run_id)
        if record is None or record.status != RunStatus.queued:
            return
        self.runs.put_item(
            record.model_copy(
                update={
                    "status": RunStatus.cancelled,
                    "finished_at": self._clock(),
                    "error": "Service shut down before the run started.",
                }
            )
        )
        logger.info("Queued analysis run cancelled", extra={"run_id": run_id, "status": "cancelled"})

    def _clear_future(self, run_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(run_id, None)
            self._cancel_events.pop(run_id, None)

    def _run_in_background(
        self,
        run_id: str,
        window: AnalysisWindow,
        cancel_event: Event,
        noise_floor: Optional[float],
    ) -> None:
        try:
            self.run_analysis(
                window=window, cancel_event=cancel_event, run_id=run_id, noise_floor=noise_floor
            )
        except BottleneckEngineError as exc:
            logger.warning(
                "Background analysis run ended without a snapshot",
                extra={"run_id": run_id, "reason": str(exc)},
            )

    def _run_locked(
        self,
        window: AnalysisWindow,
        run_id: str,
        cancel_event: Optional[Event],
        requested_at: datetime,
        noise_floor: Optional[float],
    ) -> AnalysisOutcome:
        started_at = self._clock()
        start_time = time.perf_counter()
        running = AnalysisRunRecord(
            run_id=run_id,
            status=RunStatus.running,
            requested_at=requested_at,
            window_start=window.start,
            window_end=window.end,
            noise_floor=noise_floor,
            started_at=started_at,
        )
        self.runs.put_item(running)
        logger.info("Analysis run started", extra={"run_id": run_id, "status": "running"})

        try:
            outcome = self._execute(window, run_id, cancel_event, started_at, noise_floor)
        except AnalysisCancelled as exc:
            self._finish(running, RunStatus.cancelled, start_time, error=str(exc))
            logger.info("Analysis run cancelled", extra={"run_id": run_id, "status": "cancelled"})
            raise
        except Exception as exc:
            self._finish(running, RunStatus.failed, start_time, error=str(exc))
            logger.error(
                "Analysis run failed",
                extra={"run_id": run_id, "status": "failed", "reason": str(exc)},
            )
            raise

        record = self._finish(running, RunStatus.completed, start_time, outcome=outcome)
        logger.info(
            "Analysis run completed",
            extra={
                "run_id": run_id,
                "status": "completed",
                "event_count": outcome.snapshot.bottleneck_count,
                "skipped_count": len(outcome.skipped),
                "duration_ms": record.duration_ms,
            },
        )
        return outcome

    def _execute(
        self,
        window: AnalysisWindow,
        run_id: str,
        cancel_event: Optional[Event],
        started_at: datetime,
        noise_floor: Optional[float],
    ) -> AnalysisOutcome:
        self._check_cancelled(cancel_event)
        retention = timedelta(seconds=self.config.retention_horizon_seconds)
        evicted = self.store.evict_before(started_at - retention)
        if evicted:
            logger.debug("Evicted stale samples", extra={"run_id": run_id, "evicted": evicted})

        outcomes: List[Tuple[str, StationOutcome]] = []
        for station_id in self.store.stations():
            self._check_cancelled(cancel_event)
            outcomes.append((station_id, self._assess_station(station_id, window, run_id)))
        self._check_cancelled(cancel_event)

        assessments = {
            station_id: outcome
            for station_id, outcome in outcomes
            if isinstance(outcome, StationAssessment)
        }
        skipped = tuple(outcome for _, outcome in outcomes if isinstance(outcome, StationSkip))

        snapshot = self.aggregator.aggregate(
            assessments,
            window,
            run_id=run_id,
            run_timestamp=started_at,
            noise_floor=noise_floor,
        )

        previous = self.history.latest()
        self.history.append(snapshot)
        self._resolve_accuracy(snapshot)

        forecast: Tuple[ForecastPoint, ...] = ()
        counts = self.history.counts()
        if len(counts) >= 2:
            horizon = self.config.forecast_horizon
            forecast = self.forecaster.forecast(
                counts, horizon, labels=self._future_labels(window, horizon)
            )
            self._pending_forecast = forecast[0]
            logger.debug("Forecast refreshed", extra={"run_id": run_id, "horizon": horizon})

        efficiency_change = None
        if previous is not None:
            efficiency_change = snapshot.efficiency_estimate - previous.efficiency_estimate

        return AnalysisOutcome(
            run_id=run_id,
            snapshot=snapshot,
            skipped=skipped,
            forecast=forecast,
            efficiency_change=efficiency_change,
        )

    def _assess_station(
        self, station_id: str, window: AnalysisWindow, run_id: str
    ) -> StationOutcome:
        try:
            samples = self.store.query(station_id, window.start, window.end)
            breakdown = self.scorer.evaluate(samples, window.duration_seconds)
            classification = self.classifier.classify(breakdown)
        except (InsufficientData, InvalidSample) as exc:
            logger.warning(
                "Skipping station",
                extra={"run_id": run_id, "station_id": station_id, "reason": str(exc)},
            )
            return StationSkip(station_id=station_id, reason=str(exc))

        logger.debug(
            "Scored station",
            extra={"run_id": run_id, "station_id": station_id, "severity": breakdown.severity},
        )
        return StationAssessment(
            station_id=station_id,
            window_start=window.start,
            window_end=window.end,
            severity=breakdown.severity,
            impact_tier=classification.impact_tier,
            cause_type=classification.cause_type,
            metrics=breakdown.metrics,
        )

    def _resolve_accuracy(self, snapshot: AnalysisSnapshot) -> None:
        pending = self._pending_forecast
        if pending is None or pending.period_label != _period_label(snapshot.window):
            return
        record = ForecastAccuracy(
            period_label=pending.period_label,
            predicted_count=pending.predicted_count,
            lower_bound=pending.lower_bound,
            upper_bound=pending.upper_bound,
            actual_count=snapshot.bottleneck_count,
        )
        self._accuracy = (*self._accuracy, record)[-self.config.snapshot_history_limit :]
        self._pending_forecast = None

    @staticmethod
    def _future_labels(window: AnalysisWindow, horizon: int) -> List[str]:
        return [_period_label(window.shifted(step)) for step in range(1, horizon + 1)]

    @staticmethod
    def _check_cancelled(cancel_event: Optional[Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelled("Analysis run was cancelled; partial results discarded.")

    def _finish(
        self,
        running: AnalysisRunRecord,
        status: RunStatus,
        start_time: float,
        outcome: Optional[AnalysisOutcome] = None,
        error: Optional[str] = None,
    ) -> AnalysisRunRecord:
        update: Dict[str, object] = {
            "status": status,
            "finished_at": self._clock(),
            "duration_ms": int((time.perf_counter() - start_time) * 1000),
            "error": error,
        }
        if outcome is not None:
            update.update(
                snapshot=AnalysisSnapshotOut.model_validate(outcome.snapshot, from_attributes=True),
                skipped=[
                    StationSkipOut.model_validate(skip, from_attributes=True)
                    for skip in outcome.skipped
                ],
                forecast=[
                    ForecastPointOut.model_validate(point, from_attributes=True)
                    for point in outcome.forecast
                ],
                efficiency_change=outcome.efficiency_change,
            )
        record = running.model_copy(update=update)
        self.runs.put_item(record)
        return record


@lru_cache
def build_default_analysis_service(
    workers: Optional[int] = None,
) -> AnalysisService:
    """Factory that wires the analysis service with the default stores."""
    settings = get_settings()
    engine = settings.engine
    return AnalysisService(
        store=build_default_store(),
        history=SnapshotHistory(limit=engine.snapshot_history_limit),
        runs=build_default_run_table(),
        scorer=SeverityScorer(engine),
        classifier=Classifier(engine),
        aggregator=Aggregator(noise_floor=engine.noise_floor),
        forecaster=Forecaster(
            alpha=engine.smoothing_alpha,
            beta=engine.smoothing_beta,
            confidence=engine.forecast_confidence,
        ),
        config=engine,
        workers=workers or settings.analysis_workers,
        run_lock_timeout=settings.run_lock_timeout_seconds,
    )
