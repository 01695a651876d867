"""HTTP route definitions for the service."""

from __future__ import annotations

import io
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status

from app.schemas import (
    AnalysisAccepted,
    AnalysisRequest,
    AnalysisRunRecord,
    AnalysisSnapshotOut,
    ForecastAccuracyOut,
    ForecastOut,
    ForecastPointOut,
    IngestionReportOut,
    RunStatus,
    SampleAccepted,
    SampleIn,
    StationsOut,
)
from models.errors import InsufficientHistory, InvalidSample, StaleSample
from models.records import AnalysisWindow, StationMetricSample, ensure_utc
from services.ingestion import IngestionService, build_default_ingestion_service
from services.orchestrator import AnalysisService, build_default_analysis_service

router = APIRouter()


def get_analysis_service() -> AnalysisService:
    return build_default_analysis_service()


def get_ingestion_service() -> IngestionService:
    return build_default_ingestion_service()


def _to_sample(payload: SampleIn) -> StationMetricSample:
    return StationMetricSample(**payload.model_dump())


@router.post(
    "/samples",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SampleAccepted,
    summary="Ingest a single station telemetry sample.",
)
async def ingest_sample(
    payload: SampleIn,
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> SampleAccepted:
    try:
        stored = ingestion.ingest(_to_sample(payload))
    except StaleSample as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidSample as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SampleAccepted(station_id=stored.station_id, timestamp=stored.timestamp)


@router.post(
    "/samples/batch",
    response_model=IngestionReportOut,
    summary="Ingest a batch of samples, reporting rejected entries.",
)
async def ingest_batch(
    payload: List[SampleIn],
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> IngestionReportOut:
    report = ingestion.ingest_many(_to_sample(item) for item in payload)
    return IngestionReportOut.model_validate(report, from_attributes=True)


@router.post(
    "/samples/upload",
    response_model=IngestionReportOut,
    summary="Import telemetry from a CSV file.",
)
async def upload_samples(
    file: UploadFile = File(..., description="CSV file containing station telemetry."),
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> IngestionReportOut:
    contents = await file.read()
    await file.close()
    if not contents:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty."
        )
    try:
        text = contents.decode("utf-8-sig")
        report = ingestion.ingest_csv(io.StringIO(text, newline=""))
    except UnicodeDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is not UTF-8 text."
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return IngestionReportOut.model_validate(report, from_attributes=True)


@router.get("/stations", response_model=StationsOut, summary="List known stations.")
async def list_stations(
    ingestion: IngestionService = Depends(get_ingestion_service),
) -> StationsOut:
    return StationsOut(stations=list(ingestion.store.stations()))


@router.post(
    "/analysis/runs",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=AnalysisAccepted,
    summary="Queue an analysis run over a window (defaults to the last full window).",
)
async def start_analysis(
    request: Optional[AnalysisRequest] = None,
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalysisAccepted:
    window: Optional[AnalysisWindow] = None
    if request is not None and (request.window_start or request.window_end):
        if request.window_start is None or request.window_end is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Both window_start and window_end are required for a custom window.",
            )
        try:
            window = AnalysisWindow(
                start=ensure_utc(request.window_start), end=ensure_utc(request.window_end)
            )
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)
            ) from exc
    noise_floor = request.noise_floor if request is not None else None
    return AnalysisAccepted(run_id=service.submit_analysis(window, noise_floor=noise_floor))


@router.get(
    "/analysis/runs",
    response_model=List[AnalysisRunRecord],
    summary="Recent analysis runs, newest first.",
)
async def list_analysis_runs(
    run_status: Optional[RunStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=1000),
    service: AnalysisService = Depends(get_analysis_service),
) -> List[AnalysisRunRecord]:
    return service.list_runs(status=run_status, limit=limit)


@router.get(
    "/analysis/runs/{run_id}",
    response_model=AnalysisRunRecord,
    summary="Fetch the status and results of an analysis run.",
)
async def get_analysis_run(
    run_id: str,
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalysisRunRecord:
    try:
        return service.fetch_run(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/analysis/runs/{run_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Request cooperative cancellation of a queued or running analysis.",
)
async def cancel_analysis_run(
    run_id: str,
    service: AnalysisService = Depends(get_analysis_service),
) -> dict[str, str]:
    try:
        requested = service.cancel_analysis(run_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not requested:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Analysis run {run_id!r} has already finished.",
        )
    return {"run_id": run_id, "status": "cancelling"}


@router.get(
    "/snapshots/latest",
    response_model=AnalysisSnapshotOut,
    summary="Most recent bottleneck snapshot.",
)
async def latest_snapshot(
    service: AnalysisService = Depends(get_analysis_service),
) -> AnalysisSnapshotOut:
    snapshot = service.get_latest_snapshot()
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="No analysis snapshot available yet."
        )
    return AnalysisSnapshotOut.model_validate(snapshot, from_attributes=True)


@router.get(
    "/snapshots",
    response_model=List[AnalysisSnapshotOut],
    summary="Snapshot history, oldest first.",
)
async def snapshot_history(
    limit: int = Query(10, ge=1, le=1000),
    service: AnalysisService = Depends(get_analysis_service),
) -> List[AnalysisSnapshotOut]:
    return [
        AnalysisSnapshotOut.model_validate(snapshot, from_attributes=True)
        for snapshot in service.get_snapshot_history(limit)
    ]


@router.get("/forecast", response_model=ForecastOut, summary="Forecast future bottleneck counts.")
async def forecast(
    horizon: Optional[int] = Query(None, ge=1, le=104),
    service: AnalysisService = Depends(get_analysis_service),
) -> ForecastOut:
    try:
        points = service.get_forecast(horizon)
    except InsufficientHistory as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ForecastOut(
        horizon=len(points),
        points=[ForecastPointOut.model_validate(point, from_attributes=True) for point in points],
    )


@router.get(
    "/forecast/accuracy",
    response_model=List[ForecastAccuracyOut],
    summary="Predicted versus actual counts for completed forecast periods.",
)
async def forecast_accuracy(
    limit: int = Query(10, ge=1, le=1000),
    service: AnalysisService = Depends(get_analysis_service),
) -> List[ForecastAccuracyOut]:
    return [
        ForecastAccuracyOut.model_validate(record, from_attributes=True)
        for record in service.get_forecast_accuracy(limit)
    ]


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
