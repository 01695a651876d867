from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig

_PENDING_STATUSES = {"queued", "running"}


class ApiClient:
    """HTTP client for the engine's ingestion, analysis and query endpoints."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=30.0)

    def close(self) -> None:
        self._client.close()

    def upload_samples(self, path: Path) -> Dict[str, Any]:
        if not path.is_file():
            raise typer.BadParameter(f"{path} is not a readable file.")
        with path.open("rb") as handle:
            return self._request(
                "POST", "/samples/upload", files={"file": (path.name, handle, "text/csv")}
            )

    def start_analysis(
        self,
        window_start: Optional[str] = None,
        window_end: Optional[str] = None,
        noise_floor: Optional[float] = None,
    ) -> str:
        body: Dict[str, Any] = {}
        if window_start or window_end:
            body = {"window_start": window_start, "window_end": window_end}
        if noise_floor is not None:
            body["noise_floor"] = noise_floor
        run_id = self._request("POST", "/analysis/runs", json=body or None).get("run_id")
        if not isinstance(run_id, str):
            raise typer.BadParameter("Unexpected response payload when starting analysis.")
        return run_id

    def get_run(self, run_id: str) -> Dict[str, Any]:
        return self._request(
            "GET",
            f"/analysis/runs/{run_id}",
            not_found=f"Analysis run {run_id} was not found.",
        )

    def get_latest_snapshot(self) -> Dict[str, Any]:
        return self._request(
            "GET",
            "/snapshots/latest",
            not_found="No snapshot is available yet; run the analyze command first.",
        )

    def get_forecast(self, horizon: Optional[int] = None) -> Dict[str, Any]:
        params = {"horizon": horizon} if horizon is not None else None
        return self._request("GET", "/forecast", params=params)

    def poll_run(self, run_id: str, interval: float, timeout: float) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout
        last_payload: Dict[str, Any] | None = None
        while time.monotonic() <= deadline:
            last_payload = self.get_run(run_id)
            if last_payload.get("status") not in _PENDING_STATUSES:
                return last_payload
            time.sleep(interval)
        typer.secho(
            (
                f"Timed out waiting for analysis run {run_id}. "
                f"Last status: {last_payload.get('status') if last_payload else 'unknown'}"
            ),
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)

    def _request(
        self, method: str, path: str, not_found: Optional[str] = None, **kwargs: Any
    ) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            typer.secho(
                f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True
            )
            raise typer.Exit(code=1) from exc

        if response.status_code == 404 and not_found:
            raise typer.BadParameter(not_found)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except ValueError:
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
