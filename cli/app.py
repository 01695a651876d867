from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_forecast, render_ingestion, render_run, render_snapshot


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for feeding telemetry to and querying the bottleneck engine.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Engine API base URL (defaults to BOTTLENECK_API_URL env or http://localhost:8000).",
    ),
    poll_interval: Optional[float] = typer.Option(
        None,
        "--poll-interval",
        help="Seconds between status checks when waiting for a run.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait when polling for a run.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        poll_interval=poll_interval,
        poll_timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("ingest")
def ingest_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Path to telemetry CSV."),
) -> None:
    """Import station telemetry from a CSV file."""
    state = _get_state(ctx)
    typer.echo(f"Uploading {file} to {state.config.base_url} ...")
    render_ingestion(state.client.upload_samples(file))


@app.command("analyze")
def analyze_command(
    ctx: typer.Context,
    window_start: Optional[str] = typer.Option(
        None, "--window-start", help="ISO-8601 window start (inclusive)."
    ),
    window_end: Optional[str] = typer.Option(
        None, "--window-end", help="ISO-8601 window end (exclusive)."
    ),
    sensitivity: Optional[float] = typer.Option(
        None,
        "--sensitivity",
        min=0,
        max=100,
        help="Minimum severity reported as a bottleneck for this run.",
    ),
    wait: bool = typer.Option(
        False,
        "--wait/--no-wait",
        help="Wait for the run to finish and display the result.",
    ),
) -> None:
    """Queue an analysis run."""
    state = _get_state(ctx)
    run_id = state.client.start_analysis(
        window_start=window_start, window_end=window_end, noise_floor=sensitivity
    )
    typer.secho(f"Analysis queued. run_id={run_id}", fg=typer.colors.GREEN)

    if not wait:
        return

    interval = state.config.poll_interval
    poll_timeout = state.config.poll_timeout
    typer.echo(f"Waiting for analysis (interval={interval}s, timeout={poll_timeout}s)...")
    result = state.client.poll_run(run_id, interval=interval, timeout=poll_timeout)
    typer.echo()
    render_run(result)
    if result.get("status") != "completed":
        raise typer.Exit(code=1)


@app.command("run")
def run_command(
    ctx: typer.Context,
    run_id: str = typer.Argument(..., help="Identifier returned from the analyze command."),
) -> None:
    """Fetch the status and results of an analysis run."""
    state = _get_state(ctx)
    render_run(state.client.get_run(run_id))


@app.command("snapshot")
def snapshot_command(ctx: typer.Context) -> None:
    """Show the latest ranked bottleneck snapshot."""
    state = _get_state(ctx)
    render_snapshot(state.client.get_latest_snapshot())


@app.command("forecast")
def forecast_command(
    ctx: typer.Context,
    horizon: Optional[int] = typer.Option(
        None, "--horizon", "-n", min=1, help="Number of future periods to forecast."
    ),
) -> None:
    """Forecast bottleneck counts for the coming periods."""
    state = _get_state(ctx)
    render_forecast(state.client.get_forecast(horizon))
