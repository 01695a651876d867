from __future__ import annotations

from typing import Any, Dict, Iterable

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_ingestion(payload: Dict[str, Any]) -> None:
    echo_heading("Ingestion Report")
    rejected = payload.get("rejected") or []
    echo_key_values([("accepted", payload.get("accepted")), ("rejected", len(rejected))])
    for error in rejected:
        typer.echo(f"  - row {error.get('row_number')}: {error.get('reason')}")


def render_snapshot(snapshot: Dict[str, Any]) -> None:
    echo_heading("Bottleneck Snapshot")
    efficiency = snapshot.get("efficiency_estimate")
    echo_key_values(
        [
            ("run_id", snapshot.get("run_id")),
            ("window", f"{snapshot.get('window_start')} -> {snapshot.get('window_end')}"),
            ("bottlenecks", snapshot.get("bottleneck_count")),
            ("critical_issues", snapshot.get("critical_issues")),
            ("efficiency", f"{efficiency:.0%}" if isinstance(efficiency, (int, float)) else None),
        ]
    )

    events = snapshot.get("events") or []
    typer.echo()
    echo_heading("Events")
    if events:
        for event in events:
            typer.echo(
                f"  - {event.get('station_id')}: severity {event.get('severity')} "
                f"({event.get('impact_tier')}, {event.get('cause_type')})"
            )
    else:
        typer.echo("No bottlenecks above the noise floor.")

    recommendations = snapshot.get("recommendations") or []
    if recommendations:
        typer.echo()
        echo_heading("Recommendations")
        for line in recommendations:
            typer.echo(f"  - {line}")


def render_run(payload: Dict[str, Any]) -> None:
    echo_heading("Analysis Run")
    echo_key_values(
        [
            ("run_id", payload.get("run_id")),
            ("status", payload.get("status")),
            ("started_at", payload.get("started_at")),
            ("finished_at", payload.get("finished_at")),
            ("duration_ms", payload.get("duration_ms")),
        ]
    )
    if payload.get("noise_floor") is not None:
        typer.echo(f"sensitivity: {payload['noise_floor']}")
    if payload.get("error"):
        typer.secho(f"error: {payload['error']}", fg=typer.colors.RED)

    snapshot = payload.get("snapshot")
    if snapshot:
        typer.echo()
        render_snapshot(snapshot)

    skipped = payload.get("skipped") or []
    if skipped:
        typer.echo()
        echo_heading("Skipped Stations")
        for skip in skipped:
            typer.echo(f"  - {skip.get('station_id')}: {skip.get('reason')}")

    points = payload.get("forecast") or []
    if points:
        typer.echo()
        render_forecast({"points": points})


def render_forecast(payload: Dict[str, Any]) -> None:
    echo_heading("Forecast")
    points = payload.get("points") or []
    if not points:
        typer.echo("No forecast available.")
        return
    for point in points:
        typer.echo(
            f"  - {point.get('period_label')}: {point.get('predicted_count'):.2f} "
            f"[{point.get('lower_bound'):.2f}, {point.get('upper_bound'):.2f}]"
        )
