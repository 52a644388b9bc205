"""Command line interface for the elmtrend package."""
from __future__ import annotations

from pathlib import Path

import typer

from .demo import run_demo
from .history import load_history_json
from .link.runner import app as link_app
from .plotting import generate_plots
from .predictive import TrendAnalyzer
from .reporting import export_results
from .thresholds import Thresholds

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
app.add_typer(link_app, name="link")


@app.command()
def analyze(
    input_path: Path = typer.Option(..., "--in", help="Snapshot history JSON (list or {'snapshots': [...]})."),
    report_dir: Path = typer.Option(..., "--report", help="Output directory for reports."),
    min_snapshots: int = typer.Option(5, "--min-snapshots", help="Snapshots required before analysis runs."),
    capacity: int = typer.Option(500, "--capacity", help="Keep only the newest N snapshots."),
    plot: bool = typer.Option(True, "--plot/--no-plot", help="Render trend plots (needs matplotlib)."),
) -> None:
    """Grade component health from a recorded snapshot history."""

    if not input_path.exists():
        raise typer.BadParameter(f"{input_path} does not exist", param_hint="--in")
    try:
        history = load_history_json(input_path, capacity=capacity)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc

    predictions = TrendAnalyzer(Thresholds(), min_snapshots=min_snapshots).analyze(history)
    if not predictions:
        typer.echo(f"Collecting data: {len(history)}/{min_snapshots} snapshots")

    figure_path = None
    if plot:
        try:
            figure_path = generate_plots(history, report_dir)
        except RuntimeError as exc:
            typer.echo(f"[warning] plotting skipped: {exc}")

    export_results(
        predictions,
        history,
        report_dir,
        figure_path=figure_path,
        input_path=input_path,
    )

    for pred in predictions:
        typer.echo(f"[{pred.severity.value}] {pred.component}: {pred.message} ({pred.timeframe})")
    typer.echo(f"Report written to {report_dir}")


@app.command()
def demo(
    out_dir: Path = typer.Option(Path("demo_output"), "--out", help="Target directory for demo report."),
) -> None:
    """Generate a synthetic snapshot history and reports."""

    run_demo(out_dir)
    typer.echo(f"Demo history and report written to {out_dir}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
