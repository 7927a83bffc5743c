"""
SRLens command line.

Usage:
    srlens generate --out data/export.csv      # Synthetic gateway export
    srlens upload data/export.csv              # Chunked upload + assembly
    srlens metrics SESSION --view upi          # Grouped SR metrics
    srlens rca SESSION --period-days 7         # Period-over-period RCA
    srlens insights SESSION                    # Failure spikes and trends
    srlens breakdown SESSION --value ISSUER_BANK
    srlens analyze SESSION --wait              # Full-file background analysis
"""

import hashlib
import io
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from srlens.config import load_settings
from srlens.errors import SRLensError
from srlens.pipeline.views import VIEWS
from srlens.service import AnalyticsService

console = Console()
logger = logging.getLogger("srlens")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _emit(payload, as_json: bool, render=None) -> None:
    if as_json or render is None:
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        render(payload)


def _sr_table(title: str, rows: list[dict], key: str = "group") -> Table:
    table = Table(title=title)
    for column in (key, "volume", "success", "failed", "sr"):
        table.add_column(column, justify="left" if column == key else "right")
    for row in rows:
        table.add_row(
            str(row[key]),
            f"{row['volume']:,}",
            f"{row['success_count']:,}",
            f"{row['failed_count']:,}",
            f"{row['sr']:.2f}%",
        )
    return table


def filter_options(func):
    """Shared filter flags, collected into ``filter_payload``."""
    options = [
        click.option("--from", "start_date", default=None, help="Start date or timestamp (inclusive)."),
        click.option("--to", "end_date", default=None, help="End date (whole day) or timestamp."),
        click.option("--mode", "payment_modes", multiple=True, help="Payment mode allow-list."),
        click.option("--merchant", "merchant_ids", multiple=True, help="Merchant id allow-list."),
        click.option("--pg", "pgs", multiple=True, help="Gateway allow-list."),
        click.option("--bank", "banks", multiple=True, help="Bank or UPI flow allow-list."),
        click.option("--card-type", "card_types", multiple=True, help="Card network allow-list."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _filter_payload(kwargs: dict) -> dict:
    payload = {}
    for key in ("start_date", "end_date"):
        value = kwargs.pop(key, None)
        if value:
            payload[key] = value
    for key in ("payment_modes", "merchant_ids", "pgs", "banks", "card_types"):
        values = kwargs.pop(key, ())
        if values:
            payload[key] = list(values)
    return payload


class SRLensGroup(click.Group):
    """Turns SRLensError into a readable message and exit code (2 when retryable)."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except SRLensError as exc:
            console.print(f"[bold red]{exc.code}[/bold red] ({exc.stage}): {exc.message}")
            if exc.details:
                console.print(json.dumps(exc.details, default=str))
            sys.exit(2 if exc.retryable else 1)


@click.group(cls=SRLensGroup)
@click.option("--env-file", default=None, help="Load settings from this .env file.")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON payloads.")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx, env_file, as_json, verbose):
    """SRLens: payment success-rate analytics and root-cause analysis."""
    settings = load_settings(env_file)
    configure_logging("DEBUG" if verbose else settings.log_level)
    ctx.obj = {"settings": settings, "as_json": as_json}


def _service(ctx) -> AnalyticsService:
    service = ctx.obj.get("service")
    if service is None:
        service = ctx.obj["service"] = AnalyticsService.from_settings(ctx.obj["settings"])
        ctx.call_on_close(service.close)
    return service


# ---------------------------------------------------------------------------
# Data and uploads
# ---------------------------------------------------------------------------

@cli.command()
@click.option("--out", "out_path", type=click.Path(dir_okay=False, path_type=Path), default=Path("data/export.csv"))
@click.option("--rows", default=20_000, show_default=True)
@click.option("--seed", default=42, show_default=True)
def generate(out_path, rows, seed):
    """Generate a synthetic gateway export."""
    console.rule("[bold]Data Generation[/bold]")
    from srlens.data_generator.generate import write_export
    write_export(out_path, rows=rows, seed=seed)
    console.print("[green]Data generation complete.[/green]")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--chunk-size", type=int, default=None, help="Part size in bytes.")
@click.pass_context
def upload(ctx, path, chunk_size):
    """Upload a file in parts and assemble it."""
    service = _service(ctx)
    assembler = service.assembler
    size = path.stat().st_size

    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for block in iter(lambda: fh.read(ctx.obj["settings"].copy_buffer_size), b""):
            digest.update(block)

    session = assembler.init_session(path.name, size, chunk_size, "text/csv", digest.hexdigest())
    with path.open("rb") as fh:
        for part_index in range(1, session.expected_parts + 1):
            body = fh.read(session.max_part_size(part_index))
            assembler.accept_part(session.id, part_index, io.BytesIO(body), len(body))
    result = assembler.complete(session.id, session.expected_parts)

    payload = {"session_id": session.id, **result.to_dict()}
    _emit(payload, ctx.obj["as_json"], lambda p: console.print(
        f"[green]Uploaded[/green] {path.name}: session [bold]{p['session_id']}[/bold], "
        f"{p['size_bytes']:,} bytes, sha256 {p['sha256']}"
    ))


@cli.command()
@click.argument("session_id")
@click.pass_context
def status(ctx, session_id):
    """Show an upload session."""
    _emit(_service(ctx).assembler.describe(session_id), True)


@cli.command()
@click.argument("session_id")
@click.pass_context
def abort(ctx, session_id):
    """Abort an upload session and release its parts."""
    _service(ctx).assembler.abort(session_id)
    console.print(f"Aborted {session_id}")


# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("session_id")
@click.option("--view", type=click.Choice(sorted(VIEWS)), default="overview", show_default=True)
@filter_options
@click.pass_context
def metrics(ctx, session_id, view, **kwargs):
    """Grouped SR metrics for one view."""
    payload = _service(ctx).metrics(session_id, view, _filter_payload(kwargs))

    def render(p):
        totals = p["totals"]
        console.rule(f"[bold]{p['view']}[/bold]")
        console.print(f"{totals['volume']:,} transactions, SR {totals['sr']:.2f}%")
        for name, rows in p["groups"].items():
            if rows:
                console.print(_sr_table(name, rows))
        if p["failure_reasons"]:
            table = Table(title="failure reasons")
            for column in ("label", "failures", "adjusted SR", "impact"):
                table.add_column(column)
            for row in p["failure_reasons"][:15]:
                table.add_row(row["label"], f"{row['failure_count']:,}", f"{row['adjusted_sr']:.2f}%", f"+{row['impact']:.2f}")
            console.print(table)

    _emit(payload, ctx.obj["as_json"], render)


@cli.command()
@click.argument("session_id")
@click.option("--period-days", default=7, show_default=True)
@click.option("--group", "payment_mode", default="ALL", show_default=True, help="Payment-mode group to analyze.")
@filter_options
@click.pass_context
def rca(ctx, session_id, period_days, payment_mode, **kwargs):
    """Period-over-period root-cause analysis."""
    payload = _service(ctx).rca(session_id, _filter_payload(kwargs), period_days, payment_mode)

    def render(p):
        if p["empty"]:
            console.print("[yellow]No dated transactions match these filters.[/yellow]")
            return
        comparison = p["period_comparison"]
        console.rule(f"[bold]RCA: {p['payment_mode']}[/bold]")
        console.print(
            f"SR {comparison['previous']['sr']:.2f}% -> {comparison['current']['sr']:.2f}% "
            f"({comparison['sr_delta']:+.2f}pp, {comparison['sr_movement']}), "
            f"primary cause: [bold]{comparison['primary_cause']}[/bold]"
        )
        for insight in comparison["insights"]:
            console.print(f"  [{insight['confidence']}] {insight['statement']}")
        for customer in p["problematic_customers"][:5]:
            console.print(
                f"  problematic customer {customer['identifier']}: {customer['retries']} retries, "
                f"retry SR {customer['retry_sr']:.2f}%"
            )

    _emit(payload, ctx.obj["as_json"], render)


@cli.command()
@click.argument("session_id")
@filter_options
@click.pass_context
def insights(ctx, session_id, **kwargs):
    """Failure descriptions that spiked or trend upward, highest impact first."""
    payload = _service(ctx).failure_insights(session_id, _filter_payload(kwargs))

    def render(p):
        if not p["insights"]:
            console.print("[yellow]No failure insights for these filters.[/yellow]")
            return
        windows = p["windows"]
        console.rule(
            f"[bold]Failure insights[/bold] ({windows['window_type']}: "
            f"{windows['previous']['label']} vs {windows['current']['label']})"
        )
        table = Table()
        for column in ("mode", "description", "share", "delta", "trend", "spike", "period", "impact"):
            table.add_column(column)
        for row in p["insights"]:
            table.add_row(
                row["payment_mode"],
                row["description"],
                f"{row['failure_share']:.2f}%",
                f"{row['volume_delta']:+,}",
                row["trend_direction"],
                row["spike_type"] or "-",
                row["primary_spike_period"],
                f"{row['impact_score']:.1f}",
            )
        console.print(table)
        for row in p["insights"][:5]:
            console.print(f"  {row['summary']}. {row['recommendation']}")

    _emit(payload, ctx.obj["as_json"], render)


@cli.command()
@click.argument("session_id")
@click.option("--dimension", default="Failure Category", show_default=True, help="RCA dimension to drill into.")
@click.option("--value", required=True, help="Dimension value, e.g. ISSUER_BANK.")
@click.option("--status", "analysis_type", type=click.Choice(["FAILED", "USER_DROPPED"], case_sensitive=False),
              default="FAILED", show_default=True)
@click.option("--period", type=click.Choice(["current", "previous"]), default="current", show_default=True)
@click.option("--period-days", default=7, show_default=True)
@filter_options
@click.pass_context
def breakdown(ctx, session_id, dimension, value, analysis_type, period, period_days, **kwargs):
    """Payment-mode and gateway split of one RCA dimension value."""
    payload = _service(ctx).rca_breakdown(
        session_id, _filter_payload(kwargs), period_days, dimension, value, analysis_type, period
    )

    def render(p):
        if p["empty"]:
            console.print("[yellow]No dated transactions match these filters.[/yellow]")
            return
        console.rule(f"[bold]{p['dimension']} = {p['value']}[/bold] ({p['analysis_type']}, {p['period']} window)")
        console.print(f"{p['total']:,} transactions")
        for title, rows in (("payment modes", p["payment_modes"]), ("gateways", p["pgs"])):
            table = Table(title=title)
            for column in ("name", "count", "share"):
                table.add_column(column)
            for row in rows:
                table.add_row(row["name"], f"{row['count']:,}", f"{row['percent']:.2f}%")
            console.print(table)

    _emit(payload, ctx.obj["as_json"], render)


@cli.command()
@click.argument("session_id")
@filter_options
@click.pass_context
def bounds(ctx, session_id, **kwargs):
    """Earliest and latest matching timestamps."""
    _emit(_service(ctx).time_bounds(session_id, _filter_payload(kwargs)), True)


@cli.command()
@click.argument("session_id")
@click.option("--rows", "max_rows", type=int, default=None)
@filter_options
@click.pass_context
def sample(ctx, session_id, max_rows, **kwargs):
    """First matching rows, capped."""
    _emit(_service(ctx).sample(session_id, _filter_payload(kwargs), max_rows), True)


@cli.command()
@click.argument("session_id")
@filter_options
@click.pass_context
def options(ctx, session_id, **kwargs):
    """Distinct values for each filterable field."""
    _emit(_service(ctx).filter_options(session_id, _filter_payload(kwargs)), True)


@cli.command()
@click.argument("session_id")
@click.option("--wait", is_flag=True, help="Block until the analysis finishes.")
@click.option("--status-only", is_flag=True, help="Report the current job without starting one.")
@click.pass_context
def analyze(ctx, session_id, wait, status_only):
    """Run (or report) the full-file background analysis."""
    service = _service(ctx)
    if status_only:
        _emit(service.analysis_status(session_id), True)
        return
    started = service.start_analysis(session_id)
    if not started["started"]:
        console.print("Analysis already running or completed.")
    if wait:
        _emit(service.wait_for_analysis(session_id), True)
    else:
        _emit(started, ctx.obj["as_json"], lambda p: console.print(f"Analysis queued for {p['stored_file_id']}"))


if __name__ == "__main__":
    cli()
