# src/helloagain/cli.py
"""helloagain Command Line Interface.

Entry point for the helloagain CLI tool. Every command builds its own
EnrichmentService from settings, runs one async operation, and closes it.
Expected failures (HelloAgainError) are printed as one message on stderr
with exit code 1, never as a traceback.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, TypeVar

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from helloagain import __version__
from helloagain.batch.reconciler import filter_enriched, unique_cities, unique_countries
from helloagain.batch.scheduler import TickReport
from helloagain.batch.schema import PROFILE_SCHEMA, validate_strict_schema
from helloagain.contracts.errors import HelloAgainError
from helloagain.contracts.jobs import Job
from helloagain.contracts.records import RowFilter
from helloagain.core.config import HelloAgainSettings, load_settings
from helloagain.export import to_csv, to_json
from helloagain.service import EnrichmentService, describe_failure

T = TypeVar("T")

app = typer.Typer(
    name="helloagain",
    help="helloagain: enrich LinkedIn connections with batch inference.",
    no_args_is_help=True,
)


@dataclass
class _CliState:
    settings_path: Path | None = None


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"helloagain version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    settings: Path | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to settings YAML file (environment variables still apply).",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,  # We handle existence check ourselves for better error message
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """helloagain: enrich LinkedIn connections with batch inference."""
    from helloagain.core.logging import configure_logging

    # Logging goes to stderr; command output on stdout stays pipeable.
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho(
            "Warning: --env-file ignored because --no-dotenv is set.",
            fg=typer.colors.YELLOW,
            err=True,
        )

    ctx.obj = _CliState(settings_path=settings.expanduser() if settings is not None else None)


def _load_settings(ctx: typer.Context) -> HelloAgainSettings:
    state: _CliState = ctx.obj if isinstance(ctx.obj, _CliState) else _CliState()
    try:
        return load_settings(state.settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {state.settings_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {state.settings_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _run(ctx: typer.Context, operation: Callable[[EnrichmentService], Awaitable[T]]) -> T:
    """Run one async operation against a fresh service, mapping expected failures to exit 1."""
    settings = _load_settings(ctx)

    async def runner() -> T:
        async with EnrichmentService.from_settings(settings) as service:
            return await operation(service)

    try:
        return asyncio.run(runner())
    except HelloAgainError as e:
        typer.echo(f"Error: {describe_failure(e)}", err=True)
        raise typer.Exit(1) from None


def _format_job(job: Job) -> str:
    counts = f"{job.counts.completed}/{job.counts.total}" if job.counts is not None else "-"
    if job.counts is not None and job.counts.failed:
        counts = f"{counts} ({job.counts.failed} failed)"
    description = job.row_context.description if job.row_context is not None else ""
    return f"{job.job_id}  {job.status.value:<11}  {job.created_at:%Y-%m-%d %H:%M}  {counts:<9}  {description}".rstrip()


def _echo_tick(report: TickReport) -> None:
    for job in report.jobs:
        typer.echo(_format_job(job))
    if report.failed:
        typer.echo(f"{report.failed} job(s) could not be polled; retrying next tick", err=True)


@app.command()
def upload(
    ctx: typer.Context,
    archive: Path = typer.Argument(..., help="LinkedIn data export ZIP."),
) -> None:
    """Store a LinkedIn export archive for later submission."""
    path = archive.expanduser()
    if not path.is_file():
        typer.echo(f"Error: File not found: {archive}", err=True)
        raise typer.Exit(1)

    blob = path.read_bytes()
    info = _run(ctx, lambda service: service.store_archive(blob, path.name))
    typer.echo(f"Stored {info.filename}: {info.row_count} connections ({info.size_bytes} bytes)")


@app.command("set-key")
def set_key(
    ctx: typer.Context,
    api_key: str = typer.Option(
        ...,
        "--key",
        prompt="OpenAI API key",
        hide_input=True,
        help="OpenAI API key (prompted if omitted).",
    ),
    verify: bool = typer.Option(
        True,
        "--verify/--no-verify",
        help="Check the key against the remote before saving.",
    ),
) -> None:
    """Save the API key in the local store."""
    _run(ctx, lambda service: service.save_api_key(api_key, verify=verify))
    typer.echo("API key saved." if not verify else "API key verified and saved.")


@app.command()
def stats(
    ctx: typer.Context,
    preview: int = typer.Option(
        0,
        "--preview",
        "-p",
        min=0,
        help="Also show the first N connections.",
    ),
) -> None:
    """Show statistics for the uploaded connections."""

    async def operation(service: EnrichmentService) -> None:
        summary = await service.connection_stats()
        typer.echo(f"Total connections: {summary.total}")
        typer.echo(f"  With email:      {summary.with_email}")
        typer.echo(f"  With company:    {summary.with_company}")
        typer.echo(f"  With position:   {summary.with_position}")
        typer.echo(f"  Last {summary.recent_window_days} days:    {summary.recent}")
        if preview:
            typer.echo("")
            for row in await service.preview(preview):
                company = row.company or "-"
                position = row.position or "-"
                typer.echo(f"  {row.full_name}  |  {company}  |  {position}")

    _run(ctx, operation)


@app.command("validate-schema")
def validate_schema(
    schema_file: Path | None = typer.Argument(
        None,
        help="JSON schema file to check (default: the built-in profile schema).",
    ),
) -> None:
    """Check a response schema against the strict-mode rules."""
    if schema_file is None:
        schema = PROFILE_SCHEMA
        source = "built-in profile schema"
    else:
        try:
            schema = json.loads(schema_file.expanduser().read_text(encoding="utf-8"))
        except FileNotFoundError:
            typer.echo(f"Error: Schema file not found: {schema_file}", err=True)
            raise typer.Exit(1) from None
        except json.JSONDecodeError as e:
            typer.echo(f"Error: {schema_file} is not valid JSON: {e}", err=True)
            raise typer.Exit(1) from None
        source = str(schema_file)

    violations = validate_strict_schema(schema)
    if violations:
        typer.echo(f"{source}: {len(violations)} violation(s)", err=True)
        for violation in violations:
            typer.echo(f"  - {violation}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{source}: valid")


@app.command()
def submit(
    ctx: typer.Context,
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-n",
        min=1,
        help="Only submit the first N connections.",
    ),
    description: str | None = typer.Option(
        None,
        "--description",
        "-d",
        help="Job description stored with the remote job.",
    ),
) -> None:
    """Compile the uploaded connections into a batch and submit it."""
    job = _run(ctx, lambda service: service.submit(limit=limit, description=description))
    typer.echo(f"Submitted job {job.job_id} ({job.status.value})")
    if job.row_context is not None:
        typer.echo(f"  {job.row_context.description}")


@app.command()
def jobs(
    ctx: typer.Context,
    active: bool = typer.Option(
        False,
        "--active",
        help="Only show jobs that are still running.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """List tracked jobs, newest first."""

    async def operation(service: EnrichmentService) -> list[Job]:
        return await (service.ledger.list_active() if active else service.jobs())

    found = _run(ctx, operation)
    if json_output:
        typer.echo(json.dumps([job.to_dict() for job in found], indent=2))
        return
    if not found:
        typer.echo("No jobs.")
        return
    for job in found:
        typer.echo(_format_job(job))


@app.command()
def refresh(
    ctx: typer.Context,
    job_id: str | None = typer.Argument(None, help="Job to refresh (default: all active jobs)."),
) -> None:
    """Poll the remote once for job status."""
    if job_id is not None:
        job = _run(ctx, lambda service: service.refresh_job(job_id))
        typer.echo(_format_job(job))
        return

    report = _run(ctx, lambda service: service.refresh())
    if report.polled == 0:
        typer.echo("No active jobs.")
        return
    _echo_tick(report)
    if report.failed:
        raise typer.Exit(1)


@app.command()
def watch(
    ctx: typer.Context,
    interval: float | None = typer.Option(
        None,
        "--interval",
        "-i",
        min=1.0,
        help="Seconds between polls (default: from settings).",
    ),
) -> None:
    """Poll active jobs on an interval until none remain (Ctrl-C to stop)."""

    async def operation(service: EnrichmentService) -> None:
        idle = asyncio.Event()

        def on_tick(report: TickReport) -> None:
            _echo_tick(report)
            if report.polled == 0 or (report.failed == 0 and not any(job.is_active for job in report.jobs)):
                idle.set()

        scheduler = await service.scheduler(on_tick=on_tick, interval_seconds=interval)
        scheduler.start()
        try:
            await idle.wait()
        finally:
            await scheduler.stop()
        typer.echo("No active jobs remain.")

    try:
        _run(ctx, operation)
    except KeyboardInterrupt:
        typer.echo("Stopped.", err=True)
        raise typer.Exit(130) from None


@app.command()
def results(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Completed job to reconcile."),
    output_format: Literal["csv", "json"] = typer.Option(
        "csv",
        "--format",
        "-f",
        help="Output format: 'csv' or 'json'.",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write to this file instead of stdout.",
    ),
    only_enriched: bool = typer.Option(False, "--only-enriched", help="Only rows that were enriched."),
    only_with_location: bool = typer.Option(False, "--only-with-location", help="Only rows with a location."),
    only_with_stats: bool = typer.Option(False, "--only-with-stats", help="Only rows with profile stats."),
    errors: bool | None = typer.Option(
        None,
        "--errors/--no-errors",
        help="Only rows with (or without) an error.",
    ),
    country: str | None = typer.Option(None, "--country", help="Only rows in this country."),
    city: str | None = typer.Option(None, "--city", help="Only rows in this city."),
    list_places: bool = typer.Option(
        False,
        "--list-places",
        help="List the distinct countries and cities instead of rows.",
    ),
) -> None:
    """Fetch a completed job's results and merge them onto the connections."""
    merged = _run(ctx, lambda service: service.results(job_id))
    typer.echo(merged.summary(), err=True)

    rows = filter_enriched(
        merged.enriched_rows,
        RowFilter(
            only_enriched=only_enriched,
            only_with_location=only_with_location,
            only_with_stats=only_with_stats,
            has_error=errors,
            country=country,
            city=city,
        ),
    )

    if list_places:
        typer.echo("Countries: " + ", ".join(unique_countries(rows)))
        typer.echo("Cities: " + ", ".join(unique_cities(rows)))
        return

    rendered = to_json(rows) if output_format == "json" else to_csv(rows)
    if output is None:
        typer.echo(rendered.rstrip("\n"))
    else:
        output.expanduser().write_text(rendered, encoding="utf-8")
        typer.echo(f"Wrote {len(rows)} rows to {output}", err=True)


@app.command()
def remote(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=100, help="How many remote jobs to list."),
) -> None:
    """List jobs known to the remote service."""
    candidates = _run(ctx, lambda service: service.list_remote(limit))
    if not candidates:
        typer.echo("No remote jobs.")
        return
    for candidate in candidates:
        summary = candidate.summary
        marker = "*" if candidate.already_imported else " "
        description = summary.description or ""
        typer.echo(f"{marker} {summary.job_id}  {summary.status.value:<11}  {summary.created_at:%Y-%m-%d %H:%M}  {description}".rstrip())
    typer.echo("(* = already tracked)", err=True)


@app.command()
def reattach(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Remote job to start tracking."),
) -> None:
    """Import a remote job into the local ledger."""
    job = _run(ctx, lambda service: service.reattach(job_id))
    typer.echo(_format_job(job))


@app.command()
def cancel(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Job to cancel."),
) -> None:
    """Ask the remote to cancel a running job."""
    job = _run(ctx, lambda service: service.cancel(job_id))
    typer.echo(_format_job(job))


@app.command()
def delete(
    ctx: typer.Context,
    job_id: str | None = typer.Argument(None, help="Job to forget."),
    all_jobs: bool = typer.Option(False, "--all", help="Forget every tracked job."),
) -> None:
    """Remove jobs from the local ledger. Remote jobs are not affected."""
    if all_jobs:
        _run(ctx, lambda service: service.ledger.clear())
        typer.echo("Cleared all jobs.")
        return
    if job_id is None:
        typer.echo("Error: Give a job id or --all.", err=True)
        raise typer.Exit(1)

    removed = _run(ctx, lambda service: service.delete(job_id))
    if not removed:
        typer.echo(f"Error: Unknown job {job_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted job {job_id}")


if __name__ == "__main__":
    app()
