"""``hoa-integrity``: operator CLI for verifying and exporting vote hash chains.

Commands:
    verify      Verify one poll's chain (``--poll-id``) or every chain (``--all``)
    export      Write the raw chain data of every poll to a JSON file
    check-file  Re-verify an exported file without a database

Exit codes: 0 when every verified chain is intact, 1 when any broken link was
found, 2 for usage errors, unreadable input or unknown polls.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hoa_democracy import __version__
from hoa_democracy.core.config import get_settings
from hoa_democracy.core.logging import configure_logging
from hoa_democracy.db.session import create_db_engine
from hoa_democracy.obs import initialise_tracing, span_from_traceparent
from hoa_democracy.services.errors import InvalidInputError, PollNotFoundError
from hoa_democracy.services.integrity_reporting import IntegrityReportingService
from hoa_democracy.services.verifier import ChainEntry, IntegrityReport, verify_records

EXIT_VALID = 0
EXIT_BROKEN = 1
EXIT_ERROR = 2

LOGGER = logging.getLogger(__name__)


class OutputFormat(str, Enum):
    """Output format options."""

    text = "text"
    json = "json"


app = typer.Typer(
    name="hoa-integrity",
    help="Verify and export the per-poll vote hash chains.",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"hoa-integrity version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level instead of errors only."),
) -> None:
    """HOA vote integrity toolkit."""
    configure_logging(level=logging.DEBUG if verbose else logging.ERROR)
    settings = get_settings()
    # Console span export shares stdout with command output.
    if settings.enable_tracing and settings.otel_exporter_endpoint:
        initialise_tracing(
            service_name=f"{settings.app_name} integrity cli",
            endpoint=settings.otel_exporter_endpoint,
            instrument_logging=False,
        )


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}", style="bold")
    return typer.Exit(code=EXIT_ERROR)


@contextmanager
def _open_session(database_url: str | None) -> Iterator[Session]:
    settings = get_settings()
    engine = create_db_engine(database_url or settings.database_url, settings=settings)
    session = Session(engine)
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def _exit_code(reports: Iterable[IntegrityReport]) -> int:
    return EXIT_VALID if all(report.valid for report in reports) else EXIT_BROKEN


def _render_reports(reports: list[IntegrityReport], output_format: OutputFormat) -> None:
    if output_format == OutputFormat.json:
        payload = {
            "all_valid": all(report.valid for report in reports),
            "total_polls": len(reports),
            "reports": [report.to_dict() for report in reports],
        }
        console.print_json(json.dumps(payload))
        return

    if not reports:
        console.print("No polls found.", style="dim")
        return

    table = Table(title="Vote chain integrity")
    table.add_column("Poll", justify="right")
    table.add_column("Votes", justify="right")
    table.add_column("Status")
    table.add_column("Broken links", justify="right")
    for report in reports:
        status = "[green]VALID[/green]" if report.valid else "[red]BROKEN[/red]"
        table.add_row(str(report.poll_id), str(report.total_votes), status, str(report.broken_link_count))
    console.print(table)

    for report in reports:
        for link in report.broken_links:
            console.print(
                f"  poll {report.poll_id} seq {link.sequence}: {link.reason.value} "
                f"(record {link.record_id})",
            )


@app.command()
def verify(
    poll_id: Optional[int] = typer.Option(None, "--poll-id", "-p", help="Poll to verify."),
    all_polls: bool = typer.Option(False, "--all", "-a", help="Verify every poll."),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", envvar="DATABASE_URL", help="Database to read the chains from."
    ),
    traceparent: Optional[str] = typer.Option(
        None, "--traceparent", envvar="TRACEPARENT", help="W3C trace context to continue."
    ),
    output_format: OutputFormat = typer.Option(
        OutputFormat.text, "--format", "-o", help="Output format: text or json"
    ),
) -> None:
    """Recompute stored chains and report every broken link.

    Example:
        hoa-integrity verify --poll-id 3
        hoa-integrity verify --all --format json
    """
    if (poll_id is None) == (not all_polls):
        raise _fail("Pass exactly one of --poll-id or --all")

    with span_from_traceparent("cli.verify", traceparent, poll_id=poll_id, all_polls=all_polls):
        with _open_session(database_url) as session:
            reporting = IntegrityReportingService(session)
            try:
                if all_polls:
                    reports = list(reporting.export_all_chains())
                else:
                    reports = [reporting.get_full_report(poll_id)]
            except PollNotFoundError as exc:
                raise _fail(str(exc)) from exc
            except SQLAlchemyError as exc:
                raise _fail(f"Cannot read vote chains: {exc.__class__.__name__}") from exc

    _render_reports(reports, output_format)
    raise typer.Exit(code=_exit_code(reports))


@app.command()
def export(
    output: Path = typer.Argument(..., help="File to write the chain export to."),
    database_url: Optional[str] = typer.Option(
        None, "--database-url", envvar="DATABASE_URL", help="Database to read the chains from."
    ),
    traceparent: Optional[str] = typer.Option(None, "--traceparent", envvar="TRACEPARENT"),
) -> None:
    """Write every poll's stored chain to a JSON file for offline checking."""
    with span_from_traceparent("cli.export", traceparent, output=str(output)):
        with _open_session(database_url) as session:
            try:
                data = IntegrityReportingService(session).export_chain_data()
            except SQLAlchemyError as exc:
                raise _fail(f"Cannot read vote chains: {exc.__class__.__name__}") from exc

    try:
        output.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError as exc:
        raise _fail(f"Cannot write {output}: {exc.strerror}") from exc

    votes = sum(len(poll["votes"]) for poll in data["polls"])
    LOGGER.info("chain export written", extra={"path": str(output), "polls": data["total_polls"]})
    console.print(f"Exported {data['total_polls']} poll(s), {votes} vote(s) to {output}")


def _load_export(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise _fail(f"File not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise _fail(f"Invalid JSON in {path}: {exc.msg}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("polls"), list):
        raise _fail(f"{path} is not a chain export")
    return data


@app.command("check-file")
def check_file(
    path: Path = typer.Argument(..., help="Chain export produced by `hoa-integrity export`."),
    output_format: OutputFormat = typer.Option(
        OutputFormat.text, "--format", "-o", help="Output format: text or json"
    ),
) -> None:
    """Verify an exported chain file without trusting (or reaching) the server."""
    data = _load_export(path)

    reports: list[IntegrityReport] = []
    try:
        for poll in data["polls"]:
            poll_id = int(poll["poll_id"])
            entries = [ChainEntry.from_dict(vote, poll_id=poll_id) for vote in poll.get("votes", [])]
            entries.sort(key=lambda entry: (entry.sequence, entry.id))
            reports.append(verify_records(poll_id, entries))
    except (InvalidInputError, KeyError, TypeError, ValueError) as exc:
        raise _fail(f"Malformed chain export: {exc}") from exc

    _render_reports(reports, output_format)
    raise typer.Exit(code=_exit_code(reports))


if __name__ == "__main__":  # pragma: no cover
    app()
