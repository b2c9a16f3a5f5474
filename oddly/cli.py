from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from oddly import payments
from oddly.auditor import Auditor
from oddly.config import get_settings
from oddly.db import init_db, session_scope
from oddly.errors import AppError
from oddly.ethics import EthicsAuditor, interpret_fairness, interpret_gini
from oddly.evidence import EvidenceBuilder

app = typer.Typer(help="oddly-brilliant bounty platform: governance and payout tooling")
console = Console()

_STATUS_STYLE = {"GREEN": "green", "AMBER": "yellow", "RED": "red"}


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    project_root: str | None = typer.Option(
        None,
        "--project-root",
        help="Directory holding data/ and config/ (defaults to the current directory).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["ODDLY_HOME"] = str(Path(project_root).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.4f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _fail(exc: AppError) -> None:
    console.print(f"[red]{exc.code}[/red] {exc.message}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    init_db(db_path)
    payload = {"status": "ok", "database": str(db_path or get_settings().database_path)}
    if _wants_json(ctx):
        _echo_json(payload)
        return
    _render_table("init-db", [(k, _format_scalar(v)) for k, v in payload.items()])


@app.command("heartbeat")
def heartbeat_command(
    ctx: typer.Context,
    challenge_id: str | None = typer.Argument(None, help="Challenge to check (system-wide when omitted)"),
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    init_db(db_path)
    with session_scope() as session:
        try:
            result = Auditor(session).heartbeat(challenge_id)
        except AppError as exc:
            _fail(exc)
    payload = result.as_dict()
    if _wants_json(ctx):
        _echo_json(payload)
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Details")
    for check in payload["checks"]:
        style = _STATUS_STYLE[check["status"]]
        status = f"[{style}]{check['status']}[/{style}]"
        if check.get("blocksAction"):
            status += " [red](blocks)[/red]"
        table.add_row(check["name"], status, check["details"])
    overall = payload["overall"]
    console.print(Panel(
        table,
        title=f"Heartbeat: {challenge_id or 'system'}",
        subtitle=f"overall {overall}",
        border_style=_STATUS_STYLE[overall],
    ))


@app.command("validate-payout")
def validate_payout_command(
    ctx: typer.Context,
    challenge_id: str = typer.Argument(..., help="Challenge to validate"),
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    init_db(db_path)
    with session_scope() as session:
        payload = Auditor(session).validate_payout(challenge_id).as_dict()
    if _wants_json(ctx):
        _echo_json(payload)
    else:
        rows = [("ok", str(payload["ok"]))]
        rows += [("violation", v) for v in payload["violations"]]
        rows += [("warning", w) for w in payload["warnings"]]
        _render_table(f"Payout validation: {challenge_id}", rows,
                      border_style="green" if payload["ok"] else "red")
    if not payload["ok"]:
        raise typer.Exit(code=1)


@app.command("splits")
def splits_command(
    ctx: typer.Context,
    challenge_id: str = typer.Argument(..., help="Challenge to split"),
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    """Preview the proportional split without creating payments."""
    init_db(db_path)
    with session_scope() as session:
        try:
            splits = payments.calculate_splits(session, challenge_id)
        except AppError as exc:
            _fail(exc)
    payload = payments.splits_as_dicts(splits)
    if _wants_json(ctx):
        _echo_json(payload)
        return
    if not payload:
        console.print("[yellow]No contributions yet.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Contributor", style="bold")
    table.add_column("Contribution")
    table.add_column("Tokens", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Amount", justify="right")
    for split in payload:
        table.add_row(split["contributorId"], split["contributionId"], f"{split['tokenValue']:.0f}",
                      f"{split['percentage']:.2f}%", f"{split['amount']:.2f}")
    console.print(Panel(table, title=f"Splits: {challenge_id}", border_style="cyan"))


@app.command("audit")
def audit_command(
    ctx: typer.Context,
    challenge_id: str = typer.Argument(..., help="Challenge to audit"),
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    """Run a fairness audit and store it."""
    init_db(db_path)
    with session_scope() as session:
        try:
            result, _ = EthicsAuditor(session).audit_challenge(challenge_id)
        except AppError as exc:
            _fail(exc)
        session.commit()
    payload = result.as_dict()
    if _wants_json(ctx):
        _echo_json(payload)
        return

    rows = [
        ("fairness", f"{result.fairness_score:.2f} ({interpret_fairness(result.fairness_score)})"),
        ("gini", f"{result.gini_coefficient:.3f} ({interpret_gini(result.gini_coefficient)})"),
        ("red flags", ", ".join(result.red_flags) or "-"),
        ("yellow flags", ", ".join(result.yellow_flags) or "-"),
        ("green flags", ", ".join(result.green_flags) or "-"),
    ]
    _render_table(f"Ethics audit: {challenge_id}", rows,
                  border_style="red" if result.red_flags else "green")
    for rec in result.recommendations:
        style = {"CRITICAL": "red", "WARNING": "yellow"}.get(rec.type, "cyan")
        console.print(f"[{style}]{rec.type}[/{style}] {rec.description}")


@app.command("verify-package")
def verify_package_command(
    ctx: typer.Context,
    package_id: str = typer.Argument(..., help="Package id or verification token"),
    db_path: str | None = typer.Option(None, "--db", help="SQLite file (defaults to data/oddly.db)"),
) -> None:
    init_db(db_path)
    with session_scope() as session:
        try:
            payload = EvidenceBuilder(session).verify_package(package_id)
        except AppError as exc:
            _fail(exc)
    if _wants_json(ctx):
        _echo_json(payload)
    else:
        _render_table(f"Evidence package: {package_id}",
                      [(k, _format_scalar(v)) for k, v in payload.items()],
                      border_style="green" if payload["valid"] else "red")
    if not payload["valid"]:
        raise typer.Exit(code=1)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8001, help="Port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
) -> None:
    import uvicorn

    uvicorn.run("oddly.app:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
