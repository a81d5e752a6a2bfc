from __future__ import annotations

import asyncio
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

from dealflow import analysis_queue as aq
from dealflow import services
from dealflow.config import TRIGGER_MANUAL, VALID_TRIGGER_REASONS, get_policy, get_settings
from dealflow.db import get_session, init_db, session_scope
from dealflow.engines import EngineClient
from dealflow.resolver import record_source, resolve_deal_all
from dealflow.worker import process_queue, run_maintenance, run_worker

app = typer.Typer(help="Deal fact resolution and analysis queue tooling")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_url: str | None = typer.Option(None, "--db-url", help="SQLAlchemy DB URL (overrides DEALFLOW_DATABASE_URL)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    ctx.obj = {"json_output": json_output, "verbose": verbose, "db_url": db_url}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _open_db(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db_url") if ctx.obj else None)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return

    scalar_rows = [(k, _format_scalar(v)) for k, v in payload.items()
                   if isinstance(v, (str, int, float, bool)) or v is None]
    if scalar_rows:
        _render_table(title, scalar_rows)
    for key, value in payload.items():
        if isinstance(value, dict):
            _render_table(f"{title} · {key}",
                          [(k, _format_scalar(v)) for k, v in value.items()], border_style="magenta")
        elif isinstance(value, list):
            if not value:
                continue
            _render_table(f"{title} · {key}",
                          [(str(i + 1), _format_scalar(v) if not isinstance(v, dict) else json.dumps(v, default=str))
                           for i, v in enumerate(value)], border_style="yellow")


def _render_facts(deal_id: str, facts: dict[str, dict[str, Any]]) -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for col in ("Fact", "Value", "Source", "Confidence", "Updated"):
        table.add_column(col)
    for fact, rv in facts.items():
        style = "dim" if rv["is_fallback"] else ""
        table.add_row(fact, _format_scalar(rv["value"]), rv["source"], rv["confidence"],
                      _format_scalar(rv["last_updated"]), style=style)
    console.print(Panel(table, title=f"Facts · {deal_id}", border_style="cyan"))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    _open_db(ctx)
    _print("init-db", {"status": "ok", "database_url": ctx.obj.get("db_url") or get_settings().database_url}, ctx)


@app.command("ingest")
def ingest_command(
    ctx: typer.Context,
    deal_id: str = typer.Argument(..., help="Deal id."),
    provider: str = typer.Argument(..., help="Provider key, e.g. linkedin_export."),
    payload_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file with the raw payload."),
) -> None:
    payload = json.loads(payload_file.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise typer.BadParameter("payload file must contain a JSON object")
    _open_db(ctx)
    with session_scope() as session:
        rec = record_source(session, deal_id, provider, payload)
        session.commit()
        _print("ingest", {"id": rec.id, "deal_id": deal_id, "provider": provider}, ctx)


@app.command("resolve")
def resolve_command(ctx: typer.Context, deal_id: str = typer.Argument(..., help="Deal id.")) -> None:
    _open_db(ctx)
    with session_scope() as session:
        facts = {fact: rv.to_dict() for fact, rv in resolve_deal_all(session, deal_id).items()}
    if _wants_json(ctx):
        typer.echo(json.dumps({"deal_id": deal_id, "facts": facts}, indent=2, ensure_ascii=False, default=str))
        return
    _render_facts(deal_id, facts)


@app.command("refresh")
def refresh_command(
    ctx: typer.Context,
    deal_id: str = typer.Argument(..., help="Deal id."),
    reason: str = typer.Option(TRIGGER_MANUAL, "--reason", help=f"One of: {', '.join(sorted(VALID_TRIGGER_REASONS))}."),
    fund_id: str = typer.Option("", "--fund-id", help="Owning fund id."),
    user_id: str | None = typer.Option(None, "--user", help="Who is triggering."),
    force: bool = typer.Option(False, "--force", help="Queue even if policy denies the trigger."),
    wait: bool = typer.Option(False, "--wait", help="Wait (bounded) for the queued item to finish."),
) -> None:
    if reason not in VALID_TRIGGER_REASONS:
        raise typer.BadParameter(f"reason must be one of: {', '.join(sorted(VALID_TRIGGER_REASONS))}")
    _open_db(ctx)
    with session_scope() as session:
        outcome = services.ensure_fresh(session, deal_id, fund_id, reason, user_id=user_id, force=force)
        session.commit()
    payload = outcome.to_dict()
    if wait and outcome.queue_item_id is not None:
        result = asyncio.run(services.await_completion(get_session, outcome.queue_item_id))
        payload["wait"] = result.to_dict()
    _print("refresh", payload, ctx)
    if not outcome.queued:
        raise typer.Exit(code=1)


@app.command("block")
def block_command(
    ctx: typer.Context,
    deal_id: str = typer.Argument(..., help="Deal id."),
    hours: float = typer.Option(24.0, "--hours", help="Block duration in hours."),
    reason: str = typer.Option("", "--reason", help="Why the deal is blocked."),
    lift: bool = typer.Option(False, "--lift", help="Remove an existing block instead."),
) -> None:
    _open_db(ctx)
    with session_scope() as session:
        try:
            deal = aq.unblock_deal(session, deal_id) if lift else aq.block_deal(
                session, deal_id, hours=hours, reason=reason)
        except LookupError:
            raise typer.BadParameter(f"Deal {deal_id} not found")
        session.commit()
        _print("block", services.deal_summary(deal), ctx)


@app.command("work")
def work_command(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single worker pass and exit."),
    poll_seconds: float | None = typer.Option(None, "--poll-seconds", help="Seconds between passes."),
) -> None:
    _open_db(ctx)
    client = EngineClient(timeout=get_policy().engine_timeout_seconds)
    if once:
        with session_scope() as session:
            summary = asyncio.run(process_queue(session, client))
        _print("work", summary, ctx)
        return
    poll = poll_seconds if poll_seconds is not None else get_settings().worker_poll_seconds
    console.print(f"[bold cyan]Worker polling every {poll:g}s (Ctrl+C to stop)[/bold cyan]")
    try:
        asyncio.run(run_worker(get_session, client, poll_seconds=poll))
    except KeyboardInterrupt:
        console.print("[yellow]Worker stopped[/yellow]")


@app.command("maintain")
def maintain_command(ctx: typer.Context) -> None:
    _open_db(ctx)
    with session_scope() as session:
        counts = run_maintenance(session)
    _print("maintain", counts, ctx)


@app.command("health")
def health_command(ctx: typer.Context) -> None:
    _open_db(ctx)
    with session_scope() as session:
        report = aq.queue_health(session)
    _print("health", report, ctx)
    if not report["is_healthy"]:
        raise typer.Exit(code=1)


@app.command("history")
def history_command(
    ctx: typer.Context,
    deal_id: str = typer.Argument(..., help="Deal id."),
    limit: int = typer.Option(20, "--limit", help="Rows per section."),
) -> None:
    _open_db(ctx)
    with session_scope() as session:
        try:
            history = aq.analysis_history(session, deal_id, limit=limit)
        except LookupError:
            raise typer.BadParameter(f"Deal {deal_id} not found")
    _print("history", history, ctx)


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
) -> None:
    import uvicorn

    db_url = ctx.obj.get("db_url") if ctx.obj else None
    if db_url:
        # The app's lifespan initializes the database from settings.
        os.environ["DEALFLOW_DATABASE_URL"] = db_url
        get_settings.cache_clear()
    uvicorn.run("dealflow.app:app", host=host, port=port)


if __name__ == "__main__":
    app()
