from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from .config import load_env_files, load_settings
from .errors import FrmError
from .events import CommunicationEvent, EventBus
from .orchestrator import Orchestrator

app = typer.Typer(help="FRM document generator")


class JsonlEventLog:
    """Observer that appends one JSON line per communication event."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, event: CommunicationEvent) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(event.model_dump_json() + "\n")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def _root_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """FRM generator CLI root."""
    _configure_logging(verbose)
    load_env_files()


def _orchestrator(events_log: Optional[Path]) -> Orchestrator:
    bus = EventBus(JsonlEventLog(events_log) if events_log else None)
    return Orchestrator(load_settings(refresh=True), bus=bus)


@app.command("generate")
def cmd_generate(
    domain: Optional[str] = typer.Option(None, help="Domain to focus the generated problem on"),
    scenario_hint: Optional[str] = typer.Option(None, help="Free-text scenario guidance for the model"),
    out: Optional[Path] = typer.Option(None, dir_okay=False, help="Write the document here instead of stdout"),
    events_log: Optional[Path] = typer.Option(None, dir_okay=False, help="Append events as JSON lines"),
) -> None:
    """Generate one schema-conformant FRM document."""
    orchestrator = _orchestrator(events_log)
    try:
        document = asyncio.run(orchestrator.generate_document(domain, scenario_hint))
    except FrmError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(1)

    text = json.dumps(document, indent=2, ensure_ascii=False)
    if out is None:
        typer.echo(text)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text + "\n", encoding="utf-8")
    typer.echo(f"Wrote {out}")


@app.command("ping")
def cmd_ping(
    events_log: Optional[Path] = typer.Option(None, dir_okay=False, help="Append events as JSON lines"),
) -> None:
    """Check that the configured provider answers."""
    orchestrator = _orchestrator(events_log)
    try:
        result = asyncio.run(orchestrator.ping_provider())
    except FrmError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo(result.model_dump_json(indent=2))


@app.command("validate")
def cmd_validate(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="FRM document (JSON) to check"),
    events_log: Optional[Path] = typer.Option(None, dir_okay=False, help="Append events as JSON lines"),
) -> None:
    """Validate an existing FRM document; exits 1 when it does not conform."""
    try:
        candidate = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        typer.echo(f"ERROR: {path} is not valid JSON: {exc}", err=True)
        raise typer.Exit(1)

    orchestrator = _orchestrator(events_log)
    try:
        report = orchestrator.validate_document(candidate)
    except FrmError as exc:
        typer.echo(f"ERROR: {exc}", err=True)
        raise typer.Exit(1)
    typer.echo(report.model_dump_json(indent=2))
    if not report.is_valid:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
