"""Command-line entry points: one-off renders, retention sweep, health, server."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from docrender.browser import BrowserManager
from docrender.capture import ArtifactStore
from docrender.service import GenerationResult, RenderJob, render_document
from docrender.settings import get_settings

console = Console()
cli = typer.Typer(help="Render web pages to PDF or HTML with a headless browser.", add_completion=False)


def configure_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_time=False)],
        force=True,
    )


def _parse_headers(raw: List[str]) -> dict[str, str] | None:
    headers: dict[str, str] = {}
    for entry in raw:
        name, sep, value = entry.partition(":")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected 'Name: value', got {entry!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers or None


def _print_result(result: GenerationResult) -> None:
    table = Table(title="Render result", show_header=False)
    table.add_row("success", "[green]yes[/]" if result.success else "[red]no[/]")
    table.add_row("duration", f"{result.duration_ms} ms")
    if result.size is not None:
        table.add_row("size", str(result.size))
    if result.file_path is not None:
        table.add_row("file", str(result.file_path))
    if result.images is not None:
        table.add_row("images", f"{result.images.broken_count}/{result.images.total_images} broken")
    if result.readiness is not None and result.readiness.warnings:
        table.add_row("readiness", "\n".join(result.readiness.warnings))
    if result.error:
        table.add_row("error", f"[red]{result.error}[/]")
    console.print(table)


@cli.command()
def pdf(
    url: str = typer.Argument(..., help="Page to render."),
    report_id: Optional[str] = typer.Option(None, "--id", help="Report identifier."),
    title: Optional[str] = typer.Option(None, "--title", help="Report title used in the filename."),
    selector: Optional[str] = typer.Option(None, "--selector", help="CSS selector to await."),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra request header 'Name: value'."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Copy the PDF here."),
    test_mode: bool = typer.Option(False, "--test-mode", help="Headed, slowed browser with a pause."),
    fast: bool = typer.Option(False, "--fast", help="Skip the network-idle navigation wait."),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Render URL to a PDF file."""

    configure_logging(log_level)
    result = render_document(
        RenderJob(
            url=url,
            output="pdf",
            wait_for_selector=selector,
            auth_headers=_parse_headers(header),
            report_id=report_id,
            report_title=title,
            test_mode=test_mode,
            fast_mode=fast,
        )
    )
    if result.success and output is not None and result.file_path is not None:
        shutil.copyfile(result.file_path, output)
        console.print(f"Copied to {output}")
    _print_result(result)
    if not result.success:
        raise typer.Exit(code=1)


@cli.command()
def html(
    url: str = typer.Argument(..., help="Page to render."),
    selector: Optional[str] = typer.Option(None, "--selector", help="CSS selector to await."),
    wait_time: Optional[int] = typer.Option(None, "--wait-time", help="Extra delay after scripts settle (ms)."),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra request header 'Name: value'."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write HTML here instead of stdout."),
    test_mode: bool = typer.Option(False, "--test-mode"),
    log_level: str = typer.Option("warning", "--log-level"),
) -> None:
    """Render URL and print the resulting HTML."""

    configure_logging(log_level)
    result = render_document(
        RenderJob(
            url=url,
            output="html",
            wait_for_selector=selector,
            wait_time_ms=wait_time,
            auth_headers=_parse_headers(header),
            test_mode=test_mode,
        )
    )
    if not result.success:
        _print_result(result)
        raise typer.Exit(code=1)
    if output is not None:
        output.write_text(result.html or "", encoding="utf-8")
        _print_result(result)
    else:
        typer.echo(result.html)


@cli.command()
def sweep(log_level: str = typer.Option("info", "--log-level")) -> None:
    """Delete artifacts older than the retention window."""

    configure_logging(log_level)
    settings = get_settings()
    # Construction already sweeps once.
    store = ArtifactStore.from_settings(settings.storage)
    remaining = sum(1 for entry in store.directory.iterdir() if entry.is_file())
    console.print(f"{store.directory}: {remaining} artifact(s) retained")


@cli.command()
def health(log_level: str = typer.Option("warning", "--log-level")) -> None:
    """Launch and close a browser, reporting the version found."""

    configure_logging(log_level)
    connected, version, executable = asyncio.run(BrowserManager(get_settings().browser).check_browser())
    console.print_json(
        json.dumps({"browserConnected": connected, "browserVersion": version, "executable": executable})
    )
    if not connected:
        raise typer.Exit(code=1)


@cli.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload."),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Run the HTTP API with uvicorn."""

    configure_logging(log_level)
    uvicorn.run(
        "docrender.main:app",
        host=host or os.getenv("HOST", "0.0.0.0"),
        port=port or int(os.getenv("PORT", "3000")),
        reload=reload,
        log_level=log_level.lower(),
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
