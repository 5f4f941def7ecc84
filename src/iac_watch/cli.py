"""Command-line interface for iac-watch."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

import click
from rich.console import Console

from iac_watch import __version__
from iac_watch.config import ExtensionConfig, is_supported_file_type, load_config
from iac_watch.editor import InMemoryEditor
from iac_watch.errors import ConfigurationError
from iac_watch.fixer import FixSynthesizer
from iac_watch.installer import InstallationManager, default_installation_source, detect_installation
from iac_watch.logs import configure_logging
from iac_watch.models import Diagnostic, StatusState, TextDocument, apply_edit
from iac_watch.reporter import create_reporter
from iac_watch.scheduler import ScanScheduler
from iac_watch.store import DiagnosticStore

console = Console()
err_console = Console(stderr=True)

STATUS_LABELS = {
    StatusState.READY: "[blue]Checkov ready[/blue]",
    StatusState.SYNCING: "[dim]Checkov working...[/dim]",
    StatusState.PASSED: "[green]Checkov passed[/green]",
    StatusState.FAILED: "[red]Checkov found issues[/red]",
    StatusState.ERROR: "[red]Checkov error[/red]",
    StatusState.MISSING_CONFIGURATION: "[yellow]Checkov is missing configuration[/yellow]",
}

FAILED_STATES = (StatusState.ERROR, StatusState.MISSING_CONFIGURATION)


class ConsoleStatusReporter:
    """Status reporter printing to stderr."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self.last_state: Optional[StatusState] = None
        self.errors: list[str] = []

    def set_status(self, state: StatusState, version: Optional[str] = None, message: Optional[str] = None) -> None:
        changed = state != self.last_state
        self.last_state = state
        if self.quiet or not changed or state == StatusState.READY:
            return
        suffix = f" ({message})" if message else ""
        err_console.print(f"{STATUS_LABELS[state]}{suffix}")

    def show_error(self, message: str, actions: Sequence[str] = ()) -> None:
        self.errors.append(message)
        err_console.print(f"[red]{message}[/red]")

    def show_warning(self, message: str) -> None:
        err_console.print(f"[yellow]{message}[/yellow]")


def _load_settings(ctx: click.Context) -> ExtensionConfig:
    try:
        return load_config(ctx.obj["settings"])
    except ConfigurationError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(2)


async def _scan_file(
    path: Path, config: ExtensionConfig, status: ConsoleStatusReporter
) -> tuple[TextDocument, list[Diagnostic]]:
    editor = InMemoryEditor()
    document = editor.open_file(path)
    editor.focus(document.uri)
    store = DiagnosticStore()
    scheduler = ScanScheduler(
        editor,
        settings=lambda: config,
        installer=InstallationManager(default_installation_source(), config.resolved_install_dir()),
        sink=store,
        status=status,
        workspace_roots=[path.parent],
    )
    scheduler.start()
    try:
        await scheduler.drain()
    finally:
        await scheduler.aclose()
    return document, store.get(document.uri)


def _apply_fixes(document: TextDocument, diagnostics: list[Diagnostic]) -> tuple[str, int]:
    """Apply every available fix, bottom-up so earlier anchors stay valid."""
    synthesizer = FixSynthesizer()
    text = document.text
    applied = 0
    for diagnostic in sorted(diagnostics, key=lambda d: (d.start_line, d.end_line), reverse=True):
        edit = synthesizer.synthesize_fix(diagnostic, text)
        if edit is None:
            continue
        text = apply_edit(text, edit)
        applied += 1
    return text, applied


@click.group()
@click.version_option(version=__version__, prog_name="iac-watch")
@click.option(
    "--settings",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="IAC_WATCH_SETTINGS",
    help="YAML settings file",
)
@click.option("--log-dir", type=click.Path(file_okay=False, path_type=Path), help="Write iac-watch.log here")
@click.option("--verbose", "-v", is_flag=True, help="Log to the console")
@click.pass_context
def main(ctx: click.Context, settings: Optional[Path], log_dir: Optional[Path], verbose: bool) -> None:
    """iac-watch - Checkov scans with editor-style diagnostics."""
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    configure_logging(log_dir, "DEBUG" if verbose else "INFO", console=verbose)


@main.command()
def version() -> None:
    """Show version information."""
    click.echo(f"iac-watch version {__version__}")


@main.command("config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Show the effective configuration."""
    config = _load_settings(ctx)
    click.echo(json.dumps(config.to_dict(), indent=2))


@main.command()
@click.option("--engine-version", help="Checkov version to install (default: from settings)")
@click.pass_context
def install(ctx: click.Context, engine_version: Optional[str]) -> None:
    """Install or update Checkov."""
    config = _load_settings(ctx)
    manager = InstallationManager(default_installation_source(), config.resolved_install_dir())

    try:
        state = asyncio.run(manager.ensure_installed(engine_version or config.engine_version))
    except ConfigurationError as e:
        err_console.print(f"[red]{e}[/red]")
        sys.exit(2)

    if not state.is_ready:
        err_console.print(f"[red]Installation failed: {state.last_error}[/red]")
        sys.exit(1)
    console.print(f"[green]Checkov {state.version} is ready ({state.installation.method})[/green]")


@main.command()
@click.pass_context
def about(ctx: click.Context) -> None:
    """Show installation details."""
    config = _load_settings(ctx)
    installation = asyncio.run(detect_installation(config.resolved_install_dir()))
    if installation is None:
        console.print(
            "[yellow]Checkov has not been installed. Run 'iac-watch install' first.[/yellow]"
        )
        sys.exit(1)
    console.print(f"Checkov version: {installation.version}")
    console.print(f"Installation method: {installation.method}")
    console.print(f"Executable: {installation.path}")


@main.command()
def fixes() -> None:
    """List rules with built-in quick fixes."""
    for rule_id in FixSynthesizer().available_fixes():
        click.echo(rule_id)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "-f",
    type=click.Choice(["json", "table", "sarif"]),
    default="table",
    help="Output format",
)
@click.option("--fix", is_flag=True, help="Apply available quick fixes to the file")
@click.option("--timeout", type=float, help="Upper bound in seconds for the scan")
@click.pass_context
def scan(ctx: click.Context, file: Path, format: str, fix: bool, timeout: Optional[float]) -> None:
    """Scan one infrastructure-as-code FILE."""
    if not is_supported_file_type(file.name):
        err_console.print(f"[yellow]Unsupported file type: {file.name}[/yellow]")
        sys.exit(2)

    config = _load_settings(ctx)
    if timeout is not None:
        config.scan_timeout = timeout if timeout > 0 else None

    is_machine_format = format in ("json", "sarif")
    status = ConsoleStatusReporter(quiet=is_machine_format)
    document, diagnostics = asyncio.run(_scan_file(file, config, status))

    if status.errors or status.last_state in FAILED_STATES:
        if not status.errors:
            err_console.print("[red]Checkov scan failed. Check the log for details.[/red]")
        sys.exit(2)

    click.echo(create_reporter(format, tool_version=__version__).generate(str(file), diagnostics))

    if fix and diagnostics:
        fixed_text, applied = _apply_fixes(document, diagnostics)
        if applied:
            file.write_text(fixed_text, encoding="utf-8")
        if not is_machine_format:
            console.print(f"[green]Applied {applied} fix(es) to {file}[/green]")

    if diagnostics:
        if not is_machine_format:
            console.print(f"\n[red]Found {len(diagnostics)} failed check(s)[/red]")
        sys.exit(1)
    elif not is_machine_format:
        console.print("\n[green]No failed checks[/green]")
