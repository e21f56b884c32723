"""
keelscan CLI - Command Line Interface

Entry point for running container image scans, inspecting the installed
scanners and browsing scan history.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, List

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from keelscan.core.config import OrchestratorConfig, load_config
from keelscan.core.constants import LOG_LEVELS, ScanSource, ScanStatus, SEVERITY_LEVELS
from keelscan.core.exceptions import KeelScanError

# Version
__version__ = "0.1.0"

# Create CLI app
app = typer.Typer(
    name="keelscan",
    help="keelscan - Container image scan orchestrator",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for output
console = Console()

STATUS_COLORS = {
    "queued": "blue",
    "running": "yellow",
    "success": "green",
    "failed": "red",
    "cancelled": "dim",
}

SEVERITY_COLORS = {
    "critical": "red",
    "high": "red",
    "medium": "yellow",
    "low": "blue",
    "unknown": "dim",
}


class _State:
    config_file: Optional[Path] = None
    log_level: Optional[str] = None


state = _State()


def setup_logging(level: str) -> None:
    """Route log records through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def get_config() -> OrchestratorConfig:
    try:
        config = load_config(state.config_file)
    except KeelScanError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(code=1)
    if state.log_level:
        if state.log_level.lower() not in LOG_LEVELS:
            console.print(f"[red]Error:[/red] Unknown log level: {state.log_level}")
            raise typer.Exit(code=1)
        config.log_level = state.log_level.lower()
    setup_logging(config.log_level)
    return config


def open_database(config: OrchestratorConfig):
    from keelscan.storage.database import Database

    db = Database(config.database_path)
    db.init_db()
    return db


@app.callback()
def main_options(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file",
        exists=True,
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level (debug, info, warning, error)",
    ),
) -> None:
    """Container image scan orchestrator."""
    state.config_file = config
    state.log_level = log_level


# ============================================================================
# Main Commands
# ============================================================================

@app.command()
def scan(
    image: str = typer.Argument(..., help="Image name (e.g., library/nginx)"),
    tag: str = typer.Option("latest", "--tag", "-t", help="Image tag"),
    source: ScanSource = typer.Option(
        ScanSource.REGISTRY,
        "--source",
        "-s",
        help="Where the image comes from",
        case_sensitive=False,
    ),
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help="Registry host"),
    tar_path: Optional[Path] = typer.Option(
        None,
        "--tar-path",
        help="docker-archive tarball (source=tar)",
    ),
    docker_image_id: Optional[str] = typer.Option(
        None,
        "--image-id",
        help="Local docker image ID (source=local)",
    ),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher runs first"),
    scanners: Optional[List[str]] = typer.Option(
        None,
        "--scanner",
        help="Scanner to run (repeatable, defaults to all enabled)",
    ),
    watch: bool = typer.Option(True, "--watch/--no-watch", help="Show live progress"),
) -> None:
    """
    Scan a container image and wait for the result.
    """
    from keelscan.core.audit import AuditLogger
    from keelscan.core.models import ScanRequest
    from keelscan.notifications import build_webhook_manager
    from keelscan.orchestrator import ScanOrchestrator

    config = get_config()

    request = ScanRequest(
        image=image,
        tag=tag,
        source=source,
        registry=registry,
        docker_image_id=docker_image_id,
        tar_path=str(tar_path) if tar_path else None,
        scanners=tuple(scanners) if scanners else None,
    )

    console.print(Panel.fit(
        f"[bold cyan]keelscan[/bold cyan]\n\n"
        f"Image: [yellow]{request.image_ref}[/yellow]\n"
        f"Source: [green]{source.value}[/green]\n"
        f"Scanners: [magenta]{', '.join(request.scanners or config.enabled_scanners)}[/magenta]",
        title="Scan Configuration",
    ))

    async def run_scan():
        db = open_database(config)
        audit = AuditLogger(config.work_dir / "audit")
        orchestrator = ScanOrchestrator(
            config,
            db,
            audit=audit,
            notifier=build_webhook_manager(config),
        )
        try:
            await orchestrator.start()
            result = await orchestrator.start_scan(request, priority=priority)
            console.print(f"[blue]Request ID:[/blue] {result.request_id}")

            async with orchestrator.subscribe(result.request_id) as events:
                if watch:
                    with Progress(
                        SpinnerColumn(),
                        TextColumn("[progress.description]{task.description}"),
                        BarColumn(),
                        TextColumn("{task.percentage:>3.0f}%"),
                        console=console,
                    ) as progress:
                        task = progress.add_task("[cyan]Starting...", total=100)
                        async for event in events:
                            step = event.step or (event.status.value if event.status else "Waiting")
                            progress.update(task, completed=event.progress, description=f"[cyan]{step}")
                else:
                    async for _ in events:
                        pass

            return orchestrator.get_scan_job(result.request_id)
        finally:
            await orchestrator.stop()
            audit.close()
            db.close()

    try:
        job = asyncio.run(run_scan())
    except KeelScanError as e:
        console.print(f"[red]Error during scan:[/red] {e}")
        raise typer.Exit(code=1)

    if job is None:
        console.print("[red]Error:[/red] Scan result is no longer available")
        raise typer.Exit(code=1)

    _print_job_summary(job)

    if job.status != ScanStatus.SUCCESS:
        raise typer.Exit(code=1)


def _print_job_summary(job) -> None:
    color = STATUS_COLORS.get(job.status.value.lower(), "white")
    console.print(f"[{color}]{job.status.value.upper()}[/{color}] {job.request.image_ref}")

    if job.error:
        console.print(f"[red]Error:[/red] {job.error}")

    if job.results is None:
        return

    table = Table(title="Scanner Results")
    table.add_column("Scanner", style="cyan")
    table.add_column("Status")
    table.add_column("Duration", style="blue")
    table.add_column("Error", style="red")

    for name, result in job.results.results.items():
        status = "[green]ok[/green]" if result.success else (
            "[yellow]timeout[/yellow]" if result.timed_out else "[red]failed[/red]"
        )
        table.add_row(name, status, f"{result.duration_ms / 1000:.1f}s", (result.error or "")[:80])

    console.print(table)

    if job.results.partial:
        console.print("[yellow]![/yellow] Some scanners failed; results are partial")

    console.print("\n[bold]Vulnerabilities by Severity:[/bold]")
    for severity in SEVERITY_LEVELS:
        count = job.results.vulnerability_counts.get(severity, 0)
        color = SEVERITY_COLORS.get(severity, "white")
        console.print(f"  [{color}]{severity.capitalize()}:[/{color}] {count}")


@app.command()
def scanners() -> None:
    """Show enabled scanners, their availability and versions."""
    from keelscan.scanners import build_adapters

    config = get_config()

    try:
        adapters = build_adapters(
            config.enabled_scanners,
            bin_path=config.scanner_bin_path,
            kill_grace_period=config.kill_grace_period,
        )
    except KeelScanError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title="Scanners")
    table.add_column("Scanner", style="cyan")
    table.add_column("Binary", style="white")
    table.add_column("Available")
    table.add_column("Version", style="green")
    table.add_column("Timeout", style="blue")

    async def inspect_all():
        rows = []
        for name, adapter in adapters.items():
            available = await adapter.check_available()
            version = await adapter.get_version() if available else "-"
            rows.append((name, adapter.binary, available, version))
        return rows

    all_ok = True
    for name, binary, available, version in asyncio.run(inspect_all()):
        mark = "[green]✓[/green]" if available else "[red]✗[/red]"
        all_ok = all_ok and available
        table.add_row(name, binary, mark, version, f"{config.timeout_for(name)}s")

    console.print(table)

    if not all_ok:
        console.print("[yellow]![/yellow] Missing scanners will be reported as failed adapters")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of scans to show"),
    status: Optional[List[ScanStatus]] = typer.Option(
        None,
        "--status",
        help="Only show scans in this status (repeatable)",
        case_sensitive=False,
    ),
) -> None:
    """List persisted scans, newest first."""
    config = get_config()

    try:
        db = open_database(config)
        scans = db.list_scans(statuses=status or None, limit=limit)
        db.close()
    except KeelScanError as e:
        console.print(f"[red]Error listing scans:[/red] {e}")
        raise typer.Exit(code=1)

    if not scans:
        console.print("[yellow]No scans found.[/yellow]")
        return

    table = Table(title=f"Recent Scans (showing {len(scans)} of {limit} max)")
    table.add_column("Scan ID", style="cyan")
    table.add_column("Image", style="yellow")
    table.add_column("Status", style="magenta")
    table.add_column("Created", style="blue")
    table.add_column("Critical/High", style="red")
    table.add_column("Error", style="dim")

    for record in scans:
        scan_status = record["status"].value
        color = STATUS_COLORS.get(scan_status.lower(), "white")
        image = f"{record['registry'] + '/' if record['registry'] else ''}{record['image']}:{record['tag']}"
        counts = record["vulnerability_counts"]
        table.add_row(
            record["id"][:12],
            image,
            f"[{color}]{scan_status}[/{color}]",
            record["created_at"][:16].replace("T", " "),
            f"{counts.get('critical', 0)}/{counts.get('high', 0)}" if counts else "-",
            (record["error"] or "")[:60],
        )

    console.print(table)


@app.command()
def recover() -> None:
    """Mark scans interrupted by a previous process as failed."""
    from keelscan.orchestrator import ScanOrchestrator

    config = get_config()

    async def run_recovery():
        db = open_database(config)
        try:
            orchestrator = ScanOrchestrator(config, db, adapters={})
            return await orchestrator.recover_orphans()
        finally:
            db.close()

    try:
        recovered = asyncio.run(run_recovery())
    except KeelScanError as e:
        console.print(f"[red]Error during recovery:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Recovered {recovered} interrupted scan(s)")


@app.command("init-db")
def init_db() -> None:
    """Create or migrate the scan database."""
    config = get_config()

    try:
        db = open_database(config)
        db.close()
    except KeelScanError as e:
        console.print(f"[red]Error initializing database:[/red] {e}")
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Database ready at {config.database_path}")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"[bold cyan]keelscan[/bold cyan] version [yellow]{__version__}[/yellow]")


# ============================================================================
# Entry Point
# ============================================================================

def main() -> None:
    """Main entry point for CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
