"""
Keystone - Main CLI Application

Command-line interface for inspecting and exercising the lifecycle
orchestrator.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import LifecycleConfig, get_config
from core.errors import KeystoneError
from lifecycle import (
    DependencyResolver,
    ServiceDescriptor,
    ServiceOrchestrator,
)
from observability import bind_context, setup_observability, shutdown_observability

# Initialize app
app = typer.Typer(
    name="keystone",
    help="Keystone - dependency-ordered service startup and shutdown",
    add_completion=False
)

console = Console()
logger = logging.getLogger("keystone.cli")

DEMO_SERVICES = [
    ("database", []),
    ("cache", ["database"]),
    ("rate_limiter", ["cache"]),
    ("context_store", ["database", "cache"]),
    ("ai_client", ["rate_limiter"]),
    ("bot", ["ai_client", "context_store"]),
]


@app.callback()
def configure(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show lifecycle logs"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Render logs as JSON"),
):
    """Set up logging and tracing before running a command."""
    settings = get_config().observability
    setup_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otlp_endpoint,
        enabled=settings.tracing_enabled,
        log_level="DEBUG" if verbose else "WARNING",
        json_logs=json_logs,
        console_traces=settings.trace_console_export,
        log_stream="stderr",
        force=True,
    )
    bind_context(command=ctx.invoked_subcommand)
    ctx.call_on_close(shutdown_observability)


@app.command()
def plan(
    file: Path = typer.Argument(..., help="JSON file: list of {name, dependencies}"),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
):
    """Show the initialization and shutdown order for a service graph."""
    if not file.exists():
        console.print(f"[red]Error: File not found: {file}[/red]")
        raise typer.Exit(1)

    try:
        entries = json.loads(file.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: Invalid JSON in {file}: {e}[/red]")
        raise typer.Exit(1)

    if not isinstance(entries, list):
        console.print("[red]Error: Expected a JSON list of services[/red]")
        raise typer.Exit(1)

    descriptors = [
        ServiceDescriptor(
            name=entry.get("name"),
            dependencies=entry.get("dependencies") or (),
            critical=bool(entry.get("critical", False)),
        )
        for entry in entries
        if isinstance(entry, dict)
    ]

    try:
        ordered = DependencyResolver().resolve(descriptors)
    except KeystoneError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    init_order = [d.name for d in ordered]
    shutdown_order = list(reversed(init_order))

    if as_json:
        console.print_json(json.dumps({
            "initialization_order": init_order,
            "shutdown_order": shutdown_order,
        }))
        return

    table = Table(title="Initialization Plan")
    table.add_column("#", justify="right")
    table.add_column("Service", style="cyan")
    table.add_column("Depends on")
    table.add_column("Critical")

    for index, descriptor in enumerate(ordered, start=1):
        table.add_row(
            str(index),
            descriptor.name,
            ", ".join(descriptor.dependencies) or "-",
            "yes" if descriptor.critical else "",
        )

    console.print(table)
    console.print(f"Shutdown order: {' -> '.join(shutdown_order)}")


@app.command()
def demo(
    fail: Optional[str] = typer.Option(None, "--fail", "-f", help="Service whose initialize() fails"),
    fail_times: int = typer.Option(0, "--fail-times", help="Fail only the first N attempts (0 = always)"),
    critical: bool = typer.Option(False, "--critical", help="Mark the failing service critical"),
    attempts: int = typer.Option(1, "--attempts", "-a", help="Retry attempts for every service"),
    delay: float = typer.Option(0.05, "--delay", help="Seconds each sample service takes to start"),
):
    """Start and stop a sample service graph."""
    names = [name for name, _ in DEMO_SERVICES]
    if fail and fail not in names:
        console.print(f"[red]Error: Unknown service '{fail}'. Choose from: {', '.join(names)}[/red]")
        raise typer.Exit(1)

    console.print(Panel.fit(
        "[bold blue]Keystone - Lifecycle Demo[/bold blue]",
        border_style="blue"
    ))

    descriptors = _demo_descriptors(fail, fail_times, critical, attempts, delay)
    config = LifecycleConfig(
        default_retry_delay=0.05,
        rollback_timeout=2.0,
        shutdown_timeout=2.0,
        install_signal_handlers=False,
    )
    orchestrator = ServiceOrchestrator(config=config)

    ok = asyncio.run(_run_demo(orchestrator, descriptors))
    _display_stats(orchestrator)

    if not ok:
        raise typer.Exit(1)


@app.command("config")
def show_config(
    as_json: bool = typer.Option(False, "--json", help="Print the configuration as JSON"),
):
    """Show the effective lifecycle configuration."""
    settings = get_config().to_dict()

    if as_json:
        console.print_json(json.dumps(settings))
        return

    table = Table(title="Lifecycle Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    for key, value in settings["lifecycle"].items():
        if isinstance(value, list):
            value = ", ".join(value)
        table.add_row(key, str(value))

    console.print(table)
    console.print(f"Environment: {settings['env']}")


class DemoService:
    """Sample service that takes ``delay`` seconds to start and stop."""

    def __init__(self, name: str, delay: float, should_fail: Callable[[], bool]):
        self.name = name
        self.delay = delay
        self.should_fail = should_fail
        self.started = False

    async def initialize(self) -> None:
        await asyncio.sleep(self.delay)
        if self.should_fail():
            raise ConnectionError(f"{self.name} could not connect")
        self.started = True

    async def shutdown(self) -> None:
        await asyncio.sleep(self.delay / 2)
        self.started = False


def _demo_descriptors(
    fail: Optional[str],
    fail_times: int,
    critical: bool,
    attempts: int,
    delay: float,
) -> List[ServiceDescriptor]:
    # shared across retries: a fresh instance is created per attempt
    remaining = {"failures": fail_times}

    def should_fail(name: str) -> bool:
        if name != fail:
            return False
        if fail_times <= 0:
            return True
        if remaining["failures"] > 0:
            remaining["failures"] -= 1
            return True
        return False

    def factory(name: str) -> Callable[[], DemoService]:
        return lambda: DemoService(name, delay, lambda: should_fail(name))

    return [
        ServiceDescriptor(
            name=name,
            factory=factory(name),
            dependencies=deps,
            critical=critical and name == fail,
            retry_attempts=attempts,
            retry_delay=0.05,
        )
        for name, deps in DEMO_SERVICES
    ]


async def _run_demo(orchestrator: ServiceOrchestrator, descriptors: List[ServiceDescriptor]) -> bool:
    try:
        registry = await orchestrator.initialize_services(descriptors)
    except KeystoneError as e:
        logger.warning(f"Demo startup failed: {e.error_code}")
        console.print(f"[red]Startup failed: {e}[/red]")
        report = orchestrator.last_rollback
        if report is not None and report.total:
            console.print(
                f"Rolled back {len(report.succeeded)}/{report.total}: "
                f"{', '.join(report.attempted)}"
            )
        return False

    console.print(f"[green]Started {len(registry)} services[/green]")
    console.print(f"Initialization order: {' -> '.join(registry.get_initialization_order())}")
    shutdown_order = registry.get_shutdown_order()

    report = await orchestrator.shutdown(registry)
    console.print(f"Shutdown order: {' -> '.join(shutdown_order)}")
    if report.failed:
        console.print(f"[yellow]Shutdown failures: {', '.join(report.failed)}[/yellow]")
    return True


def _display_stats(orchestrator: ServiceOrchestrator) -> None:
    stats = orchestrator.get_initialization_stats()

    table = Table(title=f"Initialization ({stats.initialized}/{stats.total} in {stats.duration_ms:.0f} ms)")
    table.add_column("Service", style="cyan")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Status")

    for service in stats.services:
        status = "[green]ready[/green]" if service.success else "[red]failed[/red]"
        table.add_row(service.name, str(service.attempts), f"{service.duration_ms:.1f}", status)

    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
