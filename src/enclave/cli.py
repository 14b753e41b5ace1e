"""Enclave command line interface."""

import asyncio
import sys
from pathlib import Path

import anthropic
import click
import structlog
from rich.console import Console
from rich.table import Table

from enclave.config import get_settings
from enclave.core.errors import EnclaveError, RequestCancelledError
from enclave.isolation import PROFILES, SessionController
from enclave.memory.store import MemoryStore
from enclave.orchestrator import Orchestrator
from enclave.utils.logging import configure_logging
from enclave.utils.shutdown import get_shutdown_handler

console = Console()
logger = structlog.get_logger()

EXIT_WORDS = {"exit", "quit", ":q"}


@click.group()
@click.version_option(package_name="enclave")
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL)")
def main(log_level: str | None):
    """Enclave - isolated workspaces with a team of assistant workers.

    Commands run inside a container or a virtual machine, chosen per session,
    under one of the canonical isolation profiles.
    """
    settings = get_settings()
    configure_logging(log_level or settings.log_level, settings.log_format)


@main.command()
def profiles():
    """List the canonical isolation profiles."""
    table = Table(title="Isolation Profiles")
    table.add_column("Name", style="cyan")
    table.add_column("CPU")
    table.add_column("Memory (GB)")
    table.add_column("Disk (GB)")
    table.add_column("Network")
    table.add_column("Clipboard")
    table.add_column("GPU")

    for profile in PROFILES.values():
        if not profile.network.enabled:
            network = "[red]off[/red]"
        elif profile.network.allowed_hosts:
            network = f"[yellow]{', '.join(profile.network.allowed_hosts)}[/yellow]"
        else:
            network = "[green]on[/green]"
        table.add_row(
            profile.name,
            f"{profile.resources.cpu_cores:g}",
            f"{profile.resources.memory_gb:g}",
            f"{profile.resources.disk_gb:g}",
            network,
            "yes" if profile.clipboard else "no",
            "yes" if profile.gpu else "no",
        )

    console.print(table)


@main.command()
@click.argument("command")
@click.option("--profile", default=None, help="Isolation profile (defaults to DEFAULT_PROFILE)")
@click.option("--backend", type=click.Choice(["container", "vm"]), default=None, help="Isolation backend")
@click.option("--timeout", type=float, default=None, help="Command timeout in seconds")
@click.option("--save-to", type=click.Path(file_okay=False, path_type=Path), help="Export outputs here on stop")
def run(command: str, profile: str | None, backend: str | None, timeout: float | None, save_to: Path | None):
    """Start a session, run COMMAND in it, then stop it.

    Examples:
        enclave run "python3 --version"
        enclave run "ls /mnt/user-data" --profile isolated --backend vm
    """
    settings = get_settings()

    async def _run() -> int:
        controller = SessionController(settings)
        session = await controller.start(profile=profile, backend=backend)
        console.print(f"[dim]Session {session.id} ({session.profile.name}, {session.backend.value})[/dim]")
        try:
            result = await controller.runtime.execute(command, timeout=timeout)
        finally:
            exported = await controller.stop(save_files_to=save_to)
            for item in exported:
                style = "green" if item.success else "red"
                console.print(f"[{style}]{item.source} -> {item.destination if item.success else item.error}[/{style}]")

        if result.stdout:
            console.print(result.stdout, end="", markup=False, highlight=False)
        if result.stderr:
            console.print(result.stderr, end="", style="red", markup=False, highlight=False)
        return result.exit_code

    try:
        exit_code = asyncio.run(_run())
    except EnclaveError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    sys.exit(exit_code)


@main.command()
@click.option("--profile", default=None, help="Isolation profile (defaults to DEFAULT_PROFILE)")
@click.option("--backend", type=click.Choice(["container", "vm"]), default=None, help="Isolation backend")
@click.option("--no-session", is_flag=True, help="Chat without starting an isolated environment")
@click.option("--save-to", type=click.Path(file_okay=False, path_type=Path), help="Export outputs here on exit")
def chat(profile: str | None, backend: str | None, no_session: bool, save_to: Path | None):
    """Talk to the assistant; ctrl-c cancels a pending reply, twice exits."""
    settings = get_settings()

    async def _chat() -> None:
        orchestrator = Orchestrator(settings)
        await orchestrator.start()

        handler = get_shutdown_handler(settings.shutdown_timeout)
        handler.install_signal_handlers()
        handler.on_request(orchestrator.cancel_current_task)

        controller: SessionController | None = None
        if not no_session:
            controller = SessionController(settings)
            try:
                session = await controller.start(profile=profile, backend=backend)
            except EnclaveError:
                handler.restore_signal_handlers()
                await orchestrator.shutdown()
                raise
            orchestrator.set_runtime(controller.runtime, session.profile)
            console.print(f"[dim]Session {session.id} ({session.profile.name}, {session.backend.value})[/dim]")

            async def stop_session() -> None:
                await controller.stop(save_files_to=save_to)

            handler.register_cleanup_callback(stop_session)
        handler.register_cleanup_callback(orchestrator.shutdown)

        console.print("[bold]Enclave[/bold] - type 'exit' to quit\n")
        try:
            while not handler.shutdown_requested:
                try:
                    text = await asyncio.to_thread(console.input, "[cyan]you>[/cyan] ")
                except EOFError:
                    break
                text = text.strip()
                if not text:
                    continue
                if text.lower() in EXIT_WORDS:
                    break

                task = asyncio.create_task(orchestrator.send_message(text))
                handler.track_task(task)
                try:
                    reply = await task
                except RequestCancelledError:
                    console.print("[yellow]Cancelled.[/yellow]")
                    continue
                except (EnclaveError, anthropic.APIError) as e:
                    logger.error("chat_turn_failed", error=str(e))
                    console.print(f"[red]Error: {e}[/red]")
                    continue
                console.print(f"[green]{orchestrator.active_worker.value}>[/green] {reply.text}\n")
        finally:
            await handler.shutdown()

    try:
        asyncio.run(_chat())
    except EnclaveError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include completed deadlines")
def deadlines(show_all: bool):
    """List deadlines with their phase and progress."""
    settings = get_settings()
    store = MemoryStore.from_settings(settings)
    store.load()

    items = store.memory.deadlines.deadlines if show_all else store.get_active_deadlines()
    if not items:
        console.print("[yellow]No deadlines found.[/yellow]")
        return

    table = Table(title="Deadlines")
    table.add_column("Title", style="cyan")
    table.add_column("Due")
    table.add_column("Phase")
    table.add_column("Priority")
    table.add_column("Progress", justify="right")
    table.add_column("Status", style="dim")

    for deadline in sorted(items, key=lambda d: d.due_date):
        table.add_row(
            deadline.title,
            deadline.due_date.strftime("%Y-%m-%d"),
            deadline.phase.value,
            deadline.priority.value,
            f"{deadline.progress_percent}% ({deadline.completed_microtasks}/{len(deadline.microtasks)})",
            deadline.status.value,
        )

    console.print(table)


if __name__ == "__main__":
    main()
