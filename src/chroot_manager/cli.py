"""Command-line interface for chroot-manager."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chroot_manager.config import SandboxConfig, load_config
from chroot_manager.errors import ChrootManagerError
from chroot_manager.logging_config import setup_logging
from chroot_manager.session import SandboxStatus, SessionController
from chroot_manager.system import is_root

console = Console()
logger = logging.getLogger("chroot_manager.cli")

EXAMPLES = """\
Examples:
  # Prepare and enter a shell:
  sudo chroot-manager shell

  # Run a command inside the chroot:
  sudo chroot-manager run apt-get update

  # Run as another guest account:
  sudo chroot-manager run --user builder -- make -j4

  # Show status:
  sudo chroot-manager status

  # Stop and unmount everything:
  sudo chroot-manager stop

chroot is NOT a strong security mechanism. The root directory must already
hold an installed base system.
"""


def _config(ctx: click.Context) -> SandboxConfig:
    return ctx.obj["config"]


def _invoke(ctx: click.Context, action: Callable[[SessionController], Any]) -> Any:
    """Run a controller action, turning failures into logged exit codes."""
    controller = SessionController(_config(ctx))
    try:
        return action(controller)
    except ChrootManagerError as e:
        logger.error(str(e))
        ctx.exit(e.exit_code)


@click.group(epilog=EXAMPLES, context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Configuration file path")
@click.option("--root", help="Override the sandbox root directory")
@click.option("--name", help="Override the sandbox name")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    root: str | None,
    name: str | None,
    verbose: bool,
) -> None:
    """Prepare, use and tear down a bind-mounted chroot sandbox."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    try:
        config = load_config(config_path, overrides={"root": root, "name": name})
    except ChrootManagerError as e:
        console.print(f"[red]Error:[/red] {e}")
        ctx.exit(e.exit_code)

    ctx.obj["config"] = config
    # Non-root runs fail before touching the host; keep them out of the log.
    setup_logging(config, verbose, log_to_file=is_root() and ctx.invoked_subcommand != "help")


@cli.command()
@click.pass_context
def prepare(ctx: click.Context) -> None:
    """Mount proc, sys, dev, bind dirs and copy resolv.conf; leave them mounted."""
    _invoke(ctx, lambda c: c.prepare())


@cli.command()
@click.argument("user", required=False)
@click.pass_context
def shell(ctx: click.Context, user: str | None) -> None:
    """Prepare, open an interactive shell as USER, then tear everything down."""
    ctx.exit(_invoke(ctx, lambda c: c.shell(user)) or 0)


@cli.command(context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False})
@click.option("--user", "-u", help="Guest account to run as (default: configured user)")
@click.argument("argv", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def run(ctx: click.Context, user: str | None, argv: tuple[str, ...]) -> None:
    """Prepare, run ARGV inside the chroot, then tear everything down."""
    ctx.exit(_invoke(ctx, lambda c: c.run(list(argv), user)) or 0)


@cli.command()
@click.option("--force", is_flag=True, help="Tear down even if another live session holds the lock")
@click.pass_context
def stop(ctx: click.Context, force: bool) -> None:
    """Unmount every chroot mount and remove the lock."""
    report = _invoke(ctx, lambda c: c.stop(force=force))
    if report is not None and not report.ok:
        console.print(f"[yellow]⚠ {report.failure_count} mount(s) could not be unmounted[/yellow]")
        ctx.exit(1)


def _render_status(status: SandboxStatus) -> None:
    console.print(Panel.fit(f"Chroot '{status.name}' at {status.root}"))

    table = Table(title="Mounts")
    table.add_column("Target", style="cyan")
    table.add_column("Kind", style="white")
    table.add_column("State", style="green")

    for entry in status.special:
        state = "[green]mounted[/green]" if entry.mounted else "[dim]not mounted[/dim]"
        if not entry.enabled:
            state += " [dim](disabled)[/dim]"
        table.add_row(str(entry.target), entry.kind.value, state)
    console.print(table)

    binds = Table(title="Bind mounts")
    binds.add_column("Source", style="cyan")
    binds.add_column("Target", style="white")
    binds.add_column("State", style="green")
    for entry in status.binds:
        state = "[green]mounted[/green]" if entry.mounted else "[dim]not mounted[/dim]"
        if not entry.source_exists:
            state += " [yellow](missing on host)[/yellow]"
        binds.add_row(entry.source or "", str(entry.target), state)
    console.print(binds)

    configured = status.configured
    active = sum(1 for entry in configured if entry.mounted)
    if status.nothing_mounted:
        console.print("State: [dim]not prepared[/dim]")
    elif status.fully_mounted:
        console.print(f"State: [green]prepared[/green] ({active}/{len(configured)} mounts active)")
    else:
        console.print(f"State: [yellow]partially prepared[/yellow] ({active}/{len(configured)} mounts active)")

    lock = status.lock
    if lock is None or not status.lock_present:
        console.print(f"Lock: {lock.path if lock else ''} [dim](absent)[/dim]")
    elif lock.pid is None:
        console.print(f"Lock: {lock.path} [yellow](present, unreadable)[/yellow]")
    elif lock.alive:
        console.print(f"Lock: {lock.path} [green](held by running process {lock.pid}, {lock.mode})[/green]")
    else:
        console.print(f"Lock: {lock.path} [yellow](present, owner {lock.pid} not running, {lock.mode})[/yellow]")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show mounts, bind mounts and lock state."""
    result = _invoke(ctx, lambda c: c.status())
    if result is not None:
        _render_status(result)


@cli.command("help")
@click.pass_context
def help_(ctx: click.Context) -> None:
    """Show this message."""
    click.echo(ctx.parent.get_help() if ctx.parent else ctx.get_help())


def main() -> None:
    """Entry point."""
    try:
        rv = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(1)
    except click.Abort:
        console.print("[red]Aborted![/red]")
        sys.exit(1)
    sys.exit(rv if isinstance(rv, int) else 0)


if __name__ == "__main__":
    main()
