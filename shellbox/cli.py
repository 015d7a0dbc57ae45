import json
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from shellbox.config import DEFAULT_CONFIG, find_config, init_config, load_config, save_global_config
from shellbox.errors import SandboxError
from shellbox.log import LOGS_FILE, read_logs, write_log
from shellbox.runner import BatchSession
from shellbox.tracing import StageTimer


def _load_config_or_exit(console):
    try:
        return load_config()
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)


@click.group(invoke_without_command=True)
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx):
    """shellbox: a persistent Docker sandbox for running shell commands."""
    if ctx.invoked_subcommand is None:
        shell()


@main.command()
@click.option("--name", "sandbox_name", default=None, help="Container name for this project's sandbox.")
@click.option("--image", default=None, help="Image name to build and run.")
@click.option("--dockerfile", default=None, help="Base Dockerfile (relative to the project).")
@click.option("--workdir", default=None, help="Directory to cd into before each batch.")
def init(sandbox_name, image, dockerfile, workdir):
    """Initialize shellbox in the current project. Creates .shellboxconfig."""
    if find_config():
        click.echo(".shellboxconfig already exists.")
        return
    config_path = init_config(
        sandbox_name=sandbox_name, image=image, dockerfile=dockerfile, workdir=workdir,
    )
    click.echo(f"Created {config_path}")


@main.command()
@click.argument("commands", nargs=-1, required=True)
@click.option("--workdir", "-C", default=None, help="Directory to cd into first.")
def run(commands, workdir):
    """Run one or more commands in the sandbox and print the transcript.

    Example: shellbox run "export a=1" 'echo $a'
    """
    console = Console()
    config = _load_config_or_exit(console)
    try:
        transcript = BatchSession(config).run(list(commands), workdir=workdir)
    except SandboxError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    click.echo(transcript, nl=False)


@main.command()
def restart():
    """Rebuild the sandbox image and replace the container."""
    console = Console()
    config = _load_config_or_exit(console)
    timer = StageTimer(console)
    console.print("[bold]Rebuilding sandbox...[/bold]")
    try:
        info = BatchSession(config).restart()
    except SandboxError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    timer.mark("restart")
    console.print(f"  [green]Sandbox ready[/green]  [dim]{info.name} ({info.id[:12]})[/dim]")


@main.command()
def status():
    """Show the sandbox container state."""
    console = Console()
    config = _load_config_or_exit(console)
    session = BatchSession(config)
    try:
        info = session.sandbox.status()
    except SandboxError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)

    handle = session.sandbox.handle
    table = Table(title="Sandbox")
    table.add_column("Name", style="bold cyan")
    table.add_column("Image", style="dim")
    table.add_column("Container", style="dim")
    table.add_column("State", style="bold")
    table.add_column("Host dir", style="dim")
    if info is None:
        table.add_row(handle.name, handle.image_ref, "-", "[dim]absent[/dim]", handle.host_dir)
    else:
        state = "[green]running[/green]" if info.running else f"[yellow]{info.state}[/yellow]"
        table.add_row(handle.name, handle.image_ref, info.id[:12], state, handle.host_dir)
    console.print(table)


@main.command()
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt.")
def destroy(yes):
    """Remove the sandbox container. Shell state is lost."""
    console = Console()
    config = _load_config_or_exit(console)
    session = BatchSession(config)
    if not yes and not click.confirm(f"Remove container {session.sandbox.handle.name}?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        return
    try:
        session.sandbox.destroy()
    except SandboxError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    write_log({
        "event": "destroy",
        "sandbox": session.sandbox.handle.name,
        "host_dir": session.sandbox.handle.host_dir,
    })
    console.print("[bold]Sandbox removed.[/bold]")


@main.command("config")
@click.argument("key")
@click.argument("value")
def config_cmd(key, value):
    """Set a user-wide default in ~/.shellbox/config.json.

    Values are parsed as JSON when possible, so numbers stay numbers.

    Example: shellbox config timeout 1200
    """
    if key not in DEFAULT_CONFIG:
        click.echo(f"Unknown key: {key}. Available: {', '.join(DEFAULT_CONFIG)}")
        raise SystemExit(1)
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    save_global_config({key: parsed})
    click.echo(f"Saved {key} to ~/.shellbox/config.json")


@main.command()
@click.option("-n", "--limit", default=20, help="Number of log entries to show.")
@click.option("--all", "show_all", is_flag=True, help="Show logs for all projects.")
def logs(limit, show_all):
    """Show the sandbox audit log."""
    console = Console()

    if not LOGS_FILE.exists():
        console.print("[dim]No logs yet. Run a command first.[/dim]")
        return

    host_dir = None if show_all else _load_config_or_exit(console)["host_dir"]
    entries = read_logs(host_dir)
    if not entries:
        console.print("[dim]No logs found.[/dim]")
        return

    table = Table(title="Sandbox Log")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="bold")
    table.add_column("Sandbox", style="cyan")
    table.add_column("Commands")
    table.add_column("Container", style="dim")

    for entry in entries[-limit:]:
        ts = entry.get("timestamp", "")
        if ts:
            try:
                ts = datetime.fromisoformat(ts).strftime("%m-%d %H:%M")
            except ValueError:
                pass
        table.add_row(
            ts,
            entry.get("event", ""),
            entry.get("sandbox", ""),
            str(entry.get("commands", "")),
            entry.get("container", "")[:12],
        )

    console.print(table)


def shell():
    """Interactive shell: every line runs in the sandbox session."""
    console = Console()
    config = _load_config_or_exit(console)
    session = BatchSession(config)

    console.print("[bold]shellbox[/bold]")
    console.print(f"[dim]Sandbox: {session.sandbox.handle.name} | Image: {session.sandbox.handle.image_ref}[/dim]")
    console.print("[dim]Type a command to run it. Commands: restart, exit[/dim]\n")

    workdir = config.get("workdir")
    while True:
        try:
            user_input = input("shellbox> ").strip()
        except (KeyboardInterrupt, EOFError):
            console.print("\n[dim]Goodbye.[/dim]")
            break

        if not user_input:
            continue

        if user_input in ("exit", "quit"):
            break

        try:
            if user_input == "restart":
                info = session.restart()
                console.print(f"  [green]Sandbox ready[/green]  [dim]({info.id[:12]})[/dim]")
                workdir = config.get("workdir")
                continue
            # cd into workdir once per sandbox; after that the session keeps its own cwd
            transcript = session.run([user_input], workdir=workdir)
            workdir = ""
        except SandboxError as e:
            console.print(f"[red]{e}[/red]")
            continue
        console.print(transcript.split("\n", 1)[1].rstrip("\n"), highlight=False, markup=False)
