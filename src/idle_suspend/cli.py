"""CLI commands for idle-suspend."""

import click


@click.group()
@click.version_option(package_name="idle-suspend")
def main() -> None:
    """Suspend or stop this machine when its terminal session goes idle."""
    pass


@main.command()
@click.option("--root-pid", type=int, default=None, help="Session root process (default: auto)")
def daemon(root_pid: int | None) -> None:
    """Run the idle monitor in the foreground."""
    import asyncio

    from idle_suspend.daemon import DaemonAlreadyRunning, run_daemon

    try:
        asyncio.run(run_daemon(root_pid=root_pid))
    except DaemonAlreadyRunning:
        click.echo("Error: idle-suspend daemon is already running", err=True)
        raise SystemExit(1)


def _request(msg: dict) -> dict | None:
    """Send one request to the daemon, or return None if it isn't reachable."""
    import asyncio

    from idle_suspend.config import Config
    from idle_suspend.socket_client import send_request

    config = Config.load()
    try:
        return asyncio.run(send_request(config.socket_path, msg))
    except (FileNotFoundError, ConnectionError, TimeoutError):
        return None


@main.command()
@click.option("--width", "-w", type=int, default=None, help="Line width (default: terminal)")
@click.option("--plain", is_flag=True, help="No colour (for status bars)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw engine state")
def status(width: int | None, plain: bool, as_json: bool) -> None:
    """Show the daemon's idle state on one line."""
    import json
    import shutil

    from idle_suspend.status import StatusSnapshot, project_status, styled_status

    reply = _request({"type": "status"})
    if reply is None or reply.get("type") != "status":
        click.echo("idle-suspend: not running", err=True)
        raise SystemExit(1)

    state = reply.get("state", {})
    if as_json:
        click.echo(json.dumps(state, indent=2))
        return

    if width is None:
        width = shutil.get_terminal_size().columns
    snapshot = StatusSnapshot.from_dict(state)

    if plain:
        click.echo(project_status(snapshot, width))
        return

    from rich.console import Console

    Console(highlight=False).print(styled_status(snapshot, width))


@main.command()
def poke() -> None:
    """Report user activity (bind to a shell or tmux hook)."""
    reply = _request({"type": "activity"})
    if reply is None or reply.get("type") != "ack":
        click.echo("idle-suspend: not running", err=True)
        raise SystemExit(1)


@main.command()
@click.option("--root-pid", type=int, required=True, help="Session root process")
@click.option("--ignore", "ignore", multiple=True, help="Foreground name to treat as idle")
@click.option("--no-agent-detection", is_flag=True, help="Disable the agent tool heuristic")
def probe(root_pid: int, ignore: tuple[str, ...], no_agent_detection: bool) -> None:
    """Classify the session's terminals, one status:pid:label line each."""
    from idle_suspend.classifier import ClassifierConfig, probe_session
    from idle_suspend.process import ProcFsSource

    config = ClassifierConfig(
        ignore_set=frozenset(ignore),
        agent_detection_enabled=not no_agent_detection,
    )
    output = probe_session(root_pid, ProcFsSource(), config)
    if output:
        click.echo(output)


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from idle_suspend.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo()
    click.echo("[idle]")
    click.echo(f"  idle_timeout_secs = {cfg.idle.idle_timeout_secs}")
    click.echo(f"  countdown_secs = {cfg.idle.countdown_secs}")
    click.echo(f"  suspend_action = {cfg.idle.suspend_action}")
    click.echo(f"  claude_code_idle_detection = {cfg.idle.claude_code_idle_detection}")
    click.echo(f"  ignore_processes = {', '.join(cfg.idle.ignore_processes) or '(none)'}")
    click.echo()
    click.echo("[session]")
    click.echo(f"  root_pid = {cfg.session.root_pid or 'auto'}")
    click.echo()
    click.echo("[actions]")
    click.echo(f"  suspend_command = {' '.join(cfg.actions.suspend_command)}")
    click.echo(f"  stop_command = {' '.join(cfg.actions.stop_command)}")
    click.echo()
    click.echo("[activity]")
    click.echo(f"  watch_tty_input = {cfg.activity.watch_tty_input}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from idle_suspend.config import Config

    cfg = Config.load()

    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from idle_suspend.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
