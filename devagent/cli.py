# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Command Line Interface

devagent start    - Start the desktop agent
devagent stop     - Stop the desktop agent
devagent restart  - Restart the desktop agent
devagent status   - Show agent status
devagent update   - Install or update the desktop agent
devagent config   - View and change configuration
devagent logs     - View or follow agent and CLI logs
devagent login    - Store the API token
devagent logout   - Clear the API token
devagent doctor   - Diagnose installation problems
"""

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from . import __version__
from .api import ApiClient
from .config import (
    LOG_LEVELS,
    SENSITIVE_KEYS,
    AgentConfig,
    ConfigKey,
    field_name,
    mask_secret,
    resolve_key,
    setup_logging,
)
from .doctor import CheckStatus, run_diagnostics
from .downloader import AgentDownloader
from .errors import DevAgentError, NotAuthenticatedError, StorageError
from .store import VersionStore
from .supervisor import AgentSupervisor, LaunchMode
from .updater import UpdateCoordinator

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

# Commands that skip the automatic update check
NO_AUTO_UPDATE_COMMANDS = {"update", "config", "logs", "login", "logout", "doctor"}

# Commands that still run when config.yaml cannot be read
BROKEN_CONFIG_COMMANDS = {"config", "doctor"}


@dataclass
class AppContext:
    """Components shared by all commands of one invocation."""
    store: VersionStore
    client: ApiClient
    downloader: AgentDownloader
    supervisor: AgentSupervisor
    updater: UpdateCoordinator


def notify_update(message: str) -> None:
    err_console.print(f"[yellow]{escape(message)}[/yellow]", highlight=False)


def build_context(store: VersionStore, config: AgentConfig, token: Optional[str]) -> AppContext:
    client = ApiClient(config.effective_api_url(), token=token)
    downloader = AgentDownloader(store, client)
    supervisor = AgentSupervisor(store, output=lambda line: click.echo(line))
    updater = UpdateCoordinator(downloader, supervisor, client, notify=notify_update)
    return AppContext(store, client, downloader, supervisor, updater)


def format_uptime(seconds: float) -> str:
    """Human readable uptime, e.g. '1d 2h 5m 3s'."""
    seconds = int(seconds)
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def report_error(error: DevAgentError) -> None:
    err_console.print(f"[red]Error: {escape(str(error))}[/red]", highlight=False)
    if error.hint:
        err_console.print(f"[dim]{escape(error.hint)}[/dim]", highlight=False)


class DevAgentGroup(click.Group):
    """Command group that turns DevAgentError into a message and exit code 1."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except (click.exceptions.Exit, click.exceptions.Abort, click.ClickException):
            raise
        except DevAgentError as e:
            logger.debug("Command failed", exc_info=True)
            report_error(e)
            ctx.exit(1)
        except Exception as e:
            logger.exception("Unexpected error: %s", e)
            err_console.print(f"[red]Unexpected error: {escape(str(e))}[/red]", highlight=False)
            ctx.exit(1)


def _require_auth(app: AppContext) -> None:
    if not app.store.is_authenticated():
        raise NotAuthenticatedError()


def _display_value(key: ConfigKey, value: Any) -> str:
    if key in SENSITIVE_KEYS:
        return mask_secret(value)
    if value is None:
        return "Not set"
    return str(value)


def _config_values(store: VersionStore) -> Dict[str, str]:
    """Configuration as displayable strings, secrets masked."""
    config = store.read()
    values = {}
    for key in ConfigKey:
        if key is ConfigKey.AUTH_TOKEN:
            value = store.auth_token()
        else:
            value = getattr(config, field_name(key))
        values[key.value] = _display_value(key, value)
    if not config.api_url:
        values[ConfigKey.API_URL.value] = f"{config.effective_api_url()} (default)"
    for name in config.unknown_keys:
        values[name] = str(config.model_extra[name])
    return values


class DownloadProgress:
    """Progress bar that only appears once a download reports progress."""

    def __init__(self, description: str = "Downloading agent"):
        self.description = description
        self._progress: Optional[Progress] = None
        self._task = None

    def __call__(self, percent: int) -> None:
        if self._progress is None:
            self._progress = Progress(
                TextColumn("[blue]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=err_console,
                transient=True,
            )
            self._progress.start()
            self._task = self._progress.add_task(self.description, total=100)
        self._progress.update(self._task, completed=percent)

    def __enter__(self) -> "DownloadProgress":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._progress is not None:
            self._progress.stop()
            self._progress = None


# =============================================================================
# COMMAND GROUP
# =============================================================================

@click.group(cls=DevAgentGroup)
@click.version_option(__version__, "-v", "--version", prog_name="devagent")
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="DEVAGENT_HOME",
    default=None,
    help="State directory (default: ~/.devagent)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.option(
    "--no-update-check",
    is_flag=True,
    help="Skip the automatic update check",
)
@click.pass_context
def cli(ctx: click.Context, home: Optional[Path], log_level: Optional[str], no_update_check: bool):
    """
    Manage the RemoteDevAI desktop agent

    Install, start, stop and update the agent that runs on this machine.
    """
    if isinstance(ctx.obj, AppContext):
        app = ctx.obj
        store = app.store
    else:
        app = None
        store = VersionStore(home)

    try:
        config = store.read()
        token = store.auth_token()
        log_file: Optional[Path] = store.logs_dir / f"cli-{datetime.now().strftime('%Y%m%d')}.log"
    except StorageError:
        # Let "config reset" repair a broken file and "doctor" report it
        if ctx.invoked_subcommand not in BROKEN_CONFIG_COMMANDS:
            raise
        config = AgentConfig()
        token = None
        log_file = None

    setup_logging(log_level or config.log_level, log_file, secrets=[token] if token else ())

    if app is None:
        app = build_context(store, config, token)
    ctx.obj = app

    if config.auto_update and not no_update_check and ctx.invoked_subcommand not in NO_AUTO_UPDATE_COMMANDS:
        try:
            asyncio.run(app.updater.auto_update_check())
        except DevAgentError as e:
            logger.debug("Automatic update check skipped: %s", e)


# =============================================================================
# AUTHENTICATION
# =============================================================================

@cli.command()
@click.option("--api-key", "-k", default=None, help="API token (prompted for when omitted)")
@click.pass_obj
def login(app: AppContext, api_key: Optional[str]):
    """Store the RemoteDevAI API token"""
    store = app.store
    if store.is_authenticated():
        console.print(f"Already logged in (token {escape(mask_secret(store.auth_token()))})", highlight=False)
        console.print('[dim]Use "devagent logout" to logout first[/dim]')
        return

    token = api_key if api_key is not None else click.prompt("API key", hide_input=True)
    token = token.strip()
    if not token:
        raise click.BadParameter("API key must not be empty", param_hint="--api-key")

    store.set(ConfigKey.AUTH_TOKEN, token)
    console.print(f"[green]Logged in (token {escape(mask_secret(token))})[/green]", highlight=False)
    console.print("[dim]Next: devagent update, then devagent start[/dim]")


@cli.command()
@click.pass_obj
def logout(app: AppContext):
    """Clear the stored API token"""
    store = app.store
    if not store.is_authenticated():
        console.print("Not logged in")
        return
    store.unset(ConfigKey.AUTH_TOKEN)
    console.print("[green]Logged out[/green]")


# =============================================================================
# AGENT LIFECYCLE
# =============================================================================

@cli.command()
@click.option("--detached/--foreground", "-d/-f", default=True, help="Run in background (default) or foreground")
@click.pass_obj
def start(app: AppContext, detached: bool):
    """Start the desktop agent"""
    _require_auth(app)
    mode = LaunchMode.DETACHED if detached else LaunchMode.FOREGROUND

    if mode is LaunchMode.FOREGROUND:
        console.print("[blue]Starting agent in foreground mode...[/blue]")
        console.print("[dim]Press Ctrl+C to stop[/dim]")
        result = asyncio.run(app.supervisor.start(mode))
    else:
        with console.status("Starting agent..."):
            result = asyncio.run(app.supervisor.start(mode))

    if result.already_running:
        console.print(f"[yellow]Agent is already running (PID {result.handle.pid})[/yellow]")
        console.print('[dim]Use "devagent stop" to stop it first[/dim]')
        return

    _report_started(result, mode)


def _report_started(result, mode: LaunchMode) -> None:
    if mode is LaunchMode.DETACHED:
        console.print(f"[green]Agent started in background (PID {result.handle.pid})[/green]")
        console.print("[dim]View logs: devagent logs[/dim]")
        console.print("[dim]Check status: devagent status[/dim]")
        return

    if result.interrupted:
        console.print("[green]Agent stopped[/green]")
    elif result.exit_code:
        err_console.print(f"[red]Agent exited with code {result.exit_code}[/red]")
        raise SystemExit(1)
    else:
        console.print("Agent exited")


@cli.command()
@click.pass_obj
def stop(app: AppContext):
    """Stop the desktop agent"""
    with console.status("Stopping agent..."):
        stopped = asyncio.run(app.supervisor.stop())
    if stopped:
        console.print("[green]Agent stopped[/green]")
    else:
        console.print("Agent is not running")


@cli.command()
@click.option("--detached/--foreground", "-d/-f", default=True, help="Run in background (default) or foreground")
@click.pass_obj
def restart(app: AppContext, detached: bool):
    """Restart the desktop agent"""
    _require_auth(app)
    mode = LaunchMode.DETACHED if detached else LaunchMode.FOREGROUND

    console.print("[blue]Restarting agent...[/blue]")
    result = asyncio.run(app.supervisor.restart(mode))
    if result.already_running:
        console.print(f"[yellow]Agent is already running (PID {result.handle.pid})[/yellow]")
        return
    _report_started(result, mode)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output in JSON format")
@click.pass_obj
def status(app: AppContext, as_json: bool):
    """Show desktop agent status"""
    agent_status = app.supervisor.get_status()
    store = app.store
    config = store.read()

    if as_json:
        payload = {
            "status": agent_status.to_dict(),
            "authenticated": store.is_authenticated(),
            "config": _config_values(store),
        }
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(title="DevAgent Status", show_header=True)
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Authentication", "[green]Authenticated[/green]" if store.is_authenticated() else "[red]Not authenticated[/red]")
    if config.project_id:
        table.add_row("Project ID", config.project_id)

    if agent_status.running:
        table.add_row("Agent", "[green]Running[/green]")
        table.add_row("PID", str(agent_status.pid))
        table.add_row("Mode", agent_status.mode or "Unknown")
        table.add_row("Version", agent_status.running_version or agent_status.version or "Unknown")
        table.add_row("Uptime", format_uptime(agent_status.uptime) if agent_status.uptime is not None else "Unknown")
        if agent_status.running_version and agent_status.version and agent_status.running_version != agent_status.version:
            table.add_row("Installed", f"[yellow]{agent_status.version} (restart to apply)[/yellow]")
    else:
        table.add_row("Agent", "[red]Not running[/red]")
        table.add_row("Version", agent_status.version or "Not installed")

    table.add_row("Config Dir", str(store.config_dir))
    table.add_row("Agent Dir", str(store.agent_dir))
    table.add_row("Logs Dir", str(store.logs_dir))

    console.print(table)


# =============================================================================
# UPDATES
# =============================================================================

@cli.command()
@click.option("--check", is_flag=True, help="Check for updates without installing")
@click.option("--force", is_flag=True, help="Reinstall even if already on the latest version")
@click.option("--yes", "-y", is_flag=True, help="Answer yes to all prompts")
@click.pass_obj
def update(app: AppContext, check: bool, force: bool, yes: bool):
    """Install or update the desktop agent"""
    if yes:
        app.updater.confirm = lambda message: True
    else:
        app.updater.confirm = lambda message: click.confirm(message, default=False)

    if check:
        _show_update_check(app)
        return

    if not app.downloader.is_agent_installed():
        console.print("Desktop agent not installed.")
        if not (yes or click.confirm("Install desktop agent?", default=True)):
            console.print("Installation cancelled")
            return
        with DownloadProgress() as progress:
            app.downloader.on_progress = progress
            record = asyncio.run(app.updater.install())
        console.print(f"[green]Installed desktop agent {record.version}[/green]")
        console.print("[dim]Start it with: devagent start[/dim]")
        return

    # The bar appears lazily, after any stop confirmation prompt
    with DownloadProgress() as progress:
        app.downloader.on_progress = progress
        outcome = asyncio.run(app.updater.update(force=force))

    if outcome.reason == "not-installed":
        console.print("Desktop agent not installed.")
    elif outcome.reason == "up-to-date":
        console.print(f"[green]Already on latest version ({outcome.installed_version})[/green]")
    elif outcome.reason == "declined":
        console.print("[yellow]Update cancelled. Stop the agent first or re-run with --yes.[/yellow]")
    else:
        console.print(
            f"[green]Updated desktop agent {outcome.previous_version} -> {outcome.installed_version}[/green]"
        )
        if outcome.restarted:
            console.print("[dim]Agent restarted[/dim]")


def _show_update_check(app: AppContext) -> None:
    result = asyncio.run(app.updater.check_for_updates())

    table = Table(title="Update Status", show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    table.add_row("Current Version", result.current_version)
    table.add_row("Latest Version", result.latest_version)
    table.add_row("Update Available", "[green]Yes[/green]" if result.update_available else "No")
    console.print(table)

    if result.failure:
        err_console.print(f"[yellow]Could not reach the update server: {escape(result.failure.error)}[/yellow]", highlight=False)
    if result.release_notes:
        console.print("\n[bold]Release Notes:[/bold]")
        console.print(result.release_notes, markup=False)
    if result.update_available:
        console.print('\n[dim]Run "devagent update" to install the update[/dim]')


# =============================================================================
# DIAGNOSTICS
# =============================================================================

CHECK_STYLES = {
    CheckStatus.PASS: "[green]PASS[/green]",
    CheckStatus.WARN: "[yellow]WARN[/yellow]",
    CheckStatus.FAIL: "[red]FAIL[/red]",
}


@cli.command()
@click.option("--verbose", is_flag=True, help="Show details for every check")
@click.pass_obj
def doctor(app: AppContext, verbose: bool):
    """Diagnose installation problems"""
    with console.status("Running diagnostics..."):
        results = asyncio.run(run_diagnostics(app.store, app.downloader, app.supervisor, app.updater))

    table = Table(title="DevAgent Diagnostics", show_header=True)
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Result")
    if verbose:
        table.add_column("Details", style="dim")
    for result in results:
        row = [result.name, CHECK_STYLES[result.status], escape(result.message)]
        if verbose:
            row.append(escape(result.details or ""))
        table.add_row(*row)
    console.print(table)

    counts = {status: sum(1 for r in results if r.status is status) for status in CheckStatus}
    console.print(
        f"Passed: [green]{counts[CheckStatus.PASS]}[/green]  "
        f"Warnings: [yellow]{counts[CheckStatus.WARN]}[/yellow]  "
        f"Failed: [red]{counts[CheckStatus.FAIL]}[/red]"
    )

    problems = [r for r in results if r.status is not CheckStatus.PASS and r.details]
    if problems and not verbose:
        console.print("\n[bold]Recommendations:[/bold]")
        for result in problems:
            console.print(f"  - {escape(result.name)}: {escape(result.details)}", highlight=False)

    if counts[CheckStatus.FAIL]:
        console.print("\n[yellow]Some checks failed. Please review the recommendations above.[/yellow]")
    else:
        console.print("\n[green]All checks passed![/green]")


# =============================================================================
# CONFIGURATION
# =============================================================================

@cli.group(name="config")
def config_group():
    """View and change configuration"""
    pass


@config_group.command(name="list")
@click.pass_obj
def config_list(app: AppContext):
    """List all configuration values"""
    table = Table(title="DevAgent Configuration", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in _config_values(app.store).items():
        table.add_row(key, value)
    console.print(table)


@config_group.command(name="get")
@click.argument("key")
@click.pass_obj
def config_get(app: AppContext, key: str):
    """Print a configuration value"""
    resolved = resolve_key(key)
    value = app.store.get(key)
    if resolved is None:
        click.echo(f"{key}: {value if value is not None else 'Not set'}")
    else:
        click.echo(f"{resolved.value}: {_display_value(resolved, value)}")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.option("--allow-unknown", is_flag=True, help="Store keys devagent does not recognize")
@click.pass_obj
def config_set(app: AppContext, key: str, value: str, allow_unknown: bool):
    """Set a configuration value"""
    app.store.set(key, value, allow_unknown=allow_unknown)
    resolved = resolve_key(key)
    shown = _display_value(resolved, value) if resolved else value
    console.print(f"[green]Set {escape(resolved.value if resolved else key)} = {escape(shown)}[/green]", highlight=False)


@config_group.command(name="reset")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def config_reset(app: AppContext, yes: bool):
    """Reset all configuration"""
    if not (yes or click.confirm("Are you sure you want to reset all configuration?", default=False)):
        console.print("Reset cancelled")
        return
    app.store.delete()
    console.print("[green]Configuration reset[/green]")


# =============================================================================
# LOGS
# =============================================================================

LEVEL_STYLES = {
    "DEBUG": "dim",
    "INFO": "",
    "WARNING": "yellow",
    "ERROR": "red",
}


def _line_level(line: str) -> Optional[str]:
    for level in LEVEL_STYLES:
        if f" - {level} - " in line or f"[{level}]" in line:
            return level
    if "[WARN]" in line:
        return "WARNING"
    return None


def filter_log_lines(lines: List[str], level: Optional[str] = None,
                     pattern: Optional[str] = None, limit: int = 50) -> List[str]:
    """Last limit non-blank lines matching level and a case-insensitive regex."""
    selected = [line for line in lines if line.strip()]
    if level:
        wanted = "WARNING" if level.upper() == "WARN" else level.upper()
        selected = [line for line in selected if _line_level(line) == wanted]
    if pattern:
        regex = re.compile(pattern, re.IGNORECASE)
        selected = [line for line in selected if regex.search(line)]
    return selected[-limit:] if limit > 0 else []


FOLLOW_POLL_INTERVAL = 0.5  # seconds between checks for new log lines


def follow_log(path: Path, emit: Callable[[str], None],
               keep_going: Callable[[], bool] = lambda: True,
               poll_interval: float = FOLLOW_POLL_INTERVAL) -> None:
    """Emit complete lines appended to path, like tail -f.

    Starts at the current end of the file and polls until keep_going()
    returns False. A truncated file is read again from the start.
    """
    with open(path, encoding="utf-8", errors="replace") as f:
        f.seek(0, os.SEEK_END)
        pending = ""
        while keep_going():
            chunk = f.readline()
            if chunk:
                pending += chunk
                if pending.endswith("\n"):
                    emit(pending.rstrip("\r\n"))
                    pending = ""
                continue
            if os.fstat(f.fileno()).st_size < f.tell():
                f.seek(0)
                pending = ""
            time.sleep(poll_interval)


def _print_log_line(line: str) -> None:
    console.print(line, style=LEVEL_STYLES.get(_line_level(line) or "", ""), markup=False, highlight=False)


@cli.command()
@click.option("-f", "--follow", is_flag=True, help="Keep printing new lines as they are written (Ctrl+C to stop)")
@click.option("-n", "--lines", "limit", default=50, show_default=True, type=int, help="Number of lines to show")
@click.option(
    "--level",
    type=click.Choice(["debug", "info", "warn", "warning", "error"], case_sensitive=False),
    help="Only show lines of this level",
)
@click.option("--grep", "pattern", default=None, help="Only show lines matching this pattern")
@click.option("--cli", "cli_logs", is_flag=True, help="Show CLI logs instead of agent logs")
@click.pass_obj
def logs(app: AppContext, follow: bool, limit: int, level: Optional[str], pattern: Optional[str], cli_logs: bool):
    """View agent logs"""
    if cli_logs:
        logs_dir = app.store.logs_dir
        candidates = sorted(logs_dir.glob("cli-*.log"), reverse=True) if logs_dir.exists() else []
        log_file = candidates[0] if candidates else None
        if log_file is None:
            console.print("No CLI logs found")
            return
    else:
        log_file = app.supervisor.get_latest_log_file()
        if log_file is None:
            console.print("No agent logs found")
            console.print("[dim]Start the agent to generate logs: devagent start[/dim]")
            return

    if pattern:
        try:
            re.compile(pattern)
        except re.error as e:
            raise click.BadParameter(f"invalid pattern: {e}", param_hint="--grep")

    with open(log_file, encoding="utf-8", errors="replace") as f:
        content = f.read()
    selected = filter_log_lines(content.splitlines(), level, pattern, limit)

    if not selected and not follow:
        console.print("No matching log entries found")
        return

    if selected:
        err_console.print(f"[dim]Showing last {len(selected)} lines from: {log_file.name}[/dim]")
    for line in selected:
        _print_log_line(line)

    if follow:
        err_console.print(f"[dim]Following {log_file.name}. Press Ctrl+C to stop[/dim]")

        def emit(line: str) -> None:
            for match in filter_log_lines([line], level, pattern, 1):
                _print_log_line(match)

        try:
            follow_log(log_file, emit)
        except KeyboardInterrupt:
            err_console.print("[dim]Stopped following logs[/dim]")


def main():
    """Console script entry point."""
    cli(prog_name="devagent")


if __name__ == "__main__":
    main()
