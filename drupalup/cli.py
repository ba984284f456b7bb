import asyncio

import structlog
import typer
from rich.console import Console
from rich.table import Table

from drupalup.config import APP_NAME, APP_VERSION, LoadedConfig, load_config, settings
from drupalup.core.exceptions import DrupalUpError
from drupalup.core.logging import LOG_FILE_NAME, configure_logging
from drupalup.core.process import AsyncProcessRunner
from drupalup.schemas.updates import UpdateResult, UpdateStatus
from drupalup.services.notifier import ConsoleNotifier, build_report, report_subject
from drupalup.services.runlog import entry_details, last_run, read_entries
from drupalup.services.site import SiteState
from drupalup.services.update.service import UpdateService, locate_tools, select_sites

console = Console()
cli_app = typer.Typer(name="drupalup", help=f"{APP_NAME}: updates Drupal core and modules.")
logger = structlog.get_logger()

STATUS_STYLES = {
    UpdateStatus.UNCHANGED: "dim",
    UpdateStatus.SUCCESS: "green",
    UpdateStatus.FAILED: "bold red",
    UpdateStatus.MIXED: "yellow",
}

ConfigDirOption = typer.Option(
    None, "--config-dir", help="Directory holding drupalup.settings.yml and drupalup.sites.yml"
)


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


def _echo_line(_stream: str, line: str) -> None:
    console.print(f"  | {line}", markup=False, highlight=False)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{APP_NAME} {APP_VERSION}")
        raise typer.Exit()


@cli_app.callback()
def app_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show the version and exit"
    ),
):
    """Drupal Updater."""


# ── Command plumbing ─────────────────────────────────────────────────────────


def _load(config_dir: str | None) -> LoadedConfig:
    try:
        return load_config(config_dir)
    except DrupalUpError as e:
        console.print(f"[bold red]{e.message}[/bold red]")
        raise typer.Exit(code=1)


def _start(command: str, config_dir: str | None) -> LoadedConfig:
    loaded = _load(config_dir)
    log_dir = loaded.app.resolved_log_dir()
    if configure_logging(settings.log_level, log_dir) is None:
        console.print(
            f"[yellow]Cannot write to {log_dir / LOG_FILE_NAME}; log entries go to stderr.[/yellow]"
        )
    logger.info(
        "command_started",
        command=command,
        version=APP_VERSION,
        settings_file=str(loaded.settings_file),
        sites_file=str(loaded.sites_file),
    )
    for error in loaded.invalid_sites:
        console.print(f"[red]{error.message}[/red]")
        logger.error("site_invalid", **error.details)
    return loaded


def _finish(command: str, failed: bool) -> None:
    logger.info("command_finished", command=command, failed=failed)
    if failed:
        raise typer.Exit(code=1)


def _fail(command: str, error: DrupalUpError) -> None:
    console.print(f"[bold red]{error.message}[/bold red]")
    for line in error.error_lines()[1:]:
        console.print(f"  {line}", markup=False, highlight=False)
    logger.error("command_failed", command=command, code=error.code, error=error.message)
    _finish(command, failed=True)


# ── Announcements ────────────────────────────────────────────────────────────


def _announce_mode(dry_run: bool, notify: bool) -> None:
    if dry_run:
        console.print("Dry-run mode - git changes [bold]will not be[/bold] committed or pushed.")
    else:
        console.print("Git changes [bold]will be[/bold] committed and pushed.")
    if notify:
        console.print("A report [bold]will be[/bold] delivered on completion.")
    else:
        console.print("A report [bold]will not be[/bold] delivered on completion.")


def _announce_site(state: SiteState) -> None:
    console.print(f"\n[bold cyan]{state.primary_uri}[/bold cyan]")
    console.print(f"  Root:       {state.path}")
    console.print(f"  Multisite:  {'yes' if state.is_multisite else 'no'}")
    console.print(f"  Drush:      {state.drush_path or '[red]not found[/red]'}")
    console.print(f"  URIs:       {', '.join(state.descriptor.uris)}")
    if state.alias_by_uri:
        for uri, alias in state.alias_by_uri.items():
            console.print(f"  Production: {alias} ({uri})")
    else:
        console.print("  Production: [yellow]no alias found[/yellow]")
    for error in state.errors:
        console.print(f"  [red]{error}[/red]", highlight=False)


def _print_summary(results: list[UpdateResult]) -> None:
    table = Table(title="Update results")
    table.add_column("Site", style="cyan")
    table.add_column("Core")
    table.add_column("Other packages")
    table.add_column("Status")
    table.add_column("Phase", style="dim")

    for result in results:
        table.add_row(
            result.uri,
            result.core_status.value,
            result.other_status.value,
            f"[{STATUS_STYLES[result.status]}]{result.status.value}[/]",
            result.phase,
        )
    console.print(table)


# ── Commands ─────────────────────────────────────────────────────────────────


@cli_app.command("update")
def update(
    uri: str = typer.Argument(None, help="Only update the site serving this URI"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Do not commit or push git changes"),
    notify: bool = typer.Option(False, "--notify", help="Deliver the report on completion"),
    config_dir: str = ConfigDirOption,
):
    """Update Drupal core and modules."""
    loaded = _start("update", config_dir)
    notify = notify or loaded.app.always_notify
    _announce_mode(dry_run, notify)

    async def _update():
        runner = AsyncProcessRunner()
        tools = await locate_tools(runner, loaded.app)
        sites = select_sites(loaded.sites, uri)
        service = UpdateService(loaded.app, tools, runner, on_line=_echo_line)
        return await service.update_sites(sites, dry_run=dry_run, on_site=_announce_site)

    try:
        results = _run_async(_update())
    except DrupalUpError as e:
        _fail("update", e)
        return

    _print_summary(results)
    if notify:
        invalid = [error.message for error in loaded.invalid_sites]
        ConsoleNotifier(console).deliver(report_subject(results, dry_run), build_report(results, invalid))

    failed = any(result.failed for result in results) or bool(loaded.invalid_sites)
    _finish("update", failed)


@cli_app.command("rollback")
def rollback(
    uri: str = typer.Argument(..., help="URI of the site to roll back"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_dir: str = ConfigDirOption,
):
    """Roll a site back to its main branch and its last database backup."""
    loaded = _start("rollback", config_dir)

    async def _check():
        runner = AsyncProcessRunner()
        tools = await locate_tools(runner, loaded.app)
        site = select_sites(loaded.sites, uri)[0]
        service = UpdateService(loaded.app, tools, runner, on_line=_echo_line)
        state, check = await service.rollback_check(site)
        return service, state, check

    try:
        service, state, check = _run_async(_check())
    except DrupalUpError as e:
        _fail("rollback", e)
        return

    _announce_site(state)
    if not check.can_rollback:
        console.print(f"[bold red]Rollback is not possible: {check.reason}[/bold red]")
        logger.error("rollback_not_possible", uri=uri, reason=check.reason)
        _finish("rollback", failed=True)
        return
    if check.multisite_partial_backups_only:
        console.print(f"[yellow]{check.reason}[/yellow]")

    if not yes and not typer.confirm(
        f"Roll back {state.primary_uri}? Code and database changes since the last update will be lost."
    ):
        console.print("[dim]Rollback cancelled.[/dim]")
        logger.info("rollback_cancelled", uri=uri)
        _finish("rollback", failed=False)
        return

    try:
        messages = _run_async(service.rollback(state, check))
    except DrupalUpError as e:
        _fail("rollback", e)
        return

    for message in messages:
        console.print(f"  {message}", highlight=False)
    console.print(f"\n[bold green]{state.primary_uri} rolled back.[/bold green]")
    _finish("rollback", failed=False)


@cli_app.command("log")
def show_log(config_dir: str = ConfigDirOption):
    """Show the log entries of the most recent update or rollback."""
    loaded = _load(config_dir)
    log_file = loaded.app.resolved_log_dir() / LOG_FILE_NAME
    entries = last_run(read_entries(log_file))
    if not entries:
        console.print(f"[dim]No log entries found in {log_file}.[/dim]")
        return

    table = Table(title=f"Last run ({log_file})")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Event", style="cyan")
    table.add_column("Details")

    for entry in entries:
        table.add_row(
            str(entry.get("timestamp", "")),
            str(entry.get("level", "")),
            str(entry.get("event", "")),
            entry_details(entry),
        )
    console.print(table)


def main():
    cli_app()


if __name__ == "__main__":
    main()
