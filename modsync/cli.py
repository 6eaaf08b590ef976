"""Command-line interface for modsync."""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from modsync.app import AppContext, create_app
from modsync.core.disk_performance import classify_disk_type
from modsync.core.update_orchestrator import OrchestratorBusyError
from modsync.main import prepare, serve, setup_logging
from modsync.storage.profile_store import ProfileError
from modsync.utils.config import Config, load_config

console = Console()

T = TypeVar("T")


def _run(config: Config, action: Callable[[AppContext], Awaitable[T]]) -> T:
    """Build the app, run one action and tear everything down."""

    async def runner() -> T:
        ctx = await create_app(config)
        try:
            return await action(ctx)
        finally:
            await ctx.close()

    try:
        return asyncio.run(runner())
    except (ProfileError, OrchestratorBusyError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


async def _find_profile_id(ctx: AppContext, name_or_id: str) -> str:
    for profile in await ctx.profile_store.get_all_profiles():
        if name_or_id in (profile.id, profile.name):
            return profile.id
    raise ProfileError(f'Profile "{name_or_id}" not found')


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    envvar="MODSYNC_CONFIG",
    help="Path to config.yaml (or set MODSYNC_CONFIG env var)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Keep a game's mods directory in sync with named mod profiles."""
    config = load_config(config_path)
    setup_logging("DEBUG" if verbose else config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run background update checks until interrupted."""
    try:
        asyncio.run(serve(ctx.obj["config"]))
    except KeyboardInterrupt:
        pass


@main.command()
@click.option("--force", is_flag=True, help="Re-run even if a calibration exists")
@click.pass_context
def benchmark(ctx: click.Context, force: bool) -> None:
    """Benchmark the disk and calibrate the concurrency pool size."""

    async def action(app: AppContext) -> None:
        if not force and not await app.calibrator.is_first_run():
            config = await app.calibrator.get_config()
        else:
            with console.status("[dim]Writing benchmark files...[/dim]"):
                config = await app.calibrator.rebenchmark()

        console.print(f"[bold]Disk speed:[/bold] {config.disk_speed_mbps:.1f} MB/s")
        console.print(f"[bold]Disk type:[/bold] {classify_disk_type(config.disk_speed_mbps).value}")
        console.print(f"[bold]Pool size:[/bold] {config.pool_size}")
        console.print(f"[dim]Calibrated {config.last_benchmark:%Y-%m-%d %H:%M}[/dim]")

    try:
        _run(ctx.obj["config"], action)
    except OSError as e:
        console.print(f"[red]Benchmark failed:[/red] {e}")
        sys.exit(1)


@main.command("profiles")
@click.pass_context
def list_profiles(ctx: click.Context) -> None:
    """List profiles."""

    async def action(app: AppContext) -> None:
        profiles = await app.profile_store.get_all_profiles()
        if not profiles:
            console.print("[yellow]No profiles yet.[/yellow]")
            return

        table = Table(title="Profiles")
        table.add_column("", width=1)
        table.add_column("Name", style="cyan")
        table.add_column("Mods", justify="right")
        table.add_column("Tags")
        table.add_column("ID", style="dim")
        for profile in profiles:
            table.add_row(
                "●" if profile.is_active else "",
                profile.name,
                f"{len(profile.enabled_mods)}/{len(profile.mods)}",
                ", ".join(profile.tags),
                profile.id,
            )
        console.print(table)

    _run(ctx.obj["config"], action)


@main.command()
@click.argument("name")
@click.option("-d", "--description", default="", help="Profile description")
@click.option("-t", "--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_context
def create(ctx: click.Context, name: str, description: str, tags: tuple[str, ...]) -> None:
    """Create an empty profile."""

    async def action(app: AppContext) -> None:
        profile = await app.profile_store.create_profile(name, description, tags)
        console.print(f"[green]Created profile[/green] {profile.name} [dim]({profile.id})[/dim]")

    _run(ctx.obj["config"], action)


@main.command()
@click.argument("profile")
@click.pass_context
def delete(ctx: click.Context, profile: str) -> None:
    """Delete a profile that is not active."""

    async def action(app: AppContext) -> None:
        profile_id = await _find_profile_id(app, profile)
        cleanup = await app.delete_profile(profile_id)
        console.print(f"[green]Deleted profile[/green] {profile}")
        if cleanup.deleted:
            console.print(f"[dim]Freed {cleanup.deleted} cache entries[/dim]")

    _run(ctx.obj["config"], action)


@main.command()
@click.argument("profile", required=False)
@click.option("--none", "deactivate", is_flag=True, help="Deactivate all profiles")
@click.pass_context
def switch(ctx: click.Context, profile: str | None, deactivate: bool) -> None:
    """Activate a profile and rebuild the mods directory."""
    if not profile and not deactivate:
        raise click.UsageError("Give a profile name or --none")

    async def action(app: AppContext) -> None:
        await prepare(app)
        profile_id = None if deactivate else await _find_profile_id(app, profile)
        result = await app.activator.switch_profile(profile_id)

        if result.manifest_error:
            console.print(f"[yellow]Warning:[/yellow] {result.manifest_error}")
        for error in result.errors:
            console.print(f"[red]Failed:[/red] {error.target_path}: {error.error}")
        if result.success:
            console.print(f"[green]Activated {result.created} mods[/green]")
        else:
            console.print(f"[yellow]Activated {result.created} mods, {result.failed} failed[/yellow]")
            sys.exit(1)

    _run(ctx.obj["config"], action)


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check the active profile for mod updates."""

    async def action(app: AppContext) -> None:
        result = await app.orchestrator.check_for_updates()
        for error in result.errors:
            console.print(f"[red]Error:[/red] {error}")

        console.print(f"[bold]Checked:[/bold] {result.checked_count} mods")
        if not result.updates:
            console.print("[green]Everything is up to date.[/green]")
            return

        table = Table(title=f"{result.updates_found} updates available")
        table.add_column("Mod ID", style="dim")
        table.add_column("Mod", style="cyan")
        table.add_column("Installed")
        table.add_column("Latest", style="green")
        for update in result.updates:
            table.add_row(
                str(update.mod_id),
                update.mod_name,
                update.current_version_name or str(update.current_version_id),
                update.latest_version_name or str(update.latest_version_id),
            )
        console.print(table)

    _run(ctx.obj["config"], action)


@main.command()
@click.argument("mod_id", type=int, required=False)
@click.option("--all", "update_all", is_flag=True, help="Update every mod with a pending update")
@click.pass_context
def update(ctx: click.Context, mod_id: int | None, update_all: bool) -> None:
    """Install pending updates found by `check`."""
    if mod_id is None and not update_all:
        raise click.UsageError("Give a MOD_ID or --all")

    async def action(app: AppContext) -> Any:
        await prepare(app)
        if update_all:
            return await app.orchestrator.update_all_mods()
        return await app.orchestrator.update_mod(mod_id)

    result = _run(ctx.obj["config"], action)

    if update_all:
        for item in result.results:
            if item.success:
                console.print(f"[green]✓[/green] {item.mod_name}")
            else:
                console.print(f"[red]✗[/red] {item.mod_name}: {item.error}")
        console.print(f"\n[bold]{result.successful} updated, {result.failed} failed[/bold]")
        if result.failed:
            sys.exit(1)
    elif result.success:
        console.print(f"[green]Updated[/green] {result.mod_name}")
    else:
        console.print(f"[red]Update failed:[/red] {result.error}")
        sys.exit(1)


@main.command("import")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@click.option("-p", "--profile", help="Target profile (defaults to the active one)")
@click.pass_context
def import_files(ctx: click.Context, files: tuple[Path, ...], profile: str | None) -> None:
    """Import local mod files into a profile."""

    async def action(app: AppContext) -> int:
        if profile:
            profile_id = await _find_profile_id(app, profile)
        else:
            active = await app.profile_store.get_active_profile()
            if not active:
                raise ProfileError("No active profile selected")
            profile_id = active.id

        failed = 0
        for path in files:
            result = await app.installer.import_local_mod(path, profile_id, app.config.paths.mods_dir)
            if result.success:
                console.print(f"[green]Imported[/green] {result.mod_name}")
            else:
                failed += 1
                console.print(f"[red]Failed:[/red] {path.name}: {result.error}")
        return failed

    if _run(ctx.obj["config"], action):
        sys.exit(1)


if __name__ == "__main__":
    main()
