"""CLI commands for the cyclic profile switcher."""

from collections.abc import Callable
from typing import Annotated, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from credpool.auth.store import AuthStore
from credpool.config.settings import get_settings
from credpool.exceptions import CredPoolError
from credpool.profiles.models import Profile
from credpool.profiles.switcher import ProfileSwitcher


app = typer.Typer(name="profiles", help="Save and swap live credentials")

console = Console()

T = TypeVar("T")


def get_switcher() -> ProfileSwitcher:
    """Get a profile switcher from settings."""
    settings = get_settings()
    return ProfileSwitcher(
        store_path=settings.profiles.store_path,
        auth_store=AuthStore(settings.auth_store_path),
        provider=settings.profiles.provider,
        backups_dir=settings.profiles.backups_dir,
    )


def _call(operation: Callable[[ProfileSwitcher], T]) -> T:
    try:
        return operation(get_switcher())
    except CredPoolError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e


def _who(profile: Profile) -> str:
    return profile.email or profile.account_id or "unknown-account"


@app.command(name="next")
def cycle_next() -> None:
    """Switch the live credential to the next saved profile."""
    target = _call(lambda switcher: switcher.cycle_next())
    console.print(f"[green]Switched to {target.label} ({_who(target)}).[/green]")
    console.print("Reload the host session if it still uses the old credential.")


@app.command(name="status")
def status() -> None:
    """List saved profiles."""
    views = _call(lambda switcher: switcher.status())

    if not views:
        console.print("[yellow]No saved profiles.[/yellow]")
        return

    table = Table(
        show_header=True,
        header_style="bold cyan",
        box=box.ROUNDED,
        title=f"Profiles ({len(views)})",
        title_style="bold white",
    )
    table.add_column("#", justify="right")
    table.add_column("Label", style="cyan")
    table.add_column("Account", style="green")
    table.add_column("")

    for view in views:
        marker = "*" if view.active else " "
        table.add_row(
            f"{marker}{view.position}",
            view.profile.label,
            _who(view.profile),
            "(live)" if view.live else "",
        )

    console.print(table)


@app.command(name="who")
def who() -> None:
    """Show which account the live credential belongs to."""
    identity = _call(lambda switcher: switcher.who())
    console.print(f"Live account: [green]{identity.who}[/green]")
    if identity.profile is not None:
        console.print(f"Saved profile: [cyan]{identity.profile.label}[/cyan]")


@app.command(name="add")
def add_profile(
    label: Annotated[str | None, typer.Argument(help="Label for the profile")] = None,
) -> None:
    """Save the live credential as a profile."""
    profile, created = _call(lambda switcher: switcher.save_current(label))
    if created:
        console.print(f"[green]Saved new profile: {profile.label} ({_who(profile)})[/green]")
    else:
        console.print(f"[green]Updated profile: {profile.label} ({_who(profile)})[/green]")


@app.command(name="use")
def use_profile(
    selector: Annotated[str, typer.Argument(help="Position, label, id or email")],
) -> None:
    """Make a saved profile live."""
    target = _call(lambda switcher: switcher.use(selector))
    console.print(f"[green]Switched to {target.label} ({_who(target)}).[/green]")


@app.command(name="rm")
def remove_profile(
    selector: Annotated[str, typer.Argument(help="Position, label, id or email")],
) -> None:
    """Delete a saved profile."""
    target = _call(lambda switcher: switcher.remove(selector))
    console.print(f"[green]Removed profile: {target.label}[/green]")


@app.command(name="rename")
def rename_profile(
    selector: Annotated[str, typer.Argument(help="Position, label, id or email")],
    new_label: Annotated[str, typer.Argument(help="New label")],
) -> None:
    """Relabel a saved profile."""
    target = _call(lambda switcher: switcher.rename(selector, new_label))
    console.print(f"[green]Renamed profile to: {target.label}[/green]")
