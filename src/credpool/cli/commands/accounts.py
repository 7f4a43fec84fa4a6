"""CLI commands for the rotating account pool."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from credpool.auth.store import AuthStore
from credpool.config.settings import get_settings
from credpool.core.time import now_ms
from credpool.exceptions import CredPoolError
from credpool.rotation.accounts import RotationMode
from credpool.rotation.pool import PoolManager, create_pool_manager


app = typer.Typer(name="accounts", help="Manage the rotating account pool")

console = Console()

T = TypeVar("T")


def run_with_pool(operation: Callable[[PoolManager], Awaitable[T]]) -> T:
    """Run one operation against a freshly loaded pool.

    Errors are printed and turned into exit code 1.
    """

    async def _run() -> T:
        async with create_pool_manager(get_settings()) as pool:
            return await operation(pool)

    try:
        return asyncio.run(_run())
    except CredPoolError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1) from e


def _format_seconds(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _accounts_table(accounts: list[dict[str, Any]], title: str) -> Table:
    table = Table(
        show_header=True,
        header_style="bold cyan",
        box=box.ROUNDED,
        title=title,
        title_style="bold white",
    )
    table.add_column("#", justify="right")
    table.add_column("Label", style="cyan")
    table.add_column("Identity", style="green")
    table.add_column("Status")
    table.add_column("Requests", justify="right")
    table.add_column("Last error")

    for account in accounts:
        if not account["available"]:
            status = f"[yellow]rate limited ({_format_seconds(account['rateLimitedFor'])})[/yellow]"
        elif account["state"] == "auth_error":
            status = "[red]auth error[/red]"
        else:
            status = "[green]ready[/green]"
        marker = "*" if account["active"] else " "
        table.add_row(
            f"{marker}{account['index'] + 1}",
            account["label"],
            account["identity"],
            status,
            str(account["requestCount"]),
            account["lastError"] or "-",
        )
    return table


@app.command(name="list")
def list_accounts() -> None:
    """List pooled accounts."""
    accounts = run_with_pool(lambda pool: pool.list_accounts(now_ms()))

    if not accounts:
        console.print("[yellow]No accounts in the pool.[/yellow]")
        console.print("Log in with the provider, then run: credpool accounts import")
        return

    console.print(_accounts_table(accounts, "Accounts"))


@app.command(name="import")
def import_account(
    label: Annotated[str | None, typer.Argument(help="Label for the account")] = None,
    auth_file: Annotated[
        Path | None,
        typer.Option("--auth-file", help="Authentication store to import from"),
    ] = None,
) -> None:
    """Import the live credential from the authentication store."""
    settings = get_settings()
    auth_store = AuthStore(auth_file or settings.auth_store_path)

    result = run_with_pool(
        lambda pool: pool.import_from_auth_store(auth_store, label_hint=label)
    )

    if result.created:
        console.print(
            f"[green]Added account {result.index + 1}: {result.account.display_name}[/green]"
        )
    else:
        console.print(
            f"[yellow]Account already exists: {result.account.display_name}[/yellow]"
        )


@app.command(name="remove")
def remove_account(
    selector: Annotated[str, typer.Argument(help="Position, label or email")],
) -> None:
    """Remove an account from the pool."""
    transition = run_with_pool(lambda pool: pool.remove(selector))
    assert transition.account is not None
    console.print(f"[green]Removed account: {transition.account.display_name}[/green]")


@app.command(name="switch")
def switch_account(
    selector: Annotated[str, typer.Argument(help="Position, label or email")],
) -> None:
    """Make an account the active one."""
    transition = run_with_pool(lambda pool: pool.switch_to(selector))
    assert transition.account is not None
    console.print(
        f"[green]Active account: {transition.account.display_name} "
        f"({(transition.new_index or 0) + 1})[/green]"
    )


@app.command(name="rename")
def rename_account(
    selector: Annotated[str, typer.Argument(help="Position, label or email")],
    new_label: Annotated[str, typer.Argument(help="New label")],
) -> None:
    """Relabel an account."""
    transition = run_with_pool(lambda pool: pool.rename(selector, new_label))
    assert transition.account is not None
    console.print(f"[green]Renamed account to: {transition.account.label}[/green]")


@app.command(name="mode")
def set_mode(
    mode: Annotated[
        str | None,
        typer.Argument(help="round-robin (rr), use-until-exhausted (ue) or manual"),
    ] = None,
) -> None:
    """Show or change the rotation mode."""
    if mode is None:
        status = run_with_pool(lambda pool: pool.get_status(now_ms()))
        console.print(f"Rotation mode: [cyan]{status['rotationMode']}[/cyan]")
        console.print(f"Available: {', '.join(m.value for m in RotationMode)}")
        return

    transition = run_with_pool(lambda pool: pool.set_mode(mode))
    console.print(f"[green]Rotation mode: {transition.new_mode}[/green]")


@app.command(name="next")
def next_account() -> None:
    """Advance to the next available account."""
    transition = run_with_pool(lambda pool: pool.force_next(now_ms()))
    if transition.previous_index == transition.new_index:
        console.print("[yellow]No other account available.[/yellow]")
        return
    assert transition.account is not None
    console.print(
        f"[green]Switched to account {(transition.new_index or 0) + 1}: "
        f"{transition.account.display_name}[/green]"
    )


@app.command(name="status")
def status() -> None:
    """Show pool status."""
    pool_status = run_with_pool(lambda pool: pool.get_status(now_ms()))

    console.print(f"[bold]Provider:[/bold] {pool_status['provider']}")
    console.print(f"[bold]Rotation mode:[/bold] {pool_status['rotationMode']}")
    console.print(f"[bold]Active account:[/bold] {pool_status['activeAccount'] or '-'}")
    console.print(
        f"[bold]Available:[/bold] {pool_status['availableAccounts']}"
        f"/{pool_status['totalAccounts']}"
    )
    if pool_status["accounts"]:
        console.print(_accounts_table(pool_status["accounts"], "Pool Status"))


@app.command(name="clear")
def clear_rate_limits() -> None:
    """Clear rate limits and errors on every account."""
    cleared = run_with_pool(lambda pool: pool.clear_rate_limits())
    console.print(f"[green]Cleared rate limits on {cleared} account(s).[/green]")
