import asyncio
import typer
import orjson
from rich.console import Console
from rich.table import Table
from rich import print as rprint
from typing import List, Optional, Sequence, Tuple

from starling_core import (
    AccountFailure,
    AllAccountsFailed,
    Balance,
    CredentialExpired,
    Direction,
    FetchError,
    StarlingSession,
    SyncOrchestrator,
    SyncResult,
    TimeWindow,
    Transaction,
)
from starling_core.logger import setup_logging

from . import config, factory

app = typer.Typer(help="Starling Bank transaction sync")
console = Console()


# --- Rendering ---


def format_row(t: Transaction) -> Tuple[str, ...]:
    color = "green" if t.direction == Direction.IN else "red"
    arrow = "<-" if t.direction == Direction.IN else "->"
    return (
        t.time.strftime("%Y-%m-%d"),
        " " if t.is_settled else "*",
        f"[{color}]{t.amount.format()} {t.amount.currency}[/{color}]",
        f"[{color}]{arrow}[/{color}]",
        f"[italic]{t.counterparty_name}[/italic]",
        t.reference,
    )


def render_transactions(title: str, transactions: Sequence[Transaction]):
    table = Table(title=title)
    table.add_column("Date", style="dim")
    table.add_column("", width=1)
    table.add_column("Amount", justify="right")
    table.add_column("")
    table.add_column("Counterparty")
    table.add_column("Reference", style="dim")

    for t in transactions:
        table.add_row(*format_row(t))
    console.print(table)


def render_failures(failures: Sequence[AccountFailure]):
    for failure in failures:
        if isinstance(failure.error, CredentialExpired):
            rprint(
                f"[bold red]Access token for '{failure.account}' was rejected.[/bold red] "
                "Issue a new token in the Starling developer portal and run "
                "'starling add-key' again; retrying will not help."
            )
        else:
            rprint(f"[red]{failure.account} failed:[/red] {failure.error}")


def failure_dict(failure: AccountFailure) -> dict:
    return {
        "account": failure.account,
        "kind": type(failure.error).__name__,
        "message": failure.error.message,
        "status": failure.error.status_code,
    }


def _load_config() -> config.Config:
    try:
        return config.get_config()
    except config.ConfigError as e:
        rprint(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(1)


# --- Async helpers ---


async def _sync(
    conf: config.Config, days: int, timeout: float, dry_run: bool = False
) -> SyncResult:
    window = TimeWindow.trailing(days)
    store = None if dry_run else factory.get_store()
    async with factory.get_client() as client:
        sessions = factory.get_sessions(conf, client)
        return await SyncOrchestrator(store, timeout=timeout).sync(sessions, window)


async def _balances(
    conf: config.Config, timeout: float
) -> Tuple[List[Tuple[str, Balance]], List[AccountFailure]]:
    async with factory.get_client() as client:
        sessions = factory.get_sessions(conf, client)
        return await SyncOrchestrator(timeout=timeout).balances(sessions)


async def _verify(token: str, api_url: str, account_uid: Optional[str]):
    async with StarlingSession(token, base_url=api_url, account_uid=account_uid) as session:
        return await session.resolve()


# --- Commands ---


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    setup_logging("DEBUG" if verbose else None)


@app.command("add-key")
def add_key(
    name: str = typer.Argument(..., help="Label for this account"),
    token: str = typer.Option(
        ..., "--token", "-t", prompt=True, hide_input=True, help="Personal access token"
    ),
    account_uid: Optional[str] = typer.Option(
        None, "--account-uid", help="Pin one account when the token sees several"
    ),
    verify: bool = typer.Option(True, "--verify/--no-verify"),
):
    """Store an access token (encrypted) for an account."""
    conf = _load_config()

    if verify:
        try:
            with console.status("[green]Checking token with Starling..."):
                identity = asyncio.run(_verify(token, conf.api_url, account_uid))
        except CredentialExpired:
            rprint("[bold red]Token rejected.[/bold red] Issue a new one and try again.")
            raise typer.Exit(1)
        except FetchError as e:
            rprint(f"[bold red]Verification Failed:[/bold red] {e}")
            raise typer.Exit(1)
        account_uid = account_uid or identity.account_uid
        rprint(f"Found account [bold]{identity.name or identity.account_uid}[/bold]")

    try:
        config.add_key(name, token, account_uid)
    except config.ConfigError as e:
        rprint(f"[bold red]Setup Failed:[/bold red] {e}")
        raise typer.Exit(1)
    rprint(f"[bold green]Success![/bold green] Key '{name}' saved.")


@app.command("keys")
def list_keys():
    """List configured accounts."""
    conf = _load_config()
    table = Table(title="Configured Accounts")
    table.add_column("Name", style="blue")
    table.add_column("Account UID", style="dim")
    for key in conf.keys:
        table.add_row(key.name, key.account_uid or "(first listed)")
    console.print(table)


@app.command("remove-key")
def remove_key(name: str = typer.Argument(...)):
    """Forget a stored access token."""
    try:
        config.remove_key(name)
    except config.ConfigError as e:
        rprint(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    rprint(f"Removed '{name}'.")


@app.command()
def update(
    days: Optional[int] = typer.Option(None, "--days", "-d", min=1, help="Days to fetch"),
    timeout: float = typer.Option(30.0, "--timeout", help="Per-account timeout (seconds)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch and show, but do not store"),
    json_out: bool = typer.Option(False, "--json"),
):
    """Fetch settled transactions from every account and merge them into the ledger."""
    conf = _load_config()
    days = days or conf.days

    try:
        result = asyncio.run(_sync(conf, days, timeout, dry_run))
    except ValueError as e:
        rprint(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(1)
    except AllAccountsFailed as e:
        if json_out:
            output = {"transactions": [], "errors": [failure_dict(f) for f in e.failures]}
            print(orjson.dumps(output).decode())
        else:
            render_failures(e.failures)
            rprint("[bold red]Every account failed; nothing was updated.[/bold red]")
        raise typer.Exit(1)

    if json_out:
        output = {
            "transactions": list(result.transactions),
            "errors": [failure_dict(f) for f in result.failures],
        }
        print(orjson.dumps(output).decode())
        return

    render_transactions(f"Settled transactions ({days} days)", result.transactions)
    render_failures(result.failures)
    rprint("Done")


@app.command()
def balances(
    timeout: float = typer.Option(30.0, "--timeout"),
    json_out: bool = typer.Option(False, "--json"),
):
    """Show account balances."""
    conf = _load_config()
    try:
        data, failures = asyncio.run(_balances(conf, timeout))
    except ValueError as e:
        rprint(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(1)

    if json_out:
        output = {
            "balances": [
                {"account": name, "cleared": b.cleared, "effective": b.effective}
                for name, b in data
            ],
            "errors": [failure_dict(f) for f in failures],
        }
        print(orjson.dumps(output).decode())
        return

    table = Table(title="Balances")
    table.add_column("Account", style="blue")
    table.add_column("Cleared", justify="right")
    table.add_column("Effective", justify="right", style="green")
    for name, b in data:
        table.add_row(
            name,
            f"{b.cleared.format()} {b.cleared.currency}",
            f"{b.effective.format()} {b.effective.currency}",
        )
    console.print(table)
    render_failures(failures)
    if failures and not data:
        raise typer.Exit(1)


@app.command()
def ledger(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Only the latest N"),
    json_out: bool = typer.Option(False, "--json"),
):
    """Show every stored transaction."""
    transactions = factory.get_store().list_all()
    if limit:
        transactions = transactions[-limit:]

    if json_out:
        print(orjson.dumps({"transactions": transactions}).decode())
        return

    render_transactions("Ledger", transactions)


if __name__ == "__main__":
    app()
