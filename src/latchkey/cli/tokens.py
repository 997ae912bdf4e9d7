"""Token maintenance CLI commands."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from latchkey.database import get_session_context
from latchkey.models import utcnow
from latchkey.services.email import EmailService
from latchkey.services.store import IdentityStore
from latchkey.services.sweeper import ExpirySweeper
from latchkey.services.tokens import token_prefix

console = Console()
app = typer.Typer(help="Token maintenance commands")


@app.command("list")
def list_tokens(
    limit: int = typer.Option(50, "--limit", "-l", help="Number of tokens to show"),
):
    """List the most recently issued tokens."""

    async def _list():
        async with get_session_context() as session:
            store = IdentityStore(session)
            tokens = await store.list_tokens(limit=limit)
            total = await store.count_tokens()
            now = utcnow()

            table = Table(title=f"Tokens ({len(tokens)} of {total})")
            table.add_column("Token", style="cyan")
            table.add_column("Kind", style="green")
            table.add_column("User", style="dim")
            table.add_column("Expires", style="yellow")
            table.add_column("Used", style="magenta")
            table.add_column("Status")

            for token in tokens:
                status = "[red]expired[/red]" if token.is_expired(now) else "[green]active[/green]"
                used = token.used_at.strftime("%Y-%m-%d %H:%M") if token.used_at else "-"
                table.add_row(
                    token_prefix(token.token),
                    token.kind.value,
                    token.user_id,
                    token.expires_at.strftime("%Y-%m-%d %H:%M"),
                    used,
                    status,
                )

            console.print(table)

    asyncio.run(_list())


@app.command("sweep")
def sweep():
    """Remind owners of expired QR keys and delete all expired tokens."""

    async def _sweep():
        async with get_session_context() as session:
            result = await ExpirySweeper(IdentityStore(session), EmailService()).sweep()

        console.print(f"[green]Removed {result.removed} expired tokens[/green]")
        console.print(
            f"[dim]Renewal reminders: {result.reminders_sent} sent, "
            f"{result.reminders_failed} failed[/dim]"
        )

    asyncio.run(_sweep())


@app.command("clear")
def clear(
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete every token, expired or not.

    WARNING: every outstanding magic link and QR key stops working!
    """
    if not force:
        console.print("[bold red]WARNING:[/bold red] This will invalidate ALL links and QR keys!")
        if not typer.confirm("Are you sure you want to continue?"):
            console.print("[dim]Cancelled[/dim]")
            raise typer.Exit(0)

    async def _clear():
        async with get_session_context() as session:
            store = IdentityStore(session)
            deleted = await store.delete_all_tokens()
            await store.commit()
        console.print(f"[green]Deleted {deleted} tokens[/green]")

    asyncio.run(_clear())
