"""User management CLI commands."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from latchkey.database import get_session_context
from latchkey.models import TokenKind
from latchkey.services.qr_keys import QRKeyManager, build_verify_url
from latchkey.services.store import IdentityStore
from latchkey.services.tokens import TokenIssuer

console = Console()
app = typer.Typer(help="User management commands")


def _yes_no(value: bool) -> str:
    return "[green]Yes[/green]" if value else "No"


@app.command("list")
def list_users():
    """List all users."""

    async def _list():
        async with get_session_context() as session:
            users = await IdentityStore(session).list_users()

            table = Table(title="Users")
            table.add_column("ID", style="cyan")
            table.add_column("Email", style="green")
            table.add_column("Verified", style="blue")
            table.add_column("Community", style="yellow")
            table.add_column("Admin", style="magenta")
            table.add_column("Created", style="dim")

            for user in users:
                verified = (
                    user.email_verified_at.strftime("%Y-%m-%d") if user.email_verified_at else "-"
                )
                created = user.created_at.strftime("%Y-%m-%d") if user.created_at else "-"
                table.add_row(
                    user.id,
                    user.email,
                    verified,
                    _yes_no(user.community_verified),
                    _yes_no(user.is_admin),
                    created,
                )

            console.print(table)

    asyncio.run(_list())


@app.command("create")
def create_user(
    email: str = typer.Argument(..., help="User email"),
    admin: bool = typer.Option(False, "--admin", help="Make user an admin"),
    community: bool = typer.Option(False, "--community", help="Mark user as community verified"),
):
    """Create a new user."""

    async def _create():
        async with get_session_context() as session:
            store = IdentityStore(session)
            user, created = await store.get_or_create_user(
                email, community_verified=community, is_admin=admin
            )
            if not created:
                console.print(f"[red]Error:[/red] User {email} already exists")
                raise typer.Exit(1)

            await store.commit()
            console.print(
                f"[green]Created user:[/green] {email} "
                f"(admin={user.is_admin}, community_verified={user.community_verified})"
            )

    asyncio.run(_create())


@app.command("grant-admin")
def grant_admin(email: str = typer.Argument(..., help="User email")):
    """Grant admin privileges to a user."""

    async def _grant():
        async with get_session_context() as session:
            store = IdentityStore(session)
            user = await store.get_user_by_email(email)

            if not user:
                console.print(f"[red]Error:[/red] User {email} not found")
                raise typer.Exit(1)

            if not await store.promote_user(user, is_admin=True):
                console.print(f"[yellow]Warning:[/yellow] User {email} is already an admin")
                return

            await store.commit()
            console.print(f"[green]Granted admin to:[/green] {email}")

    asyncio.run(_grant())


@app.command("login-url")
def login_url(email: str = typer.Argument(..., help="User email")):
    """Generate a magic link login URL for a user."""

    async def _generate():
        async with get_session_context() as session:
            store = IdentityStore(session)
            user = await store.get_user_by_email(email)

            if not user:
                console.print(f"[red]Error:[/red] User {email} not found")
                raise typer.Exit(1)

            token = await TokenIssuer(store).issue(user.id, TokenKind.MAGIC_LINK)

            console.print(f"[green]Login URL:[/green] {build_verify_url(token.token)}")
            console.print(f"[dim]Expires: {token.expires_at}[/dim]")

    asyncio.run(_generate())


@app.command("qr-key")
def qr_key(
    email: str = typer.Argument(..., help="User email"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the QR code PNG here"),
):
    """Show a user's QR key, minting one if none is valid."""

    async def _qr_key():
        async with get_session_context() as session:
            store = IdentityStore(session)
            user = await store.get_user_by_email(email)

            if not user:
                console.print(f"[red]Error:[/red] User {email} not found")
                raise typer.Exit(1)

            artifact = await QRKeyManager(store, TokenIssuer(store)).get_or_create(user.id)

            state = "Reused" if artifact.reused else "Issued"
            console.print(f"[green]{state} QR key:[/green] {artifact.verify_url}")
            console.print(f"[dim]Expires: {artifact.expires_at}[/dim]")

            if output:
                output.write_bytes(artifact.png)
                console.print(f"[green]Wrote QR code to[/green] {output}")

    asyncio.run(_qr_key())
