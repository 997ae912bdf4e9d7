"""CLI commands using Typer."""

import typer

from latchkey.cli.db import app as db_app
from latchkey.cli.tokens import app as tokens_app
from latchkey.cli.users import app as users_app

app = typer.Typer(name="latchkey", help="Latchkey CLI")

# Register sub-apps
app.add_typer(db_app, name="db")
app.add_typer(users_app, name="users")
app.add_typer(tokens_app, name="tokens")


@app.command()
def version():
    """Show version information."""
    from latchkey import __version__

    typer.echo(f"Latchkey v{__version__}")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
):
    """Run the API server."""
    import uvicorn

    from latchkey.logging import get_uvicorn_log_config

    uvicorn.run(
        "latchkey.main:app",
        host=host,
        port=port,
        reload=reload,
        log_config=get_uvicorn_log_config(),
    )


@app.command()
def worker(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
):
    """Run the background worker that sweeps expired tokens."""
    from latchkey import worker as worker_module
    from latchkey.config import settings

    if verbose:
        settings.log_level = "DEBUG"

    worker_module.main()


if __name__ == "__main__":
    app()
