"""Abraxas CLI: operator commands for the orchestrator.

Usage:
    abraxas serve              Start the API server
    abraxas init-db            Create database tables
    abraxas gen-key            Print a new vault encryption key
    abraxas errors             List error codes and remediation
    abraxas user add           Register a user
    abraxas sandbox list       List sandboxes known to the provider
    abraxas sandbox reap       Retry queued sandbox destroys
"""

import logging
import os
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from abraxas.config import Settings, load_settings
from abraxas.errors import DomainError, format_failure, to_failure

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="abraxas",
    help="Run coding-agent tasks in remote sandboxes",
    no_args_is_help=True,
)
user_app = typer.Typer(help="Manage users")
sandbox_app = typer.Typer(help="Inspect and clean up sandboxes")
config_app = typer.Typer(help="Configuration management")

app.add_typer(user_app, name="user")
app.add_typer(sandbox_app, name="sandbox")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to abraxas.yaml config file"
    ),
):
    """Abraxas CLI."""
    global _config_path
    _config_path = config


def _settings() -> Settings:
    try:
        return load_settings(_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _fail(error: DomainError) -> None:
    console.print(f"[red]{format_failure(to_failure(error))}[/red]")
    raise typer.Exit(1)


# --- Version ---


@app.command()
def version():
    """Show Abraxas version."""
    from importlib.metadata import version as pkg_version

    try:
        v = pkg_version("abraxas")
    except Exception:
        v = "unknown"
    console.print(f"[bold]Abraxas[/bold] v{v}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    from abraxas.utils.redaction import redact_for_logging

    settings = _settings()
    raw = settings.model_dump()
    for name, value in redact_for_logging(raw).items():
        if raw[name] in (None, ""):
            value = "(not set)"
        console.print(f"  {name}: {value}")


# --- Error codes ---


@app.command("errors")
def errors_cmd(
    category: Optional[str] = typer.Option(
        None, "--category", "-c", help="Only show one category (data, validation, sandbox, system, auth)"
    ),
):
    """List the error codes the API and CLI can report."""
    from abraxas.errors import ERROR_REGISTRY, ErrorCategory, get_errors_by_category

    if category is None:
        errors = sorted(ERROR_REGISTRY.values(), key=lambda e: e.code)
    else:
        try:
            errors = get_errors_by_category(ErrorCategory(category.lower()))
        except ValueError:
            choices = ", ".join(c.value for c in ErrorCategory)
            console.print(f"[red]Unknown category '{category}'. Choose from: {choices}[/red]")
            raise typer.Exit(1)

    table = Table(title="Error codes")
    table.add_column("Code")
    table.add_column("Category")
    table.add_column("Title")
    table.add_column("Remediation")
    for error in errors:
        table.add_row(error.code, error.category.value, error.title, error.remediation)
    console.print(table)


# --- Database and keys ---


@app.command("init-db")
def init_db_cmd():
    """Create all database tables (safe to re-run)."""
    from abraxas.db.connection import get_database_url, init_db

    init_db()
    console.print(f"[green]Database ready:[/green] {get_database_url()}")


@app.command("gen-key")
def gen_key():
    """Print a new 32-byte hex key for ABRAXAS_ENCRYPTION_KEY."""
    from abraxas.services.credential_vault import generate_encryption_key

    console.print(generate_encryption_key())


# --- Users ---


@user_app.command("add")
def user_add(
    email: str = typer.Argument(help="Email address, usable as the identity header"),
    name: Optional[str] = typer.Option(None, "--name", help="Display name"),
):
    """Register a user. Prints the id to send in the X-Abraxas-User header."""
    from abraxas.db.connection import get_db_context, init_db
    from abraxas.db.models import User

    init_db()
    with get_db_context() as db:
        if db.query(User).filter(User.email == email).first() is not None:
            console.print(f"[yellow]User already exists:[/yellow] {email}")
            raise typer.Exit(1)
        user = User(name=name or email.split("@")[0], email=email)
        db.add(user)
        db.flush()
        user_id = user.id
    console.print(f"[green]User created:[/green] {user_id}")


@user_app.command("list")
def user_list():
    """List registered users."""
    from abraxas.db.connection import get_db_context
    from abraxas.db.models import User

    table = Table(title="Users")
    table.add_column("ID")
    table.add_column("Email")
    table.add_column("Name")
    table.add_column("Agent auth")
    with get_db_context() as db:
        for user in db.query(User).order_by(User.created_at).all():
            table.add_row(
                user.id, user.email, user.name,
                "yes" if user.encrypted_agent_auth else "no",
            )
    console.print(table)


# --- Sandboxes ---


def _provider(settings: Settings):
    from abraxas.services.sandbox_provider import SpritesClient

    return SpritesClient(
        token=settings.sprites_token,
        api_base=settings.sprites_api_base,
        timeout=settings.sandbox_timeout_seconds,
    )


@sandbox_app.command("list")
def sandbox_list(
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Name prefix filter"),
):
    """List sandboxes known to the provider."""
    settings = _settings()
    try:
        client = _provider(settings)
        try:
            sandboxes = client.list_sandboxes(prefix=prefix)
        finally:
            client.close()
    except DomainError as e:
        _fail(e)

    table = Table(title="Sandboxes")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("URL")
    for info in sandboxes:
        table.add_row(info.name, info.status or "-", info.url or "-")
    console.print(table)


@sandbox_app.command("reap")
def sandbox_reap(
    max_retries: Optional[int] = typer.Option(
        None, "--max-retries", help="Attempts before an entry is dead-lettered"
    ),
):
    """Retry every pending sandbox destroy once."""
    from abraxas.db.connection import get_db_context
    from abraxas.services.sandbox_manager import drain_destroy_queue

    settings = _settings()
    try:
        client = _provider(settings)
        try:
            with get_db_context() as db:
                result = drain_destroy_queue(
                    db, client, max_retries or settings.destroy_max_retries
                )
        finally:
            client.close()
    except DomainError as e:
        _fail(e)

    console.print(
        f"[green]Destroyed:[/green] {result['destroyed']}  "
        f"[yellow]Failed:[/yellow] {result['failed']}  "
        f"[red]Dead-lettered:[/red] {result['dead_letter']}"
    )


# --- Server ---


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Start the Abraxas API server."""
    import uvicorn

    # Propagate config path so the app loads the same settings as the CLI.
    if _config_path:
        os.environ["ABRAXAS_CONFIG_PATH"] = str(_config_path)
    settings = _settings()

    console.print(f"[bold]Starting Abraxas API on {host}:{port}[/bold]")
    uvicorn.run(
        "abraxas.api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    app()
