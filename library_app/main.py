import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from library_app import database
from library_app.accounts import AccountService
from library_app.config import settings
from library_app.database import ADMIN_ROLE_ID
from library_app.errors import LibraryError
from library_app.library import Library
from library_app.loans import LoanService
from library_app.logging_config import configure_logging
from library_app.ui_helpers import print_books_result, print_overdue_result, print_stats_result, set_output_mode

console = Console()

app = typer.Typer(help="Library management CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """Global options shared by every command."""
    configure_logging()
    if output:
        set_output_mode(output)
    database.initialize_database(db_file)


@app.command("init-db")
def cli_init_db():
    """Create the schema and seed roles and categories."""
    # The callback already ran the migrations.
    print(f"Database ready: {database.DATABASE_FILE}")


@app.command("create-admin")
def cli_create_admin(name: str, email: str, password: str):
    """Create an administrator account."""
    try:
        user = AccountService().create_user(name, email, password, role_id=ADMIN_ROLE_ID)
    except (LibraryError, ValueError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)
    print(f"Created administrator #{user.id} <{user.email}>")


@app.command("books")
def cli_books(available: bool = typer.Option(False, "--available", help="Only books with stock")):
    """List the catalog."""
    print_books_result(Library().list_books(only_available=available))


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(Library().get_statistics())


@app.command("overdue")
def cli_overdue():
    """List active loans past their due date."""
    print_overdue_result(LoanService().overdue_loans())


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the REST API with uvicorn."""
    console.print(f"[bold green]Starting API on http://{host}:{port}/[/]")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_app.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/]")


if __name__ == "__main__":
    app()
