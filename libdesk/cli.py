import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from libdesk import database
from libdesk.accounts import Accounts
from libdesk.assistant.tool_catalog import ALL_TOOLS
from libdesk.assistant.tool_selection import SelectionConfig, create_selection_summary, get_tool_usage_stats, select_tools
from libdesk.config import settings
from libdesk.errors import ExternalServiceError
from libdesk.library import Library
from libdesk.notifications import NotificationCenter

console = Console()
app = typer.Typer(help="Library desk administration")


@app.callback()
def _global_options(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
):
    """Global options shared by every command."""
    if db:
        database.configure(db)


@app.command("init-db")
def cli_init_db():
    """Create tables and default roles."""
    database.initialize_database()
    console.print(f"Database ready: {database.DATABASE_FILE}")


@app.command("books")
def cli_books(
    q: Optional[str] = typer.Option(None, "--q", help="Search text"),
    genre: Optional[str] = typer.Option(None, "--genre"),
    limit: int = typer.Option(20, "--limit", min=1),
):
    """List catalog books."""
    books = Library().list_books(q=q, genre=genre, limit=limit)
    if not books:
        console.print("No books found.")
        return
    table = Table(title="Catalog", show_lines=False, header_style="bold cyan")
    table.add_column("Title", style="bold")
    table.add_column("Authors")
    table.add_column("ISBN")
    table.add_column("Genre")
    table.add_column("Available", justify="right")
    for book in books:
        table.add_row(escape(book.title), escape(book.authors), book.isbn or "", book.genre or "",
                      str(book.available_copies))
    console.print(table)


@app.command("import-isbn")
def cli_import_isbn(isbns: list[str] = typer.Argument(..., help="One or more ISBNs")):
    """Create books from Open Library metadata."""
    library = Library()
    added = 0
    for isbn in isbns:
        try:
            book = library.import_by_isbn(isbn)
        except LookupError as e:
            console.print(f"[yellow]Not found[/]: {isbn} ({escape(str(e))})")
        except (ValueError, ExternalServiceError) as e:
            console.print(f"[red]Failed[/]: {isbn} ({escape(str(e))})")
        else:
            added += 1
            console.print(f"[green]Added[/]: {escape(book.title)} by {escape(book.authors)}")
    console.print(f"Imported {added} of {len(isbns)}")


@app.command("create-admin")
def cli_create_admin(
    email: str = typer.Option(..., "--email"),
    password: str = typer.Option(..., "--password"),
    full_name: str = typer.Option("Administrator", "--name"),
):
    """Create a user with the admin role."""
    try:
        user = Accounts().create_user(full_name, email, password, roles=["admin"])
    except ValueError as e:
        console.print(f"[red]Error[/]: {escape(str(e))}")
        raise typer.Exit(code=1)
    console.print(f"Admin created: {user.email} ({user.id})")


@app.command("send-reminders")
def cli_send_reminders(days: Optional[int] = typer.Option(None, "--days", min=1)):
    """Run the due-soon, overdue and unpaid-fine notification sweeps."""
    center = NotificationCenter()
    due = center.send_due_reminders(days)
    overdue = center.send_overdue_notifications()
    fines = center.send_fine_notifications()
    console.print(Panel.fit(
        f"Due soon: {len(due)}\nOverdue: {len(overdue)}\nUnpaid fines: {len(fines)}",
        title="Notifications sent",
    ))


@app.command("select-tools")
def cli_select_tools(
    query: str = typer.Argument(...),
    user_level: int = typer.Option(2, "--level", min=1, max=3),
):
    """Show which assistant tools a query would get."""
    selection = select_tools(query, ALL_TOOLS, SelectionConfig(user_level=user_level))
    stats = get_tool_usage_stats(selection.selected_tools, ALL_TOOLS)
    table = Table(header_style="bold cyan")
    table.add_column("Tool")
    table.add_column("Endpoint")
    for tool in selection.selected_tools:
        table.add_row(tool.name, f"{tool.api_method or ''} {tool.api_endpoint or ''}".strip())
    console.print(table)
    console.print(create_selection_summary(selection.analysis, selection.used_categories, stats))


@app.command("stats")
def cli_stats():
    """Show catalog and reader statistics."""
    books = Library().get_book_statistics()
    users = Accounts().get_user_statistics()
    table = Table(title="Statistics", show_header=False)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in books.items():
        if not isinstance(value, (dict, list)):
            table.add_row(f"books.{key}", str(value))
    for key, value in users.items():
        if not isinstance(value, (dict, list)):
            table.add_row(f"users.{key}", str(value))
    console.print(table)


@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload")):
    """Start the API with uvicorn."""
    args = [
        sys.executable,
        "-m", "uvicorn",
        "libdesk.api:app",
        "--host", settings.api_host,
        "--port", str(settings.api_port),
    ]
    if reload:
        args.append("--reload")
    console.print(f"Starting API on http://{settings.api_host}:{settings.api_port}/")
    env = dict(os.environ, LIBRARY_DB_FILE=database.DATABASE_FILE)
    try:
        subprocess.run(args, env=env, check=False)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] uvicorn is not installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
