import asyncio
import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from shelvy.accounts import AccountManager
from shelvy.config import settings
from shelvy.database import initialize_database
from shelvy.metadata import MetadataEnricher
from shelvy.search import BookSearch
from shelvy.services.http_client import cleanup_http_client
from shelvy.services.nyt_service import NYTAPIError, NYTBooksService

APP_NAME = "Shelvy CLI"

console = Console()
app = typer.Typer(help=APP_NAME)


def _run(coro):
    """Run a coroutine and close the shared HTTP client afterwards."""
    async def runner():
        try:
            return await coro
        finally:
            await cleanup_http_client()
    return asyncio.run(runner())


@app.callback()
def _global_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    initialize_database()
    console.print("[green]Database initialized[/]")


@app.command("create-user")
def cli_create_user(
    email: str = typer.Argument(..., help="Account email"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="Account password"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Public username"),
    admin: bool = typer.Option(False, "--admin", help="Grant the admin role"),
):
    """Create an account."""
    initialize_database()
    accounts = AccountManager()
    try:
        user = accounts.sign_up(email, password, username)
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(code=1)
    if admin:
        accounts.grant_role(user["id"], "admin")
    console.print(f"Created user {user['email']} ({user['id']})" + (" with admin role" if admin else ""))


@app.command("grant-admin")
def cli_grant_admin(email: str = typer.Argument(..., help="Email of an existing account")):
    """Give an existing account the admin role."""
    initialize_database()
    accounts = AccountManager()
    user = accounts.get_user_by_email(email)
    if not user:
        console.print(f"[bold red]User {email} not found[/]")
        raise typer.Exit(code=1)
    accounts.grant_role(user["id"], "admin")
    console.print(f"{email} is now an admin")


@app.command("backfill")
def cli_backfill(limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum number of books")):
    """Fill missing metadata on every shelf from Google Books."""
    initialize_database()
    result = _run(MetadataEnricher().backfill_all_metadata(limit))
    console.print(result.get("message") or result)


@app.command("isbndb-backfill")
def cli_isbndb_backfill(limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum number of titles")):
    """Fill missing metadata from ISBNdb."""
    initialize_database()
    try:
        result = _run(MetadataEnricher().isbndb_backfill(limit))
    except ValueError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(code=1)
    console.print(result.get("message") or result)


@app.command("refresh-covers")
def cli_refresh_covers(
    email: str = typer.Argument(..., help="Owner of the shelf"),
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum number of books"),
):
    """Replace missing or low quality covers on one shelf."""
    initialize_database()
    user = AccountManager().get_user_by_email(email)
    if not user:
        console.print(f"[bold red]User {email} not found[/]")
        raise typer.Exit(code=1)
    result = _run(MetadataEnricher().refresh_covers(user["id"], limit=limit))
    console.print(f"Updated {result.get('updated', 0)} of {result.get('processed', 0)} books")


@app.command("bestsellers")
def cli_bestsellers(list_name: Optional[str] = typer.Argument(None, help="NYT list name")):
    """Show a New York Times bestseller list."""
    try:
        result = _run(NYTBooksService().bestsellers(list_name))
    except (LookupError, NYTAPIError) as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(code=1)

    table = Table(title=result.get("listName") or "Bestsellers", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Author")
    for book in result["books"]:
        table.add_row(str(book.get("rank", "")), book.get("title") or "", book.get("author") or "")
    console.print(table)


@app.command("search")
def cli_search(
    query: str = typer.Argument(..., help="Title, author or keywords"),
    cache: bool = typer.Option(False, "--cache", help="Search books already on shelves instead"),
):
    """Search for books."""
    initialize_database()
    search = BookSearch()
    if cache:
        result = search.search_cache(query)
    else:
        result = _run(search.search_books(query))

    items = result.get("items") or []
    if not items:
        console.print("No results")
        return
    table = Table(title=f"Results ({result.get('source')})", box=box.SIMPLE)
    table.add_column("Title")
    table.add_column("Author")
    for item in items:
        info = item.get("volumeInfo") or {}
        table.add_row(info.get("title") or "", ", ".join(info.get("authors") or []))
    console.print(table)


@app.command("serve")
def cli_serve(
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)"),
):
    """Start the API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    console.print(f"[green]Starting API on http://{host}:{port}/[/]")
    args = [sys.executable, "-m", "uvicorn", "shelvy.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    try:
        if timeout and timeout > 0:
            proc = subprocess.Popen(args, start_new_session=os.name != "nt")
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                proc.wait(timeout=5)
        else:
            subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] uvicorn is not installed")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
