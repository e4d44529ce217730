"""CLI entry point for repochat."""

import asyncio

import click
import uvicorn

from .client import ChatClient
from .config import get_db_path
from .server import load_catalog_file
from .session import TurnState
from .store import ChatStore


@click.group()
def main():
    """Ask questions about a catalog of tracked GitHub repositories."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--log-level", default="info", help="Uvicorn log level.")
def serve(port: int, host: str, log_level: str):
    """Start the API server."""
    click.echo(f"Starting repochat on http://{host}:{port}")
    uvicorn.run("repochat.server:app", host=host, port=port, reload=False, log_level=log_level)


@main.command("load-catalog")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def load_catalog(path: str):
    """Replace the project catalog with the projects in a JSON file."""
    try:
        projects = load_catalog_file(path)
    except ValueError as e:
        raise click.ClickException(str(e))
    count = ChatStore(get_db_path()).replace_projects(projects)
    skipped = sum(1 for p in projects if not p.repo_identifier)
    click.echo(f"Loaded {count} projects")
    if skipped:
        click.echo(f"Warning: {skipped} projects have no owner/name and will never be matched", err=True)


@main.command()
@click.argument("question")
@click.option("--url", default="http://127.0.0.1:8080", help="Server base URL.")
@click.option("--visitor", default=None, help="Visitor id (random if omitted).")
@click.option("--session", "session_id", default=None, help="Continue this session.")
@click.option("--repo", default=None, help="Repository to bias towards (owner/name).")
def ask(question: str, url: str, visitor: str | None, session_id: str | None, repo: str | None):
    """Ask one question and stream the answer."""
    try:
        asyncio.run(_ask(question, url, visitor, session_id, repo))
    except KeyboardInterrupt:
        click.echo()


async def _ask(question, url, visitor, session_id, repo):
    client = ChatClient(base_url=url, visitor_id=visitor)
    client.session_id = session_id
    client.active_repo = repo
    try:
        result = await client.ask(question, on_delta=lambda piece: click.echo(piece, nl=False))
    finally:
        await client.aclose()

    click.echo()
    if result.state == TurnState.FAILED:
        raise click.ClickException(result.error or "Request failed")
    if result.state != TurnState.COMPLETED:
        return

    for citation in result.citations:
        location = citation.url or citation.path or ""
        click.echo(f"[{citation.index}] {citation.repo} {location}".rstrip())
    if result.warning:
        click.echo(f"Warning: {result.warning}", err=True)
    click.echo(f"session: {result.session_id}  visitor: {client.visitor_id}", err=True)
