import asyncio
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .errors import DocChatError
from .observability.logging import setup_logging
from .pipelines.crawler import DocsCrawler
from .pipelines.policy import LinkPolicy

console = Console()
app = typer.Typer(help="DocChat CLI - chat with any documentation site")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port")
):
    """Run the WebSocket API server"""
    from .server.rag_api import create_app

    settings = get_settings()
    setup_logging(level=settings.log_level, use_json=settings.log_json)
    try:
        settings.require_api_key()
    except DocChatError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    uvicorn.run(create_app(settings), host=host or settings.api_host, port=port or settings.api_port)


@app.command()
def crawl(
    url: str = typer.Argument(..., help="Documentation URL to start from"),
    max_pages: int = typer.Option(20, "--max-pages", help="Maximum pages to extract"),
    docs_path: str = typer.Option("/docs/", "--docs-path", help="Regex a link must match to be followed"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")
):
    """Crawl a documentation site and list the extracted pages"""
    settings = get_settings()
    setup_logging(level="DEBUG" if verbose else "WARNING")
    crawler = DocsCrawler(settings=settings, link_policy=LinkPolicy(doc_path_pattern=docs_path or None))

    def on_progress(current: int, total: int, title: str) -> None:
        console.print(f"[{current}/{total}] {title}", style="dim")

    try:
        pages, stats = asyncio.run(crawler.crawl_with_stats(url, max_pages, on_progress))
    except DocChatError as e:
        console.print(f"❌ {e}", style="bold red")
        raise typer.Exit(1)

    table = Table(title=f"Pages extracted from {url}")
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("URL", style="cyan")
    table.add_column("Chars", justify="right")
    for i, page in enumerate(pages, 1):
        table.add_row(str(i), page.title, page.url, str(len(page.content)))
    console.print(table)
    console.print(f"✅ {stats.extracted} extracted, {stats.rejected} too short, "
                  f"{stats.failed} failed", style="bold green")


if __name__ == "__main__":
    app()
