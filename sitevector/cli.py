"""Command-line interface."""

import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from sitevector.bootstrap import open_runtime
from sitevector.config import get_settings
from sitevector.database import build_engine, create_schema
from sitevector.exceptions import RetrievalError
from sitevector.log_config import configure_logging
from sitevector.services.pipeline import AddPageRequest, FullCrawlRequest, PipelineResult
from sitevector.services.progress import CallbackSink, MultiSink, ProgressEvent
from sitevector.services.search import SearchService

app = typer.Typer(
    name="sitevector",
    help="Crawl websites into a searchable vector index",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

console = Console()


def _setup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)


def _print_event(event: ProgressEvent) -> None:
    console.print(f"[dim]{event.percent:5.1f}%[/dim] {escape(f'[{event.stage}]')} {escape(event.message)}")


def _report(result: PipelineResult) -> None:
    if not result.success:
        console.print(f"❌ {result.message}: {result.error}", style="red")
        raise typer.Exit(1)

    summary = result.summary
    table = Table(title=result.message)
    table.add_column("URL")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Quality", justify="right")
    for page in result.pages:
        table.add_row(page.url, page.status, str(page.chunks_created), f"{page.chunk_quality:.1f}")
    console.print(table)
    console.print(
        f"✅ {summary.pages_processed} processed, {summary.pages_failed} failed, "
        f"{summary.pages_skipped} skipped, "
        f"{summary.chunks_created} chunks, ${summary.total_cost:.6f} "
        f"in {summary.processing_time_ms}ms",
        style="green",
    )


@app.command("init-db")
def init_db():
    """Create the vector extension and all tables"""
    _setup()

    async def run() -> None:
        engine = build_engine(get_settings())
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(run())
    console.print("✅ Database initialized", style="green")


@app.command()
def crawl(
    url: str = typer.Argument(..., help="Website root URL"),
    max_pages: int = typer.Option(None, "--max-pages", help="Maximum pages to process"),
    max_depth: int = typer.Option(None, "--max-depth", help="Maximum link depth to crawl"),
):
    """Discover, extract, chunk and embed a website"""
    _setup()

    async def run() -> PipelineResult:
        async with open_runtime(get_settings()) as runtime:
            sink = MultiSink(runtime.progress, CallbackSink(_print_event))
            request = FullCrawlRequest(website_url=url, max_pages=max_pages, max_depth=max_depth)
            return await runtime.pipeline.run_full_crawl(request, progress=sink)

    _report(asyncio.run(run()))


@app.command("add-page")
def add_page(
    website_url: str = typer.Argument(..., help="Website root URL"),
    page_url: str = typer.Argument(..., help="Page to add"),
    priority: int = typer.Option(None, "--priority", min=0, max=100, help="Page priority (0-100)"),
):
    """Add a single page to a website's index"""
    _setup()

    async def run() -> PipelineResult:
        async with open_runtime(get_settings()) as runtime:
            sink = MultiSink(runtime.progress, CallbackSink(_print_event))
            request = AddPageRequest(website_url=website_url, page_url=page_url, priority=priority)
            return await runtime.pipeline.run_add_page(request, progress=sink)

    _report(asyncio.run(run()))


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    limit: int = typer.Option(None, "--limit", help="Maximum results"),
    threshold: float = typer.Option(None, "--threshold", help="Minimum similarity (0-1)"),
    website_id: str = typer.Option(None, "--website-id", help="Restrict to one website"),
):
    """Search indexed chunks by similarity"""
    _setup()

    async def run():
        async with open_runtime(get_settings()) as runtime:
            return await runtime.search.search(
                query, limit=limit, threshold=threshold, website_id=website_id
            )

    try:
        response = asyncio.run(run())
    except RetrievalError as e:
        console.print(f"❌ {e}", style="red")
        raise typer.Exit(1)

    if not response.results:
        console.print("No matching chunks found.", style="yellow")
        return

    for match, info in zip(response.results, SearchService.sources(response.results)):
        console.print(f"[bold]{info['similarity']:.3f}[/bold] {match.title or 'Untitled'} - {match.url}")
        console.print(f"  {info['preview']}", style="dim")
    console.print(f"{len(response.results)} results in {response.search_time_ms}ms")


@app.command("embed-missing")
def embed_missing(limit: int = typer.Option(100, "--limit", help="Maximum chunks to embed")):
    """Embed stored chunks that have no embedding yet"""
    _setup()

    async def run():
        async with open_runtime(get_settings()) as runtime:
            return await runtime.ingestor.embed_missing(limit=limit)

    outcome = asyncio.run(run())
    console.print(
        f"✅ Embedded {outcome.embedded}/{outcome.attempted} chunks "
        f"({outcome.failed} failed, ${outcome.cost:.6f})",
        style="green",
    )


if __name__ == "__main__":
    app()
