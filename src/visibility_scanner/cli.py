"""CLI interface for the AI Visibility Scanner."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from visibility_scanner.config import ChunkStrategy, QuerySource, ScanConfig, ScannerSettings
from visibility_scanner.crawler import WebCrawler
from visibility_scanner.errors import ScannerError
from visibility_scanner.pipeline import run_audit

console = Console()


def setup_logging(level: str) -> None:
    """Configure rich logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _load_settings(config_path: str | None) -> ScannerSettings:
    return ScannerSettings.from_env_and_file(config_path)


@click.group()
@click.version_option(package_name="ai-visibility-scanner")
def main() -> None:
    """AI Visibility Scanner: measure how retrievable a website is for AI assistants."""
    pass


@main.command()
@click.argument("url")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML config file")
@click.option("--max-pages", "-n", type=int, default=None, help="Max pages to crawl")
@click.option("--max-depth", "-d", type=int, default=None, help="Max crawl depth")
@click.option("--delay-ms", type=int, default=None, help="Minimum delay between fetches (ms)")
@click.option(
    "--chunk-strategy",
    type=click.Choice([s.value for s in ChunkStrategy], case_sensitive=False),
    default=None,
    help="Chunking strategy",
)
@click.option("--query", "-q", "queries", multiple=True, help="Provided query (repeatable); omit to generate queries")
@click.option("--queries-file", type=click.Path(exists=True), help="File with one provided query per line")
@click.option("--generate", "generate_count", type=int, default=None, help="Number of queries to generate")
@click.option("--max-results", "-k", type=int, default=None, help="Top-K results per index")
@click.option("--hybrid/--no-hybrid", default=None, help="Also compute reciprocal-rank fusion results")
@click.option("--no-robots", is_flag=True, default=False, help="Ignore robots.txt")
@click.option("--output", "-o", type=click.Path(), default=None, help="Write the JSON report here")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default="INFO", show_default=True)
def audit(
    url: str,
    config_path: str | None,
    max_pages: int | None,
    max_depth: int | None,
    delay_ms: int | None,
    chunk_strategy: str | None,
    queries: tuple[str, ...],
    queries_file: str | None,
    generate_count: int | None,
    max_results: int | None,
    hybrid: bool | None,
    no_robots: bool,
    output: str | None,
    log_level: str,
) -> None:
    """Crawl URL, build both indexes, run a scan and print an action plan.

        visibility-scanner audit https://example.com -q "pricing plans" -q "how to install"
    """
    setup_logging(log_level)
    settings = _load_settings(config_path)

    crawl_overrides = {
        "max_pages": max_pages,
        "max_depth": max_depth,
        "crawl_delay_ms": delay_ms,
        "respect_robots_txt": False if no_robots else None,
    }
    settings.crawl = settings.crawl.model_copy(update={k: v for k, v in crawl_overrides.items() if v is not None})
    if chunk_strategy:
        settings.chunk = settings.chunk.model_copy(update={"strategy": ChunkStrategy(chunk_strategy)})

    provided = list(queries)
    if queries_file:
        provided.extend(line.strip() for line in Path(queries_file).read_text(encoding="utf-8").splitlines())
    scan_data = settings.scan.model_dump(mode="json")
    if provided:
        scan_data.update(query_source=QuerySource.PROVIDED.value, queries=[q for q in provided if q])
    if generate_count is not None:
        scan_data["generate_query_count"] = generate_count
    if max_results is not None:
        scan_data["max_results"] = max_results
    if hybrid is not None:
        scan_data["use_hybrid_search"] = hybrid

    try:
        scan_config = ScanConfig.model_validate(scan_data)
    except ValueError as exc:
        console.print(f"[red]Invalid scan configuration: {exc}[/red]")
        sys.exit(2)

    try:
        run_audit(settings, url, output=output, scan_config=scan_config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Audit interrupted by user.[/yellow]")
        sys.exit(1)
    except ScannerError as exc:
        console.print(f"\n[red]Audit failed ({exc.code}): {exc.message}[/red]")
        sys.exit(1)
    except Exception as exc:
        console.print(f"\n[red]Audit failed: {exc}[/red]")
        logging.getLogger(__name__).exception("Audit error")
        sys.exit(1)


@main.command()
@click.argument("url")
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), help="YAML config file")
@click.option("--max-pages", "-n", type=int, default=None, help="Max pages to crawl")
@click.option("--max-depth", "-d", type=int, default=None, help="Max crawl depth")
@click.option("--no-robots", is_flag=True, default=False, help="Ignore robots.txt")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]), default="INFO", show_default=True)
def crawl(
    url: str,
    config_path: str | None,
    max_pages: int | None,
    max_depth: int | None,
    no_robots: bool,
    log_level: str,
) -> None:
    """Crawl URL only and list the fetched pages."""
    setup_logging(log_level)
    settings = _load_settings(config_path)
    overrides = {"max_pages": max_pages, "max_depth": max_depth, "respect_robots_txt": False if no_robots else None}
    config = settings.crawl.model_copy(update={k: v for k, v in overrides.items() if v is not None})

    try:
        run = asyncio.run(WebCrawler(config, settings.extraction).crawl(url))
    except ScannerError as exc:
        console.print(f"[red]{exc.message}[/red]")
        sys.exit(2)

    table = Table(title=f"Crawl of {run.seed_url}", show_lines=False)
    table.add_column("Depth", justify="right")
    table.add_column("Status")
    table.add_column("URL", style="blue", max_width=60)
    table.add_column("Title", max_width=40)
    table.add_column("Words", justify="right")
    for page in run.pages:
        status = "[green]ok[/green]" if page.error_message is None else f"[red]{page.error_message}[/red]"
        table.add_row(str(page.crawl_depth), status, page.url, page.title, str(page.word_count))
    console.print(table)
    console.print(
        f"{run.total_pages} pages: {run.successful_pages} ok, {run.failed_pages} failed, "
        f"{run.skipped_pages} blocked by robots.txt"
    )


@main.command("init-config")
@click.option("--output", "-o", type=click.Path(), default="scanner_config.yaml", show_default=True)
def init_config(output: str) -> None:
    """Generate a default YAML configuration file."""
    ScannerSettings().to_yaml(output)
    console.print(f"[green]✓[/green] Default config written to {output}")
    console.print("[dim]Edit the file and run: visibility-scanner audit --config scanner_config.yaml URL[/dim]")


@main.command()
@click.argument("report_path", type=click.Path(exists=True))
def inspect(report_path: str) -> None:
    """Inspect a JSON audit report written by ``audit --output``."""
    report = json.loads(Path(report_path).read_text(encoding="utf-8"))
    scan = report.get("scan", {})
    metrics = scan.get("coverageMetrics", {})

    console.print(f"[bold]Scan {scan.get('scanId', '?')}[/bold] ({scan.get('status', '?')})")
    console.print(
        f"Hybrid coverage: {metrics.get('hybridCoverage', 0):.0%} | "
        f"BM25: {metrics.get('bm25Coverage', 0):.0%} | Vector: {metrics.get('vectorCoverage', 0):.0%}"
    )
    console.print()

    table = Table(title="Query Results", show_lines=True)
    table.add_column("#", justify="right")
    table.add_column("Query", style="cyan", max_width=50)
    table.add_column("Intent")
    table.add_column("MRR BM25", justify="right")
    table.add_column("MRR Vector", justify="right")
    table.add_column("Overlap", justify="right")
    for result in scan.get("queryResults", []):
        if result.get("error"):
            table.add_row(str(result["index"]), result["query"], result.get("intent", ""), "-", "-", f"[red]{result['error']}[/red]")
            continue
        table.add_row(
            str(result["index"]),
            result["query"],
            result.get("intent", ""),
            f"{result['mrr']['bm25']:.2f}",
            f"{result['mrr']['vector']:.2f}",
            f"{result['overlap']:.2f}",
        )
    console.print(table)

    plan = report.get("actionPlan")
    if plan:
        console.print()
        for phase in plan.get("phases", []):
            console.print(f"[bold]{phase['name']}[/bold] [dim]({phase['duration']})[/dim]")
            for item in phase["items"]:
                mark = "x" if item.get("completed") else " "
                console.print(f"  [{mark}] {item['id']}: {item['title']} [dim]({item['priority']}/{item['effort']})[/dim]")


if __name__ == "__main__":
    main()
