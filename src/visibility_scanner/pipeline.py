"""End-to-end audit: crawl, index, scan and plan with rich progress output."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn
from rich.table import Table

from visibility_scanner.config import ScanConfig, ScannerSettings
from visibility_scanner.events import EventSink
from visibility_scanner.models import ActionPlan, EventKind, ProgressEvent, Recommendation, Scan, ScanStatus
from visibility_scanner.service import VisibilityService

logger = logging.getLogger(__name__)
console = Console()


class ProgressBarSink:
    """Drive a rich progress bar from crawl, index and scan events."""

    def __init__(self, progress: Progress, task: TaskID) -> None:
        self._progress = progress
        self._task = task

    def emit(self, event: ProgressEvent) -> None:
        data = event.data
        if event.kind == EventKind.CRAWL_PROGRESS:
            self._progress.update(self._task, completed=data["total"], description=f"Crawling {data['current_url']}")
        elif event.kind == EventKind.INDEX_BUILD_PROGRESS:
            self._progress.update(self._task, completed=data["embedded"], total=data["total"])
        elif event.kind == EventKind.SCAN_PROGRESS:
            self._progress.update(self._task, completed=data["completed"], total=data["total"])


class _SwitchableSink:
    def __init__(self) -> None:
        self.target: Optional[EventSink] = None

    def emit(self, event: ProgressEvent) -> None:
        if self.target is not None:
            self.target.emit(event)


class AuditPipeline:
    """Run a complete visibility audit for one site."""

    def __init__(self, settings: ScannerSettings, project_id: str = "cli", **service_kwargs: Any) -> None:
        self.settings = settings
        self.project_id = project_id
        self._sink = _SwitchableSink()
        self.service = VisibilityService(settings, sink=self._sink, **service_kwargs)

    def _progress(self) -> Progress:
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )

    async def run(self, seed_url: str, scan_config: Optional[ScanConfig] = None) -> dict[str, Any]:
        """Execute the full audit and return the report document."""
        settings = self.settings
        scan_config = scan_config or settings.scan

        console.rule("[bold blue]AI Visibility Audit[/bold blue]")
        console.print(f"[dim]Seed URL: {seed_url}[/dim]")
        console.print(f"[dim]Max pages: {settings.crawl.max_pages} | Depth: {settings.crawl.max_depth}[/dim]")
        console.print(f"[dim]Chunk strategy: {settings.chunk.strategy.value} | Size: {settings.chunk.chunk_size} tokens[/dim]")
        console.print(f"[dim]Queries: {scan_config.query_source.value} | Top-K: {scan_config.max_results}[/dim]")
        console.print()

        # Stage 1: Crawl
        console.rule("[bold cyan]Stage 1: Crawling[/bold cyan]")
        with self._progress() as progress:
            self._sink.target = ProgressBarSink(progress, progress.add_task("Crawling...", total=settings.crawl.max_pages))
            run = await self.service.start_crawl(self.project_id, seed_url)
        console.print(
            f"[green]✓[/green] Crawled {run.total_pages} pages "
            f"({run.successful_pages} ok, {run.failed_pages} failed, {run.skipped_pages} blocked by robots.txt)"
        )
        console.print()

        # Stage 2: Index
        console.rule("[bold cyan]Stage 2: Indexing[/bold cyan]")
        with self._progress() as progress:
            self._sink.target = ProgressBarSink(progress, progress.add_task("Embedding chunks...", total=None))
            states = await self.service.build_indexes(self.project_id)
        for kind, state in states.items():
            mark = "[green]✓[/green]" if state["status"] == "ready" else "[red]✗[/red]"
            suffix = f", {state['failedChunks']} failed" if state["failedChunks"] else ""
            console.print(f"{mark} {kind}: {state['status']} ({state['chunkCount']} chunks{suffix})")
            if state.get("errorMessage"):
                console.print(f"  [red]{state['errorMessage']}[/red]")
        console.print()

        # Stage 3: Scan
        console.rule("[bold cyan]Stage 3: Scanning[/bold cyan]")
        with self._progress() as progress:
            self._sink.target = ProgressBarSink(progress, progress.add_task("Running queries...", total=None))
            scan = await self.service.execute_scan(self.project_id, scan_config)
        self._sink.target = None
        for warning in scan.warnings:
            console.print(f"[yellow]! {warning}[/yellow]")
        if scan.status == ScanStatus.FAILED:
            console.print(f"[red]✗ Scan failed: {scan.error_message}[/red]")
            return {"crawl": run.summary(), "indexes": states, "scan": scan.to_document()}
        console.print(f"[green]✓[/green] Ran {scan.coverage_metrics.total_queries} queries")
        console.print()

        # Stage 4: Recommendations
        console.rule("[bold cyan]Stage 4: Recommendations[/bold cyan]")
        recommendations = await self.service.get_recommendations(self.project_id, scan.scan_id)
        plan = await self.service.generate_action_plan(self.project_id, scan.scan_id)
        console.print(f"[green]✓[/green] {len(recommendations)} recommendations, {plan.total_items} action items")
        console.print()

        self._print_summary(scan, recommendations, plan)
        return {
            "crawl": run.summary(),
            "indexes": states,
            "scan": scan.to_document(),
            "recommendations": [r.to_document() for r in recommendations],
            "actionPlan": plan.to_document(),
        }

    def _print_summary(self, scan: Scan, recommendations: list[Recommendation], plan: ActionPlan) -> None:
        console.rule("[bold green]Audit Complete[/bold green]")
        console.print()
        metrics = scan.coverage_metrics

        table = Table(title="Visibility Summary", show_header=True, header_style="bold magenta")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white", justify="right")
        table.add_row("Hybrid Coverage", f"{metrics.hybrid_coverage:.0%}")
        table.add_row("BM25 Coverage", f"{metrics.bm25_coverage:.0%}")
        table.add_row("Vector Coverage", f"{metrics.vector_coverage:.0%}")
        table.add_row("Average MRR (BM25)", f"{metrics.average_mrr_bm25:.3f}")
        table.add_row("Average MRR (Vector)", f"{metrics.average_mrr_vector:.3f}")
        table.add_row("Average Overlap", f"{metrics.average_overlap:.2f}")
        table.add_row("Queries (valid / errored)", f"{metrics.valid_queries} / {metrics.errored_queries}")
        table.add_row("Projected Score", f"{plan.overall_score.current:.2f} → {plan.overall_score.projected:.2f}")
        table.add_row("Estimated Time", plan.estimated_time_to_complete or "-")
        console.print(table)
        console.print()

        if recommendations:
            recs = Table(title="Top Recommendations", show_lines=True)
            recs.add_column("Priority", style="bold")
            recs.add_column("Title", style="cyan")
            recs.add_column("Effort")
            for rec in recommendations[:5]:
                recs.add_row(rec.priority.value, rec.title, rec.effort.value)
            console.print(recs)
            console.print()


def run_audit(
    settings: ScannerSettings,
    seed_url: str,
    output: Optional[str | Path] = None,
    scan_config: Optional[ScanConfig] = None,
) -> dict[str, Any]:
    """Convenience function to run an audit synchronously, optionally writing the JSON report."""
    report = asyncio.run(AuditPipeline(settings).run(seed_url, scan_config))
    if output:
        path = Path(output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")
        console.print(f"[green]✓[/green] Report written to {path}")
    return report
