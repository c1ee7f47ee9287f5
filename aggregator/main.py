from __future__ import annotations

import logging
import sys

import click

from aggregator.config import AggregatorConfig, Taxonomy
from aggregator.pipeline import AggregationReport, run_aggregation

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 200
_TOP_N = 10


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging. INFO by default, DEBUG if verbose."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _print_summary(report: AggregationReport) -> None:
    sources = report.sources

    click.echo(f"\n{'='*60}")
    click.echo("  Aggregation Summary")
    click.echo(f"{'='*60}")
    click.echo(f"  Single-session findings: {sources.single_session}")
    click.echo(f"  CANON findings:          {sources.canon}")
    click.echo(f"  Refactor backlog items:  {sources.backlog}")
    click.echo(f"  Audit backlog items:     {sources.audit_backlog}")
    if sources.skipped_rows:
        click.echo(f"  Skipped Markdown rows:   {sources.skipped_rows}")
    click.echo(f"  Raw total:               {report.raw_count}")
    click.echo(f"  Unique after dedup:      {report.unique_count} ({report.reduction_pct}% reduction)")

    status = "converged" if report.converged else "stopped at pass cap"
    click.echo(f"  Dedup: {report.merges} merges in {report.passes} passes ({status})")
    for bucket in report.skipped_buckets:
        click.echo(f"    skipped oversized bucket {bucket}")

    if report.net_new is not None:
        click.echo(f"\n  Already tracked: {report.already_tracked}")
        click.echo(f"  NET NEW:         {report.net_new}")

    click.echo("\n  By severity:")
    for sev in ["S0", "S1", "S2", "S3", "unknown"]:
        count = report.severity_counts.get(sev, 0)
        if count or sev != "unknown":
            click.echo(f"    {sev:12s} {count}")

    click.echo("\n  By category:")
    for cat, count in sorted(report.category_counts.items(), key=lambda kv: (-kv[1], kv[0])):
        click.echo(f"    {cat:30s} {count}")

    click.echo("\n  By PR bucket:")
    for bucket, count in sorted(report.bucket_counts.items(), key=lambda kv: (-kv[1], kv[0])):
        click.echo(f"    {bucket:30s} {count}")

    click.echo(f"\n  Quick wins (E0/E1, S1/S2): {report.quick_wins}")

    click.echo(f"\n  Top {_TOP_N} by priority:")
    for issue in report.master_list[:_TOP_N]:
        severity = issue.severity.value if issue.severity else "--"
        click.echo(
            f"    [{issue.priority_score:3d}] {issue.master_id} | {severity:2s} | "
            f"{issue.category.value:14s} | {issue.title[:50]}"
        )

    click.echo("\n  Outputs:")
    for path in report.outputs.values():
        click.echo(f"    {path}")
    click.echo(f"{'='*60}\n")


@click.command()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--root",
    "repo_root",
    default=None,
    type=click.Path(file_okay=False),
    help="Repository root the configured paths resolve against (default: cwd)",
)
def cli(verbose: bool, repo_root: str | None) -> None:
    """Aggregate audit findings into a deduplicated, prioritized master issue list."""
    _setup_logging(verbose)

    try:
        config = AggregatorConfig(repo_root=repo_root) if repo_root else AggregatorConfig()
        report = run_aggregation(config, Taxonomy())
    except Exception as exc:
        # Only the exception type and a bounded message reach the log
        logger.error(
            "Aggregation failed [%s]: %s", type(exc).__name__, str(exc)[:_MAX_ERROR_LENGTH]
        )
        sys.exit(1)

    _print_summary(report)


if __name__ == "__main__":
    cli()
