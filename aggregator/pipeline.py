from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from aggregator.config import AggregatorConfig, Taxonomy
from aggregator.crossref.matcher import NET_NEW, cross_reference
from aggregator.crossref.tracked import parse_roadmap_items, parse_tech_debt_items
from aggregator.dedup.engine import DedupEngine
from aggregator.ingest.normalizer import normalize_backlog, normalize_canon, normalize_single_session
from aggregator.ingest.parser import (
    parse_audit_findings_backlog,
    parse_jsonl_file,
    parse_markdown_backlog,
    parsed_items,
)
from aggregator.ingest.prioritizer import prioritize_findings
from aggregator.models import (
    Converged,
    CrossRefResult,
    DedupResult,
    Effort,
    Finding,
    MasterIssue,
    Severity,
)
from aggregator.utils import write_jsonl

logger = logging.getLogger(__name__)

RAW_FINDINGS = "raw-findings.jsonl"
NORMALIZED_FINDINGS = "normalized-findings.jsonl"
DEDUP_LOG = "dedup-log.jsonl"
UNIQUE_FINDINGS = "unique-findings.jsonl"
CROSSREF_LOG = "crossref-log.jsonl"
NET_NEW_FINDINGS = "net-new-findings.jsonl"
MASTER_ISSUE_LIST = "MASTER_ISSUE_LIST.jsonl"

_QUICK_WIN_EFFORTS = {Effort.E0, Effort.E1}
_QUICK_WIN_SEVERITIES = {Severity.S1, Severity.S2}


class SourceCounts(BaseModel):
    single_session: int = 0
    canon: int = 0
    backlog: int = 0
    audit_backlog: int = 0
    skipped_rows: int = 0

    @property
    def total(self) -> int:
        return self.single_session + self.canon + self.backlog + self.audit_backlog


class AggregationReport(BaseModel):
    """Everything a caller needs to summarize a run."""

    sources: SourceCounts
    raw_count: int
    unique_count: int
    converged: bool
    passes: int
    merges: int
    skipped_buckets: list[str] = Field(default_factory=list)
    already_tracked: int | None = None
    net_new: int | None = None
    severity_counts: dict[str, int] = Field(default_factory=dict)
    category_counts: dict[str, int] = Field(default_factory=dict)
    bucket_counts: dict[str, int] = Field(default_factory=dict)
    quick_wins: int = 0
    outputs: dict[str, Path] = Field(default_factory=dict)
    master_list: list[MasterIssue] = Field(default_factory=list)

    @property
    def reduction_pct(self) -> int:
        if self.raw_count == 0:
            return 0
        return round((1 - self.unique_count / self.raw_count) * 100)


def _normalize_items(
    items: list[dict[str, Any]], normalize: Callable[[dict[str, Any]], Finding], source: str
) -> list[Finding]:
    """Normalize each item; a record with unusable field types is skipped, not fatal."""
    findings: list[Finding] = []
    for item in items:
        try:
            findings.append(normalize(item))
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "Skipping item %s from %s: %s", item.get("id") or item.get("canonical_id"),
                source, type(exc).__name__,
            )
    return findings


def collect_findings(
    config: AggregatorConfig, taxonomy: Taxonomy
) -> tuple[list[Finding], SourceCounts]:
    """Read every configured source and normalize it. Missing files count as empty."""
    findings: list[Finding] = []
    counts = SourceCounts()
    date = config.single_session_date

    session_dir = config.resolve(config.single_session_dir)
    for category in config.single_session_categories:
        path = session_dir / category / f"audit-{date}.jsonl"
        items = parse_jsonl_file(path)
        normalized = _normalize_items(
            items, lambda item: normalize_single_session(item, category, date, taxonomy), category
        )
        logger.info("  - %s: %d items", category, len(normalized))
        findings.extend(normalized)
        counts.single_session += len(normalized)

    canon_dir = config.resolve(config.canon_dir)
    for canon_file in config.canon_files:
        items = parse_jsonl_file(canon_dir / canon_file)
        normalized = _normalize_items(
            items, lambda item: normalize_canon(item, canon_file, taxonomy), canon_file
        )
        logger.info("  - %s: %d items", canon_file, len(normalized))
        findings.extend(normalized)
        counts.canon += len(normalized)

    backlog_path = config.resolve(config.refactor_backlog)
    outcomes = parse_markdown_backlog(backlog_path)
    items = parsed_items(outcomes)
    counts.skipped_rows += len(outcomes) - len(items)
    logger.info("  - %s: %d items", backlog_path.name, len(items))
    findings.extend(normalize_backlog(item, taxonomy) for item in items)
    counts.backlog = len(items)

    audit_path = config.resolve(config.audit_backlog)
    outcomes = parse_audit_findings_backlog(audit_path)
    items = parsed_items(outcomes)
    counts.skipped_rows += len(outcomes) - len(items)
    logger.info("  - %s: %d items", audit_path.name, len(items))
    findings.extend(normalize_backlog(item, taxonomy) for item in items)
    counts.audit_backlog = len(items)

    return findings, counts


def _cross_reference(
    config: AggregatorConfig, taxonomy: Taxonomy, findings: list[Finding]
) -> CrossRefResult:
    roadmap_items = parse_roadmap_items(config.resolve(config.roadmap_path))
    tech_debt_items = parse_tech_debt_items(config.resolve(config.tech_debt_path))
    logger.info(
        "  - %d roadmap items, %d tech debt items", len(roadmap_items), len(tech_debt_items)
    )
    return cross_reference(
        findings, roadmap_items, tech_debt_items, taxonomy, line_proximity=config.line_proximity
    )


def run_aggregation(
    config: AggregatorConfig, taxonomy: Taxonomy | None = None
) -> AggregationReport:
    """Full batch: parse → normalize → dedup → cross-reference → prioritize → write.

    All sources are read before dedup starts. Outputs are overwritten in
    config.output_dir.
    """
    taxonomy = taxonomy or Taxonomy()
    output_dir = config.resolve(config.output_dir)
    outputs: dict[str, Path] = {}

    logger.info("Phase 1: parsing all sources")
    raw, counts = collect_findings(config, taxonomy)
    logger.info("Total raw findings: %d", len(raw))

    # Normalization happens during parsing, so both files hold the same records
    for name in (RAW_FINDINGS, NORMALIZED_FINDINGS):
        outputs[name] = output_dir / name
        write_jsonl(outputs[name], raw)

    logger.info("Phase 2: deduplicating")
    result: DedupResult = DedupEngine.from_config(config).run(raw)
    outputs[DEDUP_LOG] = output_dir / DEDUP_LOG
    write_jsonl(outputs[DEDUP_LOG], result.log)
    outputs[UNIQUE_FINDINGS] = output_dir / UNIQUE_FINDINGS
    write_jsonl(outputs[UNIQUE_FINDINGS], result.findings)

    unique = result.findings
    crossref: CrossRefResult | None = None
    if config.cross_reference:
        logger.info("Phase 3: cross-referencing tracked work")
        crossref = _cross_reference(config, taxonomy, unique)
        unique = crossref.findings
        outputs[CROSSREF_LOG] = output_dir / CROSSREF_LOG
        write_jsonl(outputs[CROSSREF_LOG], crossref.log)
        outputs[NET_NEW_FINDINGS] = output_dir / NET_NEW_FINDINGS
        write_jsonl(outputs[NET_NEW_FINDINGS], [f for f in unique if f.roadmap_status == NET_NEW])

    logger.info("Phase 4: prioritizing")
    master_list = prioritize_findings(unique, taxonomy)
    outputs[MASTER_ISSUE_LIST] = output_dir / MASTER_ISSUE_LIST
    write_jsonl(outputs[MASTER_ISSUE_LIST], master_list)

    severity_counts = Counter(m.severity.value if m.severity else "unknown" for m in master_list)
    quick_wins = sum(
        1
        for m in master_list
        if m.effort in _QUICK_WIN_EFFORTS and m.severity in _QUICK_WIN_SEVERITIES
    )

    return AggregationReport(
        sources=counts,
        raw_count=len(raw),
        unique_count=len(result.findings),
        converged=isinstance(result, Converged),
        passes=result.passes,
        merges=result.merge_count,
        skipped_buckets=result.skipped_buckets,
        already_tracked=crossref.already_tracked if crossref else None,
        net_new=crossref.net_new if crossref else None,
        severity_counts=dict(severity_counts),
        category_counts=dict(Counter(m.category.value for m in master_list)),
        bucket_counts=dict(Counter(m.pr_bucket for m in master_list)),
        quick_wins=quick_wins,
        outputs=outputs,
        master_list=master_list,
    )
