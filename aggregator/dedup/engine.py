"""Multi-pass, bucketed fuzzy deduplication of findings.

Each pass buckets findings by file path and by category, compares every
pair inside a bucket, and merges pairs that match. A pass can create a
record whose combined files newly collide with a third record, so passes
repeat until one performs no merges (fixpoint) or the pass cap is hit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone

from aggregator.config import AggregatorConfig
from aggregator.dedup.similarity import MAX_COMPARE_LENGTH, similarity_score
from aggregator.models import (
    Converged,
    DedupResult,
    Finding,
    MaxPassesReached,
    MergeDecision,
    Severity,
)

logger = logging.getLogger(__name__)

_CANON_PREFIX = "CANON-"
_DEDUP_PREFIX = "DEDUP-"

# Lower rank = more severe; unknown severity ranks below S3
_SEVERITY_RANK: dict[Severity, int] = {
    Severity.S0: 0,
    Severity.S1: 1,
    Severity.S2: 2,
    Severity.S3: 3,
}
_UNKNOWN_SEVERITY_RANK = 4


def severity_rank(severity: Severity | None) -> int:
    if severity is None:
        return _UNKNOWN_SEVERITY_RANK
    return _SEVERITY_RANK[severity]


def _unique(values: Iterable) -> list:
    """Order-preserving dedupe."""
    return list(dict.fromkeys(values))


def merge_findings(finding1: Finding, finding2: Finding) -> Finding:
    """Merge two findings into a new record; neither input is modified.

    The more severe record (ties go to finding1) supplies the scalar fields.
    Sources and evidence are concatenated, files unioned, and merged_from
    carries the full ancestry of both sides.
    """
    if severity_rank(finding1.severity) <= severity_rank(finding2.severity):
        primary, secondary = finding1, finding2
    else:
        primary, secondary = finding2, finding1

    merged_from = _unique(
        [
            primary.original_id,
            *primary.merged_from,
            secondary.original_id,
            *secondary.merged_from,
        ]
    )
    merged_from = [i for i in merged_from if i]
    ancestry = set(merged_from)

    files = _unique([*primary.paths, *secondary.paths])
    dependencies = [
        d for d in _unique([*primary.dependencies, *secondary.dependencies]) if d not in ancestry
    ]

    return primary.model_copy(
        update={
            "sources": _unique([*primary.sources, *secondary.sources]),
            "evidence": _unique([*primary.evidence, *secondary.evidence]),
            "files": files,
            "file": primary.file or (files[0] if files else None),
            "dependencies": dependencies,
            "merged_from": merged_from,
        }
    )


def _explicit_link(canon: Finding, dedup: Finding) -> str | None:
    if not canon.original_id.startswith(_CANON_PREFIX):
        return None
    if not dedup.original_id.startswith(_DEDUP_PREFIX):
        return None
    # A merged CANON record still answers to the ids it absorbed
    canon_ids = {canon.original_id, *canon.merged_from}
    if not canon_ids.intersection(dedup.dependencies):
        return None
    return "explicit DEDUP->CANON dependency"


class DedupEngine:
    """Runs the dedup loop with the configured thresholds and size caps."""

    def __init__(
        self,
        max_passes: int = 10,
        max_file_bucket: int = 250,
        max_category_bucket: int = 250,
        file_title_threshold: int = 80,
        category_title_threshold: int = 90,
        max_title_length: int = MAX_COMPARE_LENGTH,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_passes = max_passes
        self.max_file_bucket = max_file_bucket
        self.max_category_bucket = max_category_bucket
        self.file_title_threshold = file_title_threshold
        self.category_title_threshold = category_title_threshold
        self.max_title_length = max_title_length
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_config(cls, config: AggregatorConfig) -> DedupEngine:
        return cls(
            max_passes=config.max_passes,
            max_file_bucket=config.max_file_bucket,
            max_category_bucket=config.max_category_bucket,
            file_title_threshold=config.file_title_threshold,
            category_title_threshold=config.category_title_threshold,
            max_title_length=config.max_title_length,
        )

    def merge_reasons(self, finding1: Finding, finding2: Finding) -> list[str]:
        """Return every reason the pair should merge (empty list = keep apart)."""
        reasons: list[str] = []

        for canon, dedup in ((finding1, finding2), (finding2, finding1)):
            link = _explicit_link(canon, dedup)
            if link:
                reasons.append(link)

        shares_file = bool(set(finding1.paths) & set(finding2.paths))
        same_category = finding1.category == finding2.category
        if not (shares_file or same_category):
            return reasons

        similarity = similarity_score(finding1.title, finding2.title, self.max_title_length)
        if shares_file and similarity >= self.file_title_threshold:
            reasons.append(f"same file + similar title ({similarity}%)")
        if same_category and similarity >= self.category_title_threshold:
            reasons.append(f"same category + very similar title ({similarity}%)")

        return reasons

    def run(self, findings: list[Finding]) -> DedupResult:
        """Merge duplicates until a pass makes no merges or max_passes is reached."""
        current = list(findings)
        log: list[MergeDecision] = []
        skipped_buckets: list[str] = []
        passes = 0
        merged_last_pass = True

        while merged_last_pass and passes < self.max_passes:
            passes += 1
            dedup_pass = _DedupPass(self, current)
            current = dedup_pass.execute()
            log.extend(dedup_pass.log)
            skipped_buckets.extend(b for b in dedup_pass.skipped if b not in skipped_buckets)
            merged_last_pass = bool(dedup_pass.log)
            logger.info(
                "Dedup pass %d: %d merges, %d findings remain",
                passes,
                len(dedup_pass.log),
                len(current),
            )

        if merged_last_pass:
            logger.warning(
                "Deduplication hit max passes (%d), may not be at fixpoint", self.max_passes
            )
            return MaxPassesReached(
                findings=current, log=log, passes=passes, skipped_buckets=skipped_buckets
            )
        return Converged(findings=current, log=log, passes=passes, skipped_buckets=skipped_buckets)


class _DedupPass:
    """State for a single pass. Indices and bucket maps are never reused across passes."""

    def __init__(self, engine: DedupEngine, findings: list[Finding]) -> None:
        self._engine = engine
        self._findings = findings
        self._absorbed: set[int] = set()
        self._merged: dict[int, Finding] = {}
        self.log: list[MergeDecision] = []
        self.skipped: list[str] = []

    def execute(self) -> list[Finding]:
        file_index: dict[str, set[int]] = {}
        category_index: dict[str, set[int]] = {}
        id_index: dict[str, int] = {}

        for i, f in enumerate(self._findings):
            for path in f.paths:
                file_index.setdefault(path, set()).add(i)
            category_index.setdefault(f.category.value, set()).add(i)
            if f.original_id:
                id_index[f.original_id] = i
        # Absorbed ids still resolve to the record that absorbed them
        for i, f in enumerate(self._findings):
            for merged_id in f.merged_from:
                if merged_id:
                    id_index.setdefault(merged_id, i)

        self._process_buckets(file_index, self._engine.max_file_bucket, "file")
        self._process_buckets(category_index, self._engine.max_category_bucket, "category")
        self._bridge_dependencies(id_index)

        return [
            self._merged.get(i, f)
            for i, f in enumerate(self._findings)
            if i not in self._absorbed
        ]

    def _process_buckets(self, index: dict[str, set[int]], max_size: int, kind: str) -> None:
        for key, members in index.items():
            if len(members) > max_size:
                logger.warning(
                    "Skipping %s bucket '%s' (%d items > %d cap)", kind, key, len(members), max_size
                )
                self.skipped.append(f"{kind}:{key}")
                continue
            indices = sorted(members)
            for a in range(len(indices)):
                for b in range(a + 1, len(indices)):
                    self._try_merge(indices[a], indices[b])

    def _bridge_dependencies(self, id_index: dict[str, int]) -> None:
        """Merge DEDUP- records with what they reference, even across buckets."""
        for i in range(len(self._findings)):
            if i in self._absorbed:
                continue
            f = self._merged.get(i, self._findings[i])
            if not f.original_id.startswith(_DEDUP_PREFIX) or not f.dependencies:
                continue
            for dep_id in f.dependencies:
                j = id_index.get(dep_id)
                if j is not None and j != i:
                    self._try_merge(i, j)

    def _try_merge(self, i: int, j: int) -> None:
        if i in self._absorbed or j in self._absorbed:
            return
        finding1 = self._merged.get(i, self._findings[i])
        finding2 = self._merged.get(j, self._findings[j])

        reasons = self._engine.merge_reasons(finding1, finding2)
        if not reasons:
            return

        decision = MergeDecision(
            finding1_id=finding1.original_id,
            finding2_id=finding2.original_id,
            reasons=reasons,
            timestamp=self._engine.clock().isoformat(),
        )
        self.log.append(decision)
        logger.debug(
            "Merged %s <- %s (%s)", decision.finding1_id, decision.finding2_id, "; ".join(reasons)
        )

        self._merged[i] = merge_findings(finding1, finding2)
        self._merged.pop(j, None)
        self._absorbed.add(j)
