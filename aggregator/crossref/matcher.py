from __future__ import annotations

import logging
import posixpath
from collections import Counter

from aggregator.config import Taxonomy
from aggregator.models import CrossRefEntry, CrossRefResult, Finding, TrackedItem

logger = logging.getLogger(__name__)

_MIN_WORD_LENGTH = 5
_MIN_WORD_HITS = 2
_TITLE_PREVIEW = 60

ALREADY_TRACKED = "already_tracked"
NET_NEW = "net_new"


def _basename(path: str) -> str:
    return posixpath.basename(path.replace("\\", "/"))


def _significant_words(text: str) -> list[str]:
    return [w for w in text.lower().split() if len(w) >= _MIN_WORD_LENGTH]


class _TrackedIndex:
    """Lookup tables over one tracked-item list, built once per cross-reference run."""

    def __init__(self, items: list[TrackedItem], taxonomy: Taxonomy) -> None:
        self._taxonomy = taxonomy
        self.by_id: dict[str, TrackedItem] = {}
        self.by_basename: dict[str, list[TrackedItem]] = {}
        self.by_line: dict[str, list[tuple[int, TrackedItem]]] = {}
        self.by_word: dict[str, list[TrackedItem]] = {}

        for item in items:
            self.by_id.setdefault(item.id, item)
            for path in item.files:
                self.by_basename.setdefault(_basename(path), []).append(item)
            for path, line in item.file_lines:
                self.by_line.setdefault(_basename(path), []).append((line, item))
            for word in _significant_words(item.title):
                for expanded in taxonomy.expand_synonyms(word):
                    bucket = self.by_word.setdefault(expanded, [])
                    if all(existing.id != item.id for existing in bucket):
                        bucket.append(item)

    def match_words(self, title: str) -> tuple[TrackedItem, int] | None:
        """First item sharing at least two (synonym-expanded) significant words."""
        hits: Counter[str] = Counter()
        for word in dict.fromkeys(_significant_words(title)):
            matched: dict[str, None] = {}
            for expanded in sorted(self._taxonomy.expand_synonyms(word)):
                for item in self.by_word.get(expanded, []):
                    matched.setdefault(item.id)
            hits.update(matched.keys())
        for item_id, count in hits.items():
            if count >= _MIN_WORD_HITS:
                return self.by_id[item_id], count
        return None


def cross_reference(
    findings: list[Finding],
    roadmap_items: list[TrackedItem],
    tech_debt_items: list[TrackedItem],
    taxonomy: Taxonomy,
    line_proximity: int = 15,
) -> CrossRefResult:
    """Tag each finding as already tracked (ROADMAP / tech debt) or NET NEW.

    Checks run from most to least precise: direct ids, file:line exact,
    file:line within line_proximity, basename, then title-word overlap.
    Returns new Finding records; the inputs are not modified.
    """
    roadmap = _TrackedIndex(roadmap_items, taxonomy)
    tech_debt = _TrackedIndex(tech_debt_items, taxonomy)

    tagged: list[Finding] = []
    log: list[CrossRefEntry] = []

    for finding in findings:
        roadmap_match: TrackedItem | None = None
        tech_debt_match: TrackedItem | None = None
        reason: str | None = None

        if finding.original_id in tech_debt.by_id:
            tech_debt_match = tech_debt.by_id[finding.original_id]
            reason = "direct ID match"

        if finding.original_id in roadmap.by_id:
            roadmap_match = roadmap.by_id[finding.original_id]
            reason = "direct roadmap ID match"

        basename = _basename(finding.file) if finding.file else None

        if roadmap_match is None and basename and finding.line is not None:
            nearest: tuple[int, TrackedItem] | None = None
            for line, item in roadmap.by_line.get(basename, []):
                distance = abs(finding.line - line)
                if distance <= line_proximity and (nearest is None or distance < nearest[0]):
                    nearest = (distance, item)
            if nearest is not None:
                roadmap_match = nearest[1]
                if nearest[0] == 0:
                    reason = f"file:line exact match: {basename}:{finding.line}"
                else:
                    reason = f"file:line proximity (within {line_proximity} lines): {basename}"

        if roadmap_match is None and basename and roadmap.by_basename.get(basename):
            roadmap_match = roadmap.by_basename[basename][0]
            reason = f"file match: {basename}"

        if tech_debt_match is None and finding.title:
            word_match = tech_debt.match_words(finding.title)
            if word_match:
                tech_debt_match = word_match[0]
                reason = f"title similarity ({word_match[1]} words, with synonyms)"

        if roadmap_match is None and finding.title:
            word_match = roadmap.match_words(finding.title)
            if word_match:
                roadmap_match = word_match[0]
                reason = f"description similarity ({word_match[1]} words, with synonyms)"

        tracked = roadmap_match is not None or tech_debt_match is not None
        roadmap_id = roadmap_match.id if roadmap_match else None
        tech_debt_id = tech_debt_match.id if tech_debt_match else None

        if tracked:
            log.append(
                CrossRefEntry(
                    finding_id=finding.original_id,
                    finding_title=finding.title[:_TITLE_PREVIEW],
                    matched_roadmap_item=roadmap_id,
                    matched_tech_debt_item=tech_debt_id,
                    match_reason=reason,
                )
            )

        tagged.append(
            finding.model_copy(
                update={
                    "roadmap_status": ALREADY_TRACKED if tracked else NET_NEW,
                    "matched_roadmap_item": roadmap_id,
                    "matched_tech_debt_item": tech_debt_id,
                }
            )
        )

    already_tracked = len(log)
    logger.info(
        "Cross-reference: %d already tracked, %d NET NEW",
        already_tracked,
        len(findings) - already_tracked,
    )
    return CrossRefResult(
        findings=tagged,
        log=log,
        already_tracked=already_tracked,
        net_new=len(findings) - already_tracked,
    )
