from __future__ import annotations

import logging
from typing import Any

from aggregator.config import Taxonomy
from aggregator.models import Category, Confidence, Effort, Finding, Severity, SourceRef

logger = logging.getLogger(__name__)

# Numeric confidence thresholds (inclusive lower bounds)
_HIGH_CONFIDENCE = 0.9
_MEDIUM_CONFIDENCE = 0.7

# Placeholder dependency cells in Markdown tables
_EMPTY_DEPENDENCY_MARKERS = {"", "None"}


def normalize_confidence(value: Any) -> str | None:
    """Map a numeric 0-1 score onto high/medium/low; lower-case any string value."""
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        if value >= _HIGH_CONFIDENCE:
            return Confidence.HIGH.value
        if value >= _MEDIUM_CONFIDENCE:
            return Confidence.MEDIUM.value
        return Confidence.LOW.value
    return str(value).lower()


def normalize_roi(value: Any) -> str | None:
    """Upper-case and trim ROI; blank or whitespace-only means unset."""
    if value is None:
        return None
    normalized = str(value).strip().upper()
    return normalized or None


def normalize_severity(value: Any) -> Severity | None:
    if value is None:
        return None
    try:
        return Severity(str(value).strip().upper())
    except ValueError:
        return None


def normalize_effort(value: Any) -> Effort | None:
    if value is None:
        return None
    try:
        return Effort(str(value).strip().upper())
    except ValueError:
        return None


def resolve_category(
    taxonomy: Taxonomy,
    item_id: str | None,
    label: str | None,
    source_category: str | None = None,
) -> Category:
    """Pick a canonical category.

    Order: ID prefix rule (SEC-010 is security even if labelled "Framework"),
    then the item's own label, then the enclosing source's category, then code.
    """
    return (
        taxonomy.category_for_id(item_id)
        or taxonomy.category_for_label(label)
        or taxonomy.category_for_label(source_category)
        or Category.CODE
    )


def filter_self_dependencies(dependencies: Any, self_id: str | None) -> list[str]:
    """Drop empty entries and any dependency pointing back at the item itself."""
    if not dependencies:
        return []
    if isinstance(dependencies, str):
        dependencies = [dependencies]
    elif not isinstance(dependencies, (list, tuple)):
        return []
    return [str(d) for d in dependencies if d and str(d) != self_id]


def _str_or_none(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def normalize_single_session(
    item: dict[str, Any],
    source_category: str,
    date: str,
    taxonomy: Taxonomy,
) -> Finding:
    """Normalize one line of a per-category single-session audit."""
    item_id = _str_or_none(item.get("id")) or ""
    file = _str_or_none(item.get("file"))

    return Finding(
        original_id=item_id,
        title=str(item.get("title") or ""),
        category=resolve_category(taxonomy, item_id, item.get("category"), source_category),
        severity=normalize_severity(item.get("severity")),
        effort=normalize_effort(item.get("effort")),
        confidence=normalize_confidence(item.get("confidence")),
        verified=item.get("verified") if isinstance(item.get("verified"), bool) else None,
        file=file,
        files=[file] if file else [],
        line=item.get("line"),
        description=_str_or_none(item.get("description")),
        recommendation=_str_or_none(item.get("recommendation")),
        evidence=item.get("evidence"),
        dependencies=filter_self_dependencies(item.get("dependencies"), item_id),
        roi=normalize_roi(item.get("roi")),
        cwe=_str_or_none(item.get("cwe")),
        owasp=_str_or_none(item.get("owasp")),
        sources=[
            SourceRef(type="single-session", id=item_id, date=date, category=source_category)
        ],
    )


def _canon_description(item: dict[str, Any]) -> str | None:
    details = item.get("issue_details")
    return _str_or_none(
        item.get("why_it_matters")
        or item.get("description")
        or (details.get("description") if isinstance(details, dict) else None)
    )


def _canon_recommendation(item: dict[str, Any]) -> str | None:
    if item.get("suggested_fix"):
        return str(item["suggested_fix"])
    optimization = item.get("optimization")
    if isinstance(optimization, dict) and optimization.get("description"):
        return str(optimization["description"])
    remediation = item.get("remediation")
    if isinstance(remediation, dict) and isinstance(remediation.get("steps"), list):
        return "; ".join(str(s) for s in remediation["steps"])
    return None


def normalize_canon(item: dict[str, Any], source_file: str, taxonomy: Taxonomy) -> Finding:
    """Normalize one CANON-*.jsonl record."""
    item_id = _str_or_none(item.get("canonical_id")) or ""
    files = item.get("files") or []
    if isinstance(files, str):
        files = [files]
    elif not isinstance(files, (list, tuple)):
        files = []
    files = list(dict.fromkeys(str(f) for f in files if f))

    return Finding(
        original_id=item_id,
        title=str(item.get("title") or ""),
        category=resolve_category(taxonomy, item_id, item.get("category")),
        severity=normalize_severity(item.get("severity")),
        effort=normalize_effort(item.get("effort")),
        confidence=normalize_confidence(
            item.get("confidence") if item.get("confidence") is not None else item.get("final_confidence")
        ),
        file=files[0] if files else None,
        files=files,
        symbols=item.get("symbols"),
        description=_canon_description(item),
        recommendation=_canon_recommendation(item),
        evidence=item.get("evidence"),
        dependencies=filter_self_dependencies(item.get("dependencies"), item_id),
        roi=normalize_roi(item.get("roi")),
        consensus_score=item.get("consensus_score", item.get("consensus")),
        pr_bucket_suggestion=_str_or_none(item.get("pr_bucket_suggestion") or item.get("pr_bucket")),
        status=str(item.get("status") or "open"),
        sources=[SourceRef(type="canon", id=item_id, file=source_file)],
    )


def normalize_backlog(item: dict[str, Any], taxonomy: Taxonomy) -> Finding:
    """Normalize an item parsed from either Markdown backlog dialect."""
    item_id = _str_or_none(item.get("id")) or ""
    deps_cell = item.get("deps") or ""
    dependencies = [d.strip() for d in str(deps_cell).split(",")]
    dependencies = [d for d in dependencies if d not in _EMPTY_DEPENDENCY_MARKERS]

    return Finding(
        original_id=item_id,
        title=str(item.get("title") or ""),
        category=resolve_category(taxonomy, item_id, item.get("category")),
        severity=normalize_severity(item.get("severity")),
        effort=normalize_effort(item.get("effort")),
        dependencies=filter_self_dependencies(dependencies, item_id),
        pr_bucket_suggestion=_str_or_none(item.get("pr")),
        sources=[SourceRef(type=str(item.get("source") or "backlog"), id=item_id)],
    )
