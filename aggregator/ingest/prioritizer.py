from aggregator.config import Taxonomy
from aggregator.ingest.normalizer import normalize_roi
from aggregator.models import Effort, Finding, MasterIssue, Severity

_SEVERITY_WEIGHTS: dict[Severity, int] = {
    Severity.S0: 4,
    Severity.S1: 3,
    Severity.S2: 2,
    Severity.S3: 1,
}

_EFFORT_WEIGHTS: dict[Effort, int] = {
    Effort.E0: 4,
    Effort.E1: 3,
    Effort.E2: 2,
    Effort.E3: 1,
}

_ROI_WEIGHTS: dict[str, int] = {
    "CRITICAL": 4,
    "HIGH": 3,
    "MEDIUM": 2,
    "LOW": 1,
}

_DEFAULT_WEIGHT = 1
_DEFAULT_ROI_WEIGHT = _ROI_WEIGHTS["MEDIUM"]
_PERSISTENCE_BOOST = 10
_MAX_SCORE = 100

# Placeholder value for "no suggestion" in backlog tables
_NO_BUCKET_SUGGESTION = "-"


def calculate_priority_score(finding: Finding) -> int:
    """Deterministic 0-100 priority.

    score = severity*25 + effort*15 + roi*10 + persistence
    Unknown severity/effort weigh 1, unset ROI weighs as MEDIUM, and a
    finding reported by more than one source gets +10.
    """
    severity_weight = _SEVERITY_WEIGHTS.get(finding.severity, _DEFAULT_WEIGHT)
    effort_weight = _EFFORT_WEIGHTS.get(finding.effort, _DEFAULT_WEIGHT)
    roi_weight = _ROI_WEIGHTS.get(normalize_roi(finding.roi) or "", _DEFAULT_ROI_WEIGHT)
    persistence = _PERSISTENCE_BOOST if len(finding.sources) > 1 else 0

    score = severity_weight * 25 + effort_weight * 15 + roi_weight * 10 + persistence
    return max(0, min(_MAX_SCORE, score))


def determine_pr_bucket(finding: Finding, taxonomy: Taxonomy) -> str:
    """An explicit per-source suggestion wins; otherwise map by category."""
    suggestion = (finding.pr_bucket_suggestion or "").strip()
    if suggestion and suggestion != _NO_BUCKET_SUGGESTION:
        return suggestion
    return taxonomy.pr_bucket_for(finding.category)


def prioritize_findings(findings: list[Finding], taxonomy: Taxonomy) -> list[MasterIssue]:
    """Score findings and return MasterIssues sorted by priority (highest first).

    Ties are broken by original_id so the order never depends on input order.
    master_id (MASTER-0001, ...) follows the final sorted order. Inputs are
    not modified.
    """
    scored = sorted(
        ((calculate_priority_score(f), f) for f in findings),
        key=lambda pair: (-pair[0], pair[1].original_id),
    )

    issues: list[MasterIssue] = []
    for rank, (score, finding) in enumerate(scored, start=1):
        data = finding.model_dump()
        data["files"] = finding.paths
        issues.append(
            MasterIssue(
                **data,
                master_id=f"MASTER-{rank:04d}",
                priority_score=score,
                pr_bucket=determine_pr_bucket(finding, taxonomy),
            )
        )
    return issues
