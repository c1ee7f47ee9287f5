from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    S0 = "S0"
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"


class Effort(str, Enum):
    E0 = "E0"
    E1 = "E1"
    E2 = "E2"
    E3 = "E3"


class Category(str, Enum):
    SECURITY = "security"
    PERFORMANCE = "performance"
    CODE = "code"
    REFACTORING = "refactoring"
    DOCUMENTATION = "documentation"
    PROCESS = "process"
    DX = "dx"
    OFFLINE = "offline"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SourceRef(BaseModel):
    """Provenance of a finding: which input it came from."""

    model_config = ConfigDict(frozen=True)

    type: str  # "single-session" | "canon" | "backlog" | "audit-backlog"
    id: str
    date: str | None = None
    file: str | None = None
    category: str | None = None


class Finding(BaseModel):
    """A normalized audit finding, before scoring.

    Records are never mutated; the dedup engine builds new ones with
    model_copy(update=...).
    """

    model_config = ConfigDict(frozen=True)

    original_id: str = ""
    title: str = ""
    category: Category = Category.CODE
    severity: Severity | None = None
    effort: Effort | None = None
    confidence: str | None = None
    verified: bool | None = None
    file: str | None = None
    files: list[str] = Field(default_factory=list)
    line: int | None = None
    symbols: list[str] = Field(default_factory=list)
    description: str | None = None
    recommendation: str | None = None
    evidence: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    roi: str | None = None
    cwe: str | None = None
    owasp: str | None = None
    consensus_score: float | None = None
    pr_bucket_suggestion: str | None = None
    status: str = "open"
    sources: list[SourceRef] = Field(default_factory=list)
    merged_from: list[str] = Field(default_factory=list)

    # Filled in by the cross-reference phase
    roadmap_status: str | None = None
    matched_roadmap_item: str | None = None
    matched_tech_debt_item: str | None = None

    @field_validator("evidence", "symbols", "files", mode="before")
    @classmethod
    def _coerce_str_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v else []
        if not isinstance(v, (list, tuple)):
            # A stray scalar (e.g. "evidence": 3) becomes a one-item list
            return [str(v)]
        return [str(x) for x in v if x is not None and x != ""]

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, v: Any) -> int | None:
        if v is None or v == "":
            return None
        try:
            return int(v)
        except (ValueError, TypeError):
            return None

    @field_validator("consensus_score", mode="before")
    @classmethod
    def _coerce_consensus(cls, v: Any) -> float | None:
        try:
            return float(v) if v is not None else None
        except (ValueError, TypeError):
            return None

    @property
    def paths(self) -> list[str]:
        """All file paths this finding touches (files, else the single file)."""
        if self.files:
            return self.files
        if self.file:
            return [self.file]
        return []


class MasterIssue(Finding):
    master_id: str
    priority_score: int = Field(ge=0, le=100)
    pr_bucket: str


class MergeDecision(BaseModel):
    action: Literal["merge"] = "merge"
    finding1_id: str
    finding2_id: str
    reasons: list[str]
    timestamp: str


class DedupResult(BaseModel):
    """Outcome of the multi-pass dedup loop. Use Converged / MaxPassesReached."""

    findings: list[Finding]
    log: list[MergeDecision] = Field(default_factory=list)
    passes: int
    skipped_buckets: list[str] = Field(default_factory=list)

    @property
    def merge_count(self) -> int:
        return len(self.log)


class Converged(DedupResult):
    """The last pass performed zero merges."""

    kind: Literal["converged"] = "converged"


class MaxPassesReached(DedupResult):
    """The pass cap was hit while merges were still happening."""

    kind: Literal["max_passes_reached"] = "max_passes_reached"


class Parsed(BaseModel):
    """A raw item successfully extracted from a Markdown source."""

    item: dict[str, Any]
    line: int | None = None


class Skipped(BaseModel):
    """A Markdown row or section that looked like a finding but was rejected."""

    reason: str
    line: int | None = None


ParseOutcome = Parsed | Skipped


class TrackedItem(BaseModel):
    """An item already tracked in ROADMAP.md or TECHNICAL_DEBT_MASTER.md."""

    id: str
    source: str  # "roadmap" | "tech-debt"
    title: str = ""
    status: str = "pending"
    track: str = ""
    section: str = ""
    files: list[str] = Field(default_factory=list)
    file_lines: list[tuple[str, int]] = Field(default_factory=list)


class CrossRefEntry(BaseModel):
    finding_id: str
    finding_title: str
    roadmap_status: str = "already_tracked"
    matched_roadmap_item: str | None = None
    matched_tech_debt_item: str | None = None
    match_reason: str | None = None


class CrossRefResult(BaseModel):
    findings: list[Finding]
    log: list[CrossRefEntry] = Field(default_factory=list)
    already_tracked: int = 0
    net_new: int = 0

    @property
    def total(self) -> int:
        return len(self.findings)
