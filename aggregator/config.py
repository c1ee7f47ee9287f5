from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    SettingsConfigDict,
)

from aggregator.models import Category


class _CsvListParseMixin:
    """Mixin that parses comma-separated env strings for designated list fields."""

    _CSV_LIST_FIELDS: frozenset[str] = frozenset({"single_session_categories", "canon_files"})

    def prepare_field_value(
        self, field_name: str, field: Any, value: Any, value_is_complex: bool
    ) -> Any:
        if field_name in self._CSV_LIST_FIELDS and isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()] if value else []
        return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]


class _CsvAwareEnvSource(_CsvListParseMixin, EnvSettingsSource):
    pass


class _CsvAwareDotEnvSource(_CsvListParseMixin, DotEnvSettingsSource):
    pass


class AggregatorConfig(BaseSettings):
    repo_root: Path = Path(".")
    output_dir: str = "docs/aggregation"

    # Sources
    single_session_dir: str = "docs/audits/single-session"
    single_session_date: str = "2026-01-17"
    single_session_categories: list[str] = Field(
        default_factory=lambda: [
            "code",
            "security",
            "documentation",
            "performance",
            "process",
            "refactoring",
            "engineering-productivity",
        ]
    )
    canon_dir: str = "docs/reviews/2026-Q1/canonical"
    canon_files: list[str] = Field(
        default_factory=lambda: [
            "CANON-CODE.jsonl",
            "CANON-SECURITY.jsonl",
            "CANON-PERF.jsonl",
            "CANON-REFACTOR.jsonl",
            "CANON-DOCS.jsonl",
            "CANON-PROCESS.jsonl",
        ]
    )
    refactor_backlog: str = "docs/reviews/2026-Q1/canonical/tier2-output/REFACTOR_BACKLOG.md"
    audit_backlog: str = "docs/AUDIT_FINDINGS_BACKLOG.md"

    # Cross-reference against tracked work
    roadmap_path: str = "ROADMAP.md"
    tech_debt_path: str = "docs/TECHNICAL_DEBT_MASTER.md"
    cross_reference: bool = True
    line_proximity: int = 15

    # Deduplication limits
    max_passes: int = Field(default=10, ge=1)
    max_file_bucket: int = Field(default=250, ge=2)
    max_category_bucket: int = Field(default=250, ge=2)
    file_title_threshold: int = Field(default=80, ge=0, le=100)
    category_title_threshold: int = Field(default=90, ge=0, le=100)
    max_title_length: int = Field(default=500, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="AGGREGATOR_", env_file=".env", env_file_encoding="utf-8"
    )

    @field_validator("single_session_categories", "canon_files", mode="before")
    @classmethod
    def parse_csv_list(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [r.strip() for r in v.split(",") if r.strip()]
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        return (
            init_settings,
            _CsvAwareEnvSource(settings_cls),
            _CsvAwareDotEnvSource(
                settings_cls,
                env_file=settings_cls.model_config.get("env_file"),
                env_file_encoding=settings_cls.model_config.get("env_file_encoding"),
            ),
            _CsvAwareDotEnvSource(
                settings_cls,
                env_file=".env.local",
                env_file_encoding=settings_cls.model_config.get("env_file_encoding"),
            ),
            file_secret_settings,
        )

    def resolve(self, relative: str | Path) -> Path:
        """Resolve a configured path against repo_root."""
        return Path(self.repo_root) / relative


# Source category labels → canonical category
_CATEGORY_MAP: dict[str, Category] = {
    "code": Category.CODE,
    "security": Category.SECURITY,
    "performance": Category.PERFORMANCE,
    "process": Category.PROCESS,
    "refactoring": Category.REFACTORING,
    "documentation": Category.DOCUMENTATION,
    "engineering-productivity": Category.DX,
    "dx": Category.DX,
    "offline": Category.OFFLINE,
    "Testing": Category.CODE,
    "Hygiene": Category.CODE,
    "Framework": Category.CODE,
    "Debugging": Category.CODE,
    "Types": Category.CODE,
    "Types/Correctness": Category.CODE,
    "Headers": Category.SECURITY,
    "Firebase": Category.SECURITY,
    "Crypto": Category.SECURITY,
    "Auth": Category.SECURITY,
    "Input": Category.SECURITY,
    "Deps": Category.SECURITY,
    "Data": Category.SECURITY,
    "AgentSecurity": Category.SECURITY,
    "Security Hardening": Category.SECURITY,
    "Bundle": Category.PERFORMANCE,
    "Rendering": Category.PERFORMANCE,
    "Memory": Category.PERFORMANCE,
    "DataFetch": Category.PERFORMANCE,
    "WebVitals": Category.PERFORMANCE,
    "Memory Management": Category.PERFORMANCE,
    "Rendering Performance": Category.PERFORMANCE,
    "Bundle Size & Loading": Category.PERFORMANCE,
    "Core Web Vitals": Category.PERFORMANCE,
    "Data Fetching & Caching": Category.PERFORMANCE,
    "Observability & Monitoring": Category.PERFORMANCE,
    "CI": Category.PROCESS,
    "GitHooks": Category.PROCESS,
    "ClaudeHooks": Category.PROCESS,
    "Scripts": Category.PROCESS,
    "Triggers": Category.PROCESS,
    "ProcessDocs": Category.PROCESS,
    "CI/CD": Category.PROCESS,
    "Workflow Docs": Category.PROCESS,
    "Hooks": Category.PROCESS,
    "Pattern Checker": Category.PROCESS,
    "GodObject": Category.REFACTORING,
    "Duplication": Category.REFACTORING,
    "Architecture": Category.REFACTORING,
    "TechDebt": Category.REFACTORING,
    "REFACTOR": Category.REFACTORING,
    "Architecture/Boundaries": Category.REFACTORING,
    "Hygiene/Duplication": Category.REFACTORING,
    "Next/React Boundaries": Category.REFACTORING,
    "Links": Category.DOCUMENTATION,
    "Sync": Category.DOCUMENTATION,
    "Frontmatter": Category.DOCUMENTATION,
    "Stale": Category.DOCUMENTATION,
    "Quality": Category.DOCUMENTATION,
    "Coverage": Category.DOCUMENTATION,
    "Cross-Reference": Category.DOCUMENTATION,
    "Coverage Gaps": Category.DOCUMENTATION,
    "Tier Compliance": Category.DOCUMENTATION,
    "Staleness": Category.DOCUMENTATION,
    "GoldenPath": Category.DX,
}

# ID prefix rules win over the item's own category label
_ID_PREFIX_CATEGORIES: dict[str, Category] = {
    "SEC-": Category.SECURITY,
    "PERF-": Category.PERFORMANCE,
    "CODE-": Category.CODE,
    "PROC-": Category.PROCESS,
    "REF-": Category.REFACTORING,
    "DOC-": Category.DOCUMENTATION,
    "EFFP-": Category.DX,
}

_PR_BUCKET_MAP: dict[Category, str] = {
    Category.SECURITY: "security-hardening",
    Category.PERFORMANCE: "performance-optimization",
    Category.DX: "dx-improvements",
    Category.OFFLINE: "offline-support",
    Category.CODE: "code-quality",
    Category.REFACTORING: "code-quality",
    Category.DOCUMENTATION: "documentation-sync",
    Category.PROCESS: "process-automation",
}

_SYNONYM_GROUPS: dict[str, list[str]] = {
    # Tracing / logging
    "correlation": ["tracing", "trace", "request-id", "requestid", "tracking"],
    "tracing": ["correlation", "trace", "request-id", "tracking", "observability"],
    "logger": ["logging", "logs", "observability", "telemetry"],
    # Offline / sync
    "offline": ["sync", "persistence", "cache", "queue", "buffer"],
    "persistence": ["offline", "cache", "storage", "indexeddb"],
    "queue": ["buffer", "offline", "pending", "sync"],
    # Component size
    "monolithic": ["large", "god-object", "bloated", "oversized"],
    "god-object": ["monolithic", "large", "bloated", "oversized", "god"],
    # Security
    "authentication": ["auth", "login", "session", "credential"],
    "authorization": ["permissions", "access", "roles", "claims"],
    "validation": ["sanitization", "input", "escape", "xss"],
    # Performance
    "optimization": ["performance", "speed", "fast", "efficient"],
    "caching": ["cache", "memoization", "memo", "usememo"],
    "rendering": ["render", "rerender", "paint", "layout"],
    # Architecture
    "refactoring": ["refactor", "restructure", "reorganize", "extract"],
    "duplication": ["duplicate", "duplicated", "copy", "repeated", "dry"],
    "separation": ["extract", "split", "decouple", "modularize"],
}

DEFAULT_PR_BUCKET = "code-quality"


def _synonym_key(word: str) -> str:
    return word.lower().replace("-", "").replace("_", "")


class Taxonomy(BaseModel):
    """Immutable lookup tables shared by the normalizer, scorer and cross-referencer.

    Build one instance at the process boundary and pass it down explicitly.
    """

    model_config = ConfigDict(frozen=True)

    category_map: dict[str, Category] = Field(default_factory=lambda: dict(_CATEGORY_MAP))
    id_prefix_categories: dict[str, Category] = Field(
        default_factory=lambda: dict(_ID_PREFIX_CATEGORIES)
    )
    pr_bucket_map: dict[Category, str] = Field(default_factory=lambda: dict(_PR_BUCKET_MAP))
    synonym_groups: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in _SYNONYM_GROUPS.items()}
    )

    _folded_categories: dict[str, Category] = PrivateAttr(default_factory=dict)
    _synonyms: dict[str, frozenset[str]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._folded_categories = {k.casefold(): v for k, v in self.category_map.items()}

        synonyms: dict[str, frozenset[str]] = {}
        for key, values in self.synonym_groups.items():
            group = frozenset(_synonym_key(w) for w in [key, *values])
            for term in group:
                synonyms[term] = synonyms.get(term, frozenset()) | group
        self._synonyms = synonyms

    def category_for_label(self, label: str | None) -> Category | None:
        """Look up a source category label, exact match first, then case-insensitive."""
        if not label or not isinstance(label, str):
            return None
        found = self.category_map.get(label)
        if found is not None:
            return found
        return self._folded_categories.get(label.strip().casefold())

    def category_for_id(self, item_id: str | None) -> Category | None:
        if not item_id:
            return None
        for prefix, category in self.id_prefix_categories.items():
            if item_id.startswith(prefix):
                return category
        return None

    def pr_bucket_for(self, category: Category) -> str:
        return self.pr_bucket_map.get(category, DEFAULT_PR_BUCKET)

    def expand_synonyms(self, word: str) -> frozenset[str]:
        """Return the word's synonym group (normalized), or just the word itself."""
        key = _synonym_key(word)
        return self._synonyms.get(key, frozenset({key}))
