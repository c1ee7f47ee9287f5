import logging
from datetime import datetime, timezone

from aggregator.dedup.engine import DedupEngine, merge_findings, severity_rank
from aggregator.models import (
    Category,
    Converged,
    Finding,
    MaxPassesReached,
    Severity,
    SourceRef,
)

_FIXED_TIME = datetime(2026, 1, 17, 12, 0, tzinfo=timezone.utc)


def _make_finding(fid: str, **overrides) -> Finding:
    """Helper to create a minimal Finding for testing."""
    defaults = {
        "original_id": fid,
        "title": f"Test finding {fid}",
        "category": Category.CODE,
        "severity": Severity.S2,
        "sources": [SourceRef(type="single-session", id=fid)],
    }
    defaults.update(overrides)
    if "file" in defaults and "files" not in defaults:
        defaults["files"] = [defaults["file"]]
    return Finding(**defaults)


def _engine(**kwargs) -> DedupEngine:
    return DedupEngine(clock=lambda: _FIXED_TIME, **kwargs)


class TestMergeFindings:
    def test_more_severe_record_wins(self):
        a = _make_finding("A", severity=Severity.S2, title="less severe")
        b = _make_finding("B", severity=Severity.S0, title="more severe")
        merged = merge_findings(a, b)
        assert merged.original_id == "B"
        assert merged.title == "more severe"
        assert merged.severity == Severity.S0
        assert merged.merged_from == ["B", "A"]

    def test_tie_keeps_first(self):
        merged = merge_findings(_make_finding("A"), _make_finding("B"))
        assert merged.original_id == "A"

    def test_unknown_severity_is_least_severe(self):
        assert severity_rank(None) > severity_rank(Severity.S3)
        merged = merge_findings(_make_finding("A", severity=None), _make_finding("B", severity=Severity.S3))
        assert merged.original_id == "B"

    def test_unions_and_ancestry(self):
        a = _make_finding("A", file="x.ts", evidence=["e1"], merged_from=["A", "C"])
        b = _make_finding("B", file="y.ts", evidence=["e1", "e2"], dependencies=["C", "D"])
        merged = merge_findings(a, b)
        assert merged.files == ["x.ts", "y.ts"]
        assert merged.evidence == ["e1", "e2"]
        assert merged.merged_from == ["A", "C", "B"]
        # C is already part of the merged record
        assert merged.dependencies == ["D"]
        assert len(merged.sources) == 2

    def test_dependencies_from_absorbed_record_kept(self):
        a = _make_finding("A", file="x.ts", dependencies=["E"])
        b = _make_finding("B", file="y.ts", dependencies=["D", "E"])
        assert merge_findings(a, b).dependencies == ["E", "D"]

    def test_inputs_not_mutated(self):
        a = _make_finding("A", file="x.ts")
        b = _make_finding("B", file="y.ts")
        a_before = a.model_dump()
        b_before = b.model_dump()
        merge_findings(a, b)
        assert a.model_dump() == a_before
        assert b.model_dump() == b_before


class TestMergeReasons:
    def test_explicit_dedup_to_canon_link(self):
        canon = _make_finding("CANON-0001", title="alpha", category=Category.SECURITY)
        dedup = _make_finding("DEDUP-0001", title="omega", dependencies=["CANON-0001"])
        assert _engine().merge_reasons(dedup, canon) == ["explicit DEDUP->CANON dependency"]

    def test_file_threshold(self):
        a = _make_finding("A", file="app.ts", category=Category.SECURITY, title="Missing CSRF token validation")
        b = _make_finding("B", file="app.ts", category=Category.CODE, title="Missing CSRF token validation check")
        assert _engine().merge_reasons(a, b) == ["same file + similar title (83%)"]

    def test_category_requires_higher_similarity(self):
        a = _make_finding("A", title="Missing CSRF token validation")
        b = _make_finding("B", title="Missing CSRF token validation check")
        assert _engine().merge_reasons(a, b) == []

    def test_unrelated(self):
        a = _make_finding("A", file="a.ts", category=Category.SECURITY, title="same title")
        b = _make_finding("B", file="b.ts", category=Category.CODE, title="same title")
        assert _engine().merge_reasons(a, b) == []


class TestDedupEngine:
    def test_scenario_csrf_merge(self):
        a = _make_finding(
            "SEC-010",
            title="Missing CSRF token validation",
            category=Category.SECURITY,
            severity=Severity.S1,
            file="app/api/route.ts",
        )
        b = _make_finding(
            "SEC-011",
            title="Missing CSRF token validation check",
            category=Category.SECURITY,
            severity=Severity.S2,
            file="app/api/route.ts",
        )
        result = _engine().run([a, b])
        assert isinstance(result, Converged)
        assert len(result.findings) == 1
        merged = result.findings[0]
        assert merged.severity == Severity.S1
        assert len(merged.sources) == 2
        assert merged.merged_from == ["SEC-010", "SEC-011"]
        assert result.merge_count == 1
        decision = result.log[0]
        assert decision.finding1_id == "SEC-010"
        assert decision.finding2_id == "SEC-011"
        assert decision.timestamp == _FIXED_TIME.isoformat()

    def test_no_duplicates_converges_in_one_pass(self):
        findings = [
            _make_finding("A", title="render loop in list"),
            _make_finding("B", title="missing alt text"),
        ]
        result = _engine().run(findings)
        assert isinstance(result, Converged)
        assert result.passes == 1
        assert result.log == []
        assert result.findings == findings

    def test_empty_input(self):
        result = _engine().run([])
        assert isinstance(result, Converged)
        assert result.findings == []

    def test_idempotent(self):
        findings = [
            _make_finding("A", title="Duplicate date helpers"),
            _make_finding("B", title="Duplicate date helpers"),
            _make_finding("C", title="Unbounded cache growth"),
        ]
        engine = _engine()
        first = engine.run(findings)
        second = engine.run(first.findings)
        assert second.log == []
        assert second.findings == first.findings

    def test_merged_files_chain_across_passes(self):
        """A merge that widens files can enable a merge in a later pass."""
        a = _make_finding("A", file="a.ts", category=Category.SECURITY, title="Token leaks into logs")
        b = _make_finding(
            "B", files=["a.ts", "b.ts"], category=Category.PERFORMANCE, title="Token leaks into logs"
        )
        c = _make_finding("C", file="b.ts", category=Category.DOCUMENTATION, title="Token leaks into log")
        result = _engine().run([a, b, c])
        assert len(result.findings) == 1
        assert sorted(result.findings[0].merged_from) == ["A", "B", "C"]

    def test_dependency_bridge_across_buckets(self):
        """DEDUP records merge with their referenced record even with no shared bucket."""
        canon = _make_finding("CANON-0001", file="x.ts", category=Category.SECURITY, title="alpha")
        dedup = _make_finding(
            "DEDUP-0001", category=Category.DOCUMENTATION, title="omega", dependencies=["CANON-0001"]
        )
        result = _engine().run([canon, dedup])
        assert len(result.findings) == 1
        assert result.log[0].reasons == ["explicit DEDUP->CANON dependency"]

    def test_dependency_resolves_through_ancestry(self):
        """A reference to an absorbed id reaches the record that absorbed it."""
        merged = _make_finding(
            "CANON-0002",
            category=Category.SECURITY,
            title="alpha",
            merged_from=["CANON-0002", "CANON-0001"],
        )
        dedup = _make_finding(
            "DEDUP-0009", category=Category.PROCESS, title="omega", dependencies=["CANON-0001"]
        )
        result = _engine().run([merged, dedup])
        assert len(result.findings) == 1
        assert "DEDUP-0009" in result.findings[0].merged_from

    def test_absorbed_accumulator_keeps_content(self):
        """When a merged record is later absorbed, its earlier merges are not lost."""
        a = _make_finding("A", severity=Severity.S3, title="Duplicate date helpers", file="d.ts")
        b = _make_finding("B", severity=Severity.S3, title="Duplicate date helpers", file="d.ts")
        c = _make_finding("C", severity=Severity.S0, title="Duplicate date helpers")
        result = _engine().run([a, b, c])
        assert len(result.findings) == 1
        assert result.findings[0].original_id == "C"
        assert sorted(result.findings[0].merged_from) == ["A", "B", "C"]
        assert len(result.findings[0].sources) == 3

    def test_max_passes_reached(self):
        findings = [
            _make_finding("A", title="Duplicate date helpers"),
            _make_finding("B", title="Duplicate date helpers"),
        ]
        result = _engine(max_passes=1).run(findings)
        assert isinstance(result, MaxPassesReached)
        assert result.kind == "max_passes_reached"
        assert result.passes == 1

    def test_converges_on_last_allowed_pass(self):
        findings = [
            _make_finding("A", title="Duplicate date helpers"),
            _make_finding("B", title="Duplicate date helpers"),
        ]
        result = _engine(max_passes=2).run(findings)
        assert isinstance(result, Converged)
        assert result.passes == 2

    def test_oversized_category_bucket_skipped(self, caplog):
        """300 findings in one category: category pairs skipped, file pairs still merge."""
        findings = [
            _make_finding(f"CODE-{i:03d}", title=f"issue {i} " + "xyzw"[i % 4] * (i % 7), file=f"src/f{i}.ts")
            for i in range(300)
        ]
        findings.append(_make_finding("CODE-900", title=findings[0].title, file="src/f0.ts"))
        with caplog.at_level(logging.WARNING):
            result = _engine().run(findings)
        assert "Skipping category bucket 'code'" in caplog.text
        assert "category:code" in result.skipped_buckets
        assert len(result.findings) == 300
        assert result.merge_count == 1
        assert result.log[0].reasons[0] == "same file + similar title (100%)"

    def test_inputs_not_mutated(self):
        a = _make_finding("A", title="Duplicate date helpers")
        b = _make_finding("B", title="Duplicate date helpers")
        findings = [a, b]
        _engine().run(findings)
        assert findings == [a, b]
        assert a.merged_from == []
