import json
import logging

import pytest
from click.testing import CliRunner

from aggregator import main as main_module
from aggregator import pipeline as pipeline_module
from aggregator.config import AggregatorConfig
from aggregator.main import cli
from aggregator.pipeline import (
    DEDUP_LOG,
    MASTER_ISSUE_LIST,
    NET_NEW_FINDINGS,
    RAW_FINDINGS,
    UNIQUE_FINDINGS,
    run_aggregation,
)
from scripts.validate_master_list import validate


def _write_jsonl(path, records):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n", encoding="utf-8")


def _read_jsonl(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def repo(tmp_path):
    """A small repository with one file for every source kind."""
    _write_jsonl(
        tmp_path / "docs/audits/single-session/security/audit-2026-01-17.jsonl",
        [
            {
                "id": "SEC-010",
                "category": "Framework",
                "title": "Missing CSRF token validation",
                "severity": "S1",
                "effort": "E1",
                "file": "app/api/route.ts",
            },
            {
                "id": "SEC-011",
                "category": "Framework",
                "title": "Missing CSRF token validation check",
                "severity": "S2",
                "file": "app/api/route.ts",
            },
        ],
    )
    _write_jsonl(
        tmp_path / "docs/reviews/2026-Q1/canonical/CANON-CODE.jsonl",
        [
            {
                "canonical_id": "CANON-0001",
                "category": "Hygiene",
                "title": "Duplicate date helpers",
                "severity": "S2",
                "effort": "E0",
                "files": ["lib/date.ts"],
            }
        ],
    )
    backlog = tmp_path / "docs/reviews/2026-Q1/canonical/tier2-output/REFACTOR_BACKLOG.md"
    backlog.parent.mkdir(parents=True, exist_ok=True)
    backlog.write_text(
        "## Category: Hygiene\n### S2 Medium\n"
        "| **DEDUP-0001** | Consolidate formatting utilities | E1 | CANON-0001 | code-quality |\n"
        "| **DEDUP-0002** | Broken row | huge | None | - |\n",
        encoding="utf-8",
    )
    (tmp_path / "docs/AUDIT_FINDINGS_BACKLOG.md").write_text(
        "### [Security] Some vague finding\n"
        "**CANON-ID**: CANON-0123\n**Severity**: S2\n**Effort**: E1\n",
        encoding="utf-8",
    )
    (tmp_path / "ROADMAP.md").write_text(
        "### Track S - Security\n- [ ] **S4:** Audit `app/api/route.ts:10` handlers\n",
        encoding="utf-8",
    )
    return tmp_path


class TestRunAggregation:
    def test_end_to_end(self, repo):
        report = run_aggregation(AggregatorConfig(repo_root=repo))
        out = repo / "docs/aggregation"

        assert report.sources.single_session == 2
        assert report.sources.canon == 1
        assert report.sources.backlog == 1
        assert report.sources.audit_backlog == 1
        assert report.sources.skipped_rows == 1
        assert report.raw_count == 5
        # CSRF pair merges on file + title; DEDUP-0001 bridges to CANON-0001
        assert report.unique_count == 3
        assert report.merges == 2
        assert report.converged

        assert len(_read_jsonl(out / RAW_FINDINGS)) == 5
        assert len(_read_jsonl(out / UNIQUE_FINDINGS)) == 3
        log = _read_jsonl(out / DEDUP_LOG)
        assert {entry["action"] for entry in log} == {"merge"}

        master = _read_jsonl(out / MASTER_ISSUE_LIST)
        assert [m["master_id"] for m in master] == ["MASTER-0001", "MASTER-0002", "MASTER-0003"]
        scores = [m["priority_score"] for m in master]
        assert scores == sorted(scores, reverse=True)

        csrf = next(m for m in master if m["original_id"] == "SEC-010")
        assert csrf["category"] == "security"
        assert csrf["severity"] == "S1"
        assert csrf["merged_from"] == ["SEC-010", "SEC-011"]
        assert len(csrf["sources"]) == 2
        assert csrf["pr_bucket"] == "security-hardening"
        assert csrf["roadmap_status"] == "already_tracked"
        assert csrf["matched_roadmap_item"] == "S4"

        assert validate(str(out / MASTER_ISSUE_LIST)) == []

    def test_net_new_output(self, repo):
        run_aggregation(AggregatorConfig(repo_root=repo))
        net_new = _read_jsonl(repo / "docs/aggregation" / NET_NEW_FINDINGS)
        assert "SEC-010" not in {f["original_id"] for f in net_new}
        assert all(f["roadmap_status"] == "net_new" for f in net_new)

    def test_cross_reference_disabled(self, repo):
        report = run_aggregation(AggregatorConfig(repo_root=repo, cross_reference=False))
        assert report.net_new is None
        assert NET_NEW_FINDINGS not in report.outputs
        master = _read_jsonl(repo / "docs/aggregation" / MASTER_ISSUE_LIST)
        assert all("roadmap_status" not in m for m in master)

    def test_max_passes_reported(self, repo):
        report = run_aggregation(AggregatorConfig(repo_root=repo, max_passes=1))
        assert not report.converged
        assert report.passes == 1

    def test_empty_repository(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            report = run_aggregation(AggregatorConfig(repo_root=tmp_path))
        assert report.raw_count == 0
        assert report.unique_count == 0
        assert "File not found" in caplog.text
        master = tmp_path / "docs/aggregation" / MASTER_ISSUE_LIST
        assert master.exists()
        assert master.read_text(encoding="utf-8") == ""

    def test_outputs_overwritten(self, repo):
        config = AggregatorConfig(repo_root=repo)
        run_aggregation(config)
        first = (repo / "docs/aggregation" / MASTER_ISSUE_LIST).read_text(encoding="utf-8")
        run_aggregation(config)
        second = (repo / "docs/aggregation" / MASTER_ISSUE_LIST).read_text(encoding="utf-8")
        assert first == second


class TestCli:
    def test_success(self, repo):
        runner = CliRunner()
        result = runner.invoke(cli, ["--root", str(repo)])
        assert result.exit_code == 0
        assert "Aggregation Summary" in result.output
        assert "MASTER-0001" in result.output

    def test_missing_sources_still_succeed(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(cli, ["--root", str(tmp_path)])
        assert result.exit_code == 0
        assert "Raw total:               0" in result.output

    def test_failure_exits_one(self, repo, monkeypatch, caplog):
        def _boom(config, taxonomy=None):
            raise RuntimeError("x" * 1000)

        monkeypatch.setattr(main_module, "run_aggregation", _boom)
        runner = CliRunner()
        with caplog.at_level(logging.ERROR):
            result = runner.invoke(cli, ["--root", str(repo)])
        assert result.exit_code == 1
        assert "Aggregation failed [RuntimeError]" in caplog.text
        assert "x" * 200 in caplog.text
        assert "x" * 201 not in caplog.text


class TestValidateMasterList:
    def test_missing_file(self, tmp_path):
        assert validate(str(tmp_path / "nope.jsonl")) == [f"File not found: {tmp_path / 'nope.jsonl'}"]

    def test_detects_problems(self, tmp_path):
        path = tmp_path / MASTER_ISSUE_LIST
        _write_jsonl(
            path,
            [
                {
                    "master_id": "MASTER-0001", "original_id": "A", "priority_score": 50,
                    "pr_bucket": "x", "category": "code", "title": "a",
                },
                {
                    "master_id": "MASTER-0003", "original_id": "B", "priority_score": 90,
                    "pr_bucket": "x", "category": "code", "title": "b",
                    "dependencies": ["B"], "merged_from": ["B", "B"],
                },
            ],
        )
        errors = validate(str(path))
        assert any("expected MASTER-0002" in e for e in errors)
        assert any("out of order" in e for e in errors)
        assert any("depends on itself" in e for e in errors)
        assert any("duplicate ids in merged_from" in e for e in errors)


class TestMalformedRecords:
    def test_wrong_field_types_do_not_abort_run(self, tmp_path):
        _write_jsonl(
            tmp_path / "docs/audits/single-session/code/audit-2026-01-17.jsonl",
            [
                {"id": "CODE-001", "title": "Fine record"},
                {"id": "CODE-002", "title": "Scalar deps", "dependencies": 7},
                {"id": "X-002", "title": "Numeric category", "category": 5},
                {"id": "CODE-003", "title": "Scalar evidence", "evidence": 3},
            ],
        )
        runner = CliRunner()
        result = runner.invoke(cli, ["--root", str(tmp_path)])
        assert result.exit_code == 0
        master = _read_jsonl(tmp_path / "docs/aggregation" / MASTER_ISSUE_LIST)
        seen = {m["original_id"] for m in master}
        seen.update(i for m in master for i in m.get("merged_from", []))
        assert seen >= {"CODE-001", "CODE-002", "X-002", "CODE-003"}

    def test_unnormalizable_item_skipped_with_warning(self, tmp_path, monkeypatch, caplog):
        _write_jsonl(
            tmp_path / "docs/audits/single-session/code/audit-2026-01-17.jsonl",
            [{"id": "CODE-001", "title": "ok"}, {"id": "CODE-BAD", "title": "boom"}],
        )
        real = pipeline_module.normalize_single_session

        def _picky(item, *args):
            if item["id"] == "CODE-BAD":
                raise TypeError("unexpected shape")
            return real(item, *args)

        monkeypatch.setattr(pipeline_module, "normalize_single_session", _picky)
        with caplog.at_level(logging.WARNING):
            report = run_aggregation(AggregatorConfig(repo_root=tmp_path))
        assert report.sources.single_session == 1
        assert "Skipping item CODE-BAD from code: TypeError" in caplog.text
