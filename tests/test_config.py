import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from aggregator.config import AggregatorConfig, Taxonomy
from aggregator.models import Category


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep a developer's .env / AGGREGATOR_* variables out of these tests."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("AGGREGATOR_"):
            monkeypatch.delenv(key)


class TestAggregatorConfig:
    def test_defaults(self):
        config = AggregatorConfig()
        assert config.max_passes == 10
        assert config.max_category_bucket == 250
        assert config.file_title_threshold == 80
        assert config.category_title_threshold == 90
        assert config.max_title_length == 500
        assert len(config.canon_files) == 6
        assert "engineering-productivity" in config.single_session_categories

    def test_csv_env_lists(self, monkeypatch):
        monkeypatch.setenv("AGGREGATOR_CANON_FILES", "CANON-A.jsonl, CANON-B.jsonl")
        monkeypatch.setenv("AGGREGATOR_SINGLE_SESSION_CATEGORIES", "code,security")
        config = AggregatorConfig()
        assert config.canon_files == ["CANON-A.jsonl", "CANON-B.jsonl"]
        assert config.single_session_categories == ["code", "security"]

    def test_scalar_env_override(self, monkeypatch):
        monkeypatch.setenv("AGGREGATOR_MAX_PASSES", "3")
        monkeypatch.setenv("AGGREGATOR_CROSS_REFERENCE", "false")
        config = AggregatorConfig()
        assert config.max_passes == 3
        assert config.cross_reference is False

    def test_dotenv_local(self, tmp_path):
        (tmp_path / ".env.local").write_text("AGGREGATOR_OUTPUT_DIR=out\n", encoding="utf-8")
        assert AggregatorConfig().output_dir == "out"

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValidationError):
            AggregatorConfig(file_title_threshold=101)

    def test_resolve(self):
        config = AggregatorConfig(repo_root=Path("/repo"))
        assert config.resolve("docs/x.md") == Path("/repo/docs/x.md")


class TestTaxonomy:
    def test_label_lookup(self):
        taxonomy = Taxonomy()
        assert taxonomy.category_for_label("Bundle") == Category.PERFORMANCE
        assert taxonomy.category_for_label("SECURITY") == Category.SECURITY
        assert taxonomy.category_for_label("nope") is None
        assert taxonomy.category_for_label(None) is None

    def test_id_prefix(self):
        taxonomy = Taxonomy()
        assert taxonomy.category_for_id("PROC-001") == Category.PROCESS
        assert taxonomy.category_for_id("CANON-0001") is None

    def test_pr_bucket_default(self):
        taxonomy = Taxonomy(pr_bucket_map={})
        assert taxonomy.pr_bucket_for(Category.SECURITY) == "code-quality"

    def test_synonyms(self):
        taxonomy = Taxonomy()
        assert "godobject" in taxonomy.expand_synonyms("monolithic")
        assert taxonomy.expand_synonyms("Request-ID") >= {"requestid", "tracing"}
        assert taxonomy.expand_synonyms("banana") == frozenset({"banana"})

    def test_custom_tables(self):
        taxonomy = Taxonomy(category_map={"Misc": Category.OFFLINE})
        assert taxonomy.category_for_label("misc") == Category.OFFLINE

    def test_frozen(self):
        with pytest.raises(ValidationError):
            Taxonomy().category_map = {}
