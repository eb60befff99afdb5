"""Tests for the hypnos command-line interface."""

import json
import os
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from hypnos.cli import main


@pytest.fixture
def cli(temp_dir, monkeypatch):
    """Invoke the CLI from an empty directory with file-only logging."""
    monkeypatch.chdir(temp_dir)
    runner = CliRunner()
    db = str(temp_dir / "cli.db")
    env = {
        "HYPNOS_LOGGING_QUIET": "true",
        "HYPNOS_LOGGING_OUTPUT_FILE": str(temp_dir / "hypnos.log"),
        "HYPNOS_EMBEDDING_DIMENSION": "64",
    }

    def _invoke(*args):
        with patch.dict(os.environ, env):
            return runner.invoke(main, ["--db", db, *args])

    return _invoke


class TestCli:
    """Test CLI commands against a temporary database."""

    @pytest.mark.integration
    def test_help(self):
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "recall" in result.output
        assert "add-rule" in result.output

    @pytest.mark.integration
    def test_add_rule_then_recall(self, cli):
        added = cli("add-rule", "Cite sources", "--tag", "school")
        assert added.exit_code == 0, added.output
        assert added.output.strip() == "Stored rule 1"

        recalled = cli("recall", "Cite sources", "--limit", "1")
        assert recalled.exit_code == 0, recalled.output
        assert "[1] (procedural" in recalled.output
        assert "similarity=" in recalled.output

    @pytest.mark.integration
    def test_blank_rule_rejected(self, cli):
        result = cli("add-rule", "   ")
        assert result.exit_code == 2
        assert "must not be empty" in result.output

    @pytest.mark.integration
    def test_recall_empty_store(self, cli):
        result = cli("recall", "anything")
        assert result.exit_code == 0
        assert "No memories found." in result.output

    @pytest.mark.integration
    def test_stats(self, cli):
        cli("add-rule", "Cite sources")
        result = cli("stats")

        assert result.exit_code == 0, result.output
        stats = json.loads(result.output)
        assert stats["procedural"] == 1
        assert stats["short_term"] == 0

    @pytest.mark.integration
    def test_consolidate_prints_report(self, cli):
        result = cli("consolidate", "--budget", "1")

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["reason"] in {"outside sleep window", "no new episodic memories"}
