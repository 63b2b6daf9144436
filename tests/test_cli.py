"""
Tests for the CLI
"""

import json

import pytest
from settlement_rail import cli


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr("sys.argv", ["settlement-rail", *argv])
    cli.main()


class TestCli:
    """report/show/facts against a SQLite file."""

    def test_report_then_show(self, monkeypatch, capsys, temp_db):
        run_cli(monkeypatch, "--database", temp_db, "report", "ds-1", "1", "1000", "500")
        assert "Primary accumulated: 100000" in capsys.readouterr().out

        run_cli(monkeypatch, "--database", temp_db, "show", "ds-1", "--json")
        out = capsys.readouterr().out
        # structlog's default logger shares stdout
        record = json.loads(out[out.index("{\n"):])

        assert record["secondary_accumulated"] == 100000
        assert record["max_reported_epoch"] == 1

    def test_rejected_report_exits_nonzero(self, monkeypatch, capsys, temp_db):
        run_cli(monkeypatch, "--database", temp_db, "report", "ds-1", "2", "1", "1")

        with pytest.raises(SystemExit) as exc_info:
            run_cli(monkeypatch, "--database", temp_db, "report", "ds-1", "2", "1", "1")

        assert exc_info.value.code == 1
        assert "Report rejected" in capsys.readouterr().out

    def test_facts_lists_and_verifies_chain(self, monkeypatch, capsys, temp_db):
        run_cli(monkeypatch, "--database", temp_db, "report", "ds-1", "1", "1", "1")
        run_cli(monkeypatch, "--database", temp_db, "report", "ds-2", "1", "1", "1")
        capsys.readouterr()

        run_cli(monkeypatch, "--database", temp_db, "facts")
        out = capsys.readouterr().out

        assert out.count("USAGE_REPORTED") == 2
        assert "Chain: 2 facts, valid" in out
