"""Tests for the command-line interface."""

import json

import pytest

from costbreaker.cli import EXIT_DENIED, main


@pytest.fixture
def db_args(tmp_path, monkeypatch):
    for var in (
        "COSTBREAKER_REDIS_URL",
        "COSTBREAKER_LAYERS_JSON",
        "COST_LIMIT_DAILY",
        "COST_LIMIT_HOURLY",
        "COST_LIMIT_USER_DAILY",
        "COST_LIMIT_USER_HOURLY",
    ):
        monkeypatch.delenv(var, raising=False)
    return ["--db-path", str(tmp_path / "ledger.db")]


class TestCli:
    """Test CLI commands against a SQLite ledger."""

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_check_allows_fresh_user(self, db_args, capsys):
        assert main(db_args + ["check", "u1"]) == 0
        assert "ALLOWED" in capsys.readouterr().out

    def test_record_then_check_blocks(self, db_args, capsys):
        assert main(db_args + ["record", "u1", "0.60"]) == 0
        assert main(db_args + ["record", "u1", "0.60"]) == 0

        assert main(db_args + ["check", "u1"]) == EXIT_DENIED
        assert "BLOCKED at user-daily" in capsys.readouterr().out

    def test_record_rejects_negative_cost(self, db_args, capsys):
        assert main(db_args + ["record", "u1", "-1"]) == 1
        assert "non-negative" in capsys.readouterr().err

    def test_status_json(self, db_args, capsys):
        main(db_args + ["record", "alice", "0.40"])
        main(db_args + ["record", "bob", "0.20"])
        capsys.readouterr()

        assert main(db_args + ["status", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert [layer["name"] for layer in data["layers"]] == ["global-daily", "global-hourly"]
        assert data["layers"][0]["current"] == "0.60000"
        assert [user["user_id"] for user in data["top_users"]] == ["alice", "bob"]

    def test_status_text(self, db_args, capsys):
        main(db_args + ["record", "alice", "0.40"])

        assert main(db_args + ["status"]) == 0

        out = capsys.readouterr().out
        assert "global-daily" in out
        assert "TOP USERS" in out

    def test_invalid_config_reported(self, db_args, monkeypatch, capsys):
        monkeypatch.setenv("COST_LIMIT_DAILY", "-5")

        assert main(db_args + ["check", "u1"]) == 1
        assert "Error" in capsys.readouterr().err
