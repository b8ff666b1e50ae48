"""
Integration tests for the CLI.

Tests the commands end to end against a temp database and lock config.
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from gatekeep.cli import EXIT_BLOCKED, app

runner = CliRunner()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings_path(temp_dir: Path, lock_config_path: Path) -> Path:
    """Settings file pointing at temp storage, with quiet logging."""
    path = temp_dir / "gatekeep.yaml"
    path.write_text(
        f"db_path: {temp_dir / 'cli.db'}\n"
        f"lock_config_path: {lock_config_path}\n"
        "log_level: ERROR\n"
    )
    return path


@pytest.fixture
def rules_path(temp_dir: Path, sample_rules_yaml: str) -> Path:
    """Rules file with R1, R2 and W1."""
    path = temp_dir / "rules.yaml"
    path.write_text(sample_rules_yaml)
    return path


@pytest.fixture
def cli(settings_path: Path, rules_path: Path):
    """Invoke the CLI with the temp settings; rules are imported first."""

    def invoke(*args: str):
        return runner.invoke(app, ["-c", str(settings_path), *args])

    result = invoke("rules", "import", str(rules_path))
    assert result.exit_code == 0, result.stdout
    return invoke


# =============================================================================
# Tests
# =============================================================================


class TestGlobalOptions:
    """Tests for app-level options."""

    def test_version(self) -> None:
        """--version prints the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "gatekeep" in result.stdout


class TestCheckCommand:
    """Tests for the check command."""

    def test_conflict_blocked_json(self, cli) -> None:
        """The R1/R2 conflict blocks with R1 and exit code 2."""
        request = json.dumps({"operation_name": "delete_file", "arguments": {"file_path": "/etc/passwd"}})
        result = cli("check", request, "--json")

        assert result.exit_code == EXIT_BLOCKED
        decision = json.loads(result.stdout)
        assert decision["blocked"] is True
        assert decision["matched_rule_code"] == "R1"
        assert decision["phase"] == "pre"

    def test_allowed(self, cli) -> None:
        """An unmatched operation is allowed."""
        result = cli("check", '{"operation_name": "write", "arguments": {"file_path": "notes.txt"}}')
        assert result.exit_code == 0
        assert "allowed" in result.stdout

    def test_lock_blocked(self, cli) -> None:
        """Writes to locked modules are blocked with the unlock hint."""
        result = cli("check", '{"operation_name": "write", "arguments": {"file_path": "src/core/engine.py"}}')
        assert result.exit_code == EXIT_BLOCKED
        assert "lock:core" in result.stdout

    def test_request_from_file(self, cli, temp_dir: Path) -> None:
        """@file reads the request from disk."""
        path = temp_dir / "request.json"
        path.write_text('{"operation_name": "delete_file", "arguments": {"file_path": "a.txt"}}')
        assert cli("check", f"@{path}").exit_code == EXIT_BLOCKED

    def test_invalid_request(self, cli) -> None:
        """Malformed JSON is an error."""
        result = cli("check", "{not json", "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"] is True

    def test_warning_shown(self, cli) -> None:
        """Warn rules show up as warnings."""
        result = cli("check", '{"operation_name": "run_terminal_cmd", "arguments": {"command": "ls"}}', "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["warnings"] == ["W1"]


class TestRulesCommands:
    """Tests for rules subcommands."""

    def test_list_json(self, cli) -> None:
        """Imported rules are listed highest priority first."""
        result = cli("rules", "list", "--json")
        assert result.exit_code == 0
        assert [r["rule_code"] for r in json.loads(result.stdout)] == ["R1", "R2", "W1"]

    def test_disable_then_allowed(self, cli) -> None:
        """A disabled rule no longer blocks."""
        assert cli("rules", "disable", "R1").exit_code == 0
        result = cli("check", '{"operation_name": "delete_file", "arguments": {"file_path": "a.txt"}}')
        assert result.exit_code == 0

        assert cli("rules", "enable", "R1").exit_code == 0
        result = cli("check", '{"operation_name": "delete_file", "arguments": {"file_path": "a.txt"}}')
        assert result.exit_code == EXIT_BLOCKED

    def test_unknown_rule(self, cli) -> None:
        """Toggling an unknown rule fails."""
        result = cli("rules", "disable", "NOPE")
        assert result.exit_code == 1
        assert "Rule not found" in result.stdout


class TestAuditCommands:
    """Tests for verify, audit and stats."""

    def test_audit_after_check(self, cli) -> None:
        """A check leaves audit records and a conflict log."""
        cli("check", '{"operation_name": "delete_file", "arguments": {"file_path": "/etc/passwd"}}')

        records = json.loads(cli("audit", "--json").stdout)
        assert {r["rule_code"] for r in records} == {"R1", "R2", "W1"}

        conflicts = json.loads(cli("audit", "--conflicts", "--json").stdout)
        assert conflicts[0]["resolved_rule"] == "R1"

        only_r2 = json.loads(cli("audit", "--rule", "R2", "--json").stdout)
        assert len(only_r2) == 1

    def test_verify_streak(self, cli) -> None:
        """verify reports the consecutive success count."""
        cli("verify", "checkout")
        cli("verify", "checkout")
        result = cli("verify", "checkout", "--note", "staging")
        assert result.exit_code == 0
        assert "Consecutive successes: 3" in result.stdout

        result = cli("verify", "checkout", "--failed")
        assert "Consecutive successes: 0" in result.stdout

    def test_stats(self, cli) -> None:
        """stats reports rule and lock counts."""
        result = cli("stats", "--json")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["rules"] == {"total": 3, "enabled": 3}
        assert data["locks"]["modules"] == 2
        assert data["locks"]["locked"] == 1


class TestLocksCommands:
    """Tests for locks subcommands."""

    def test_status_json(self, cli) -> None:
        """status lists modules and protected paths."""
        data = json.loads(cli("locks", "status", "--json").stdout)
        assert {m["module_id"] for m in data["modules"]} == {"core", "docs"}
        assert data["protected_paths"] == ["src/core/engine.py"]

    def test_unlock_and_lock(self, cli) -> None:
        """unlock and lock persist the new state."""
        assert cli("locks", "unlock", "core", "-r", "refactor").exit_code == 0
        data = json.loads(cli("locks", "status", "--json").stdout)
        assert all(not m["locked"] for m in data["modules"])

        result = cli("locks", "lock", "docs")
        assert result.exit_code == 0
        assert "Documentation is locked" in result.stdout

    def test_lock_all(self, cli) -> None:
        """--all locks every module."""
        result = cli("locks", "lock", "--all")
        assert result.exit_code == 0
        assert "Locked 1 module(s)" in result.stdout

    def test_unknown_module(self, cli) -> None:
        """Locking an unknown module fails."""
        result = cli("locks", "lock", "nope")
        assert result.exit_code == 1
        assert "Module not found" in result.stdout

    def test_register(self, cli) -> None:
        """register adds a module and rejects duplicates."""
        result = cli("locks", "register", "api", "--name", "API", "--path", "src/api/", "--locked")
        assert result.exit_code == 0
        assert "Registered API (locked)" in result.stdout

        assert cli("locks", "register", "api").exit_code == 1

    def test_reload_reports_failure(self, cli, lock_config_path: Path) -> None:
        """A corrupt document fails the reload with exit code 1."""
        assert cli("locks", "reload").exit_code == 0

        lock_config_path.write_text("modules: [broken\n")
        result = cli("locks", "reload")
        assert result.exit_code == 1
