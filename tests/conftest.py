"""
Pytest configuration and fixtures for Gatekeep tests.

This module provides shared fixtures used across unit and integration
tests: temp dirs, a temp database, sample rules and lock configs.
"""

import tempfile
from pathlib import Path
from typing import Generator

import pytest

from gatekeep.schema import Rule
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir: Path) -> Generator[GatekeepDB, None, None]:
    """Create a database instance in a temp dir."""
    database = GatekeepDB(temp_dir / "gatekeep.db")
    yield database
    database.close()


@pytest.fixture
def session() -> SessionState:
    """Create a fresh session."""
    return SessionState()


@pytest.fixture
def r1_rule() -> Rule:
    """Name rule blocking delete_file (priority 10)."""
    return Rule(
        rule_code="R1",
        name="No deletes",
        phase_scope="pre",
        priority=10,
        detection_type="name",
        detection_pattern=["delete_file"],
        action_on_violation="block",
        conflict_strategy="highest_priority",
        message="Deleting files is not allowed",
    )


@pytest.fixture
def r2_rule() -> Rule:
    """Args rule blocking anything mentioning /etc (priority 5)."""
    return Rule(
        rule_code="R2",
        name="Stay out of /etc",
        phase_scope="pre",
        priority=5,
        detection_type="args",
        detection_pattern={"forbidden_paths": ["/etc"]},
        action_on_violation="block",
        conflict_strategy="highest_priority",
        message="System paths are off limits",
    )


@pytest.fixture
def sample_rules_yaml() -> str:
    """Return a rules YAML document for testing."""
    return """
rules:
  - rule_code: R1
    name: No deletes
    phase_scope: pre
    priority: 10
    detection_type: name
    detection_pattern: [delete_file]
    action_on_violation: block
    conflict_strategy: highest_priority
  - rule_code: R2
    name: Stay out of /etc
    phase_scope: pre
    priority: 5
    detection_type: args
    detection_pattern:
      forbidden_paths: ["/etc"]
    action_on_violation: block
    conflict_strategy: highest_priority
  - rule_code: W1
    name: Warn on shell
    phase_scope: all
    detection_type: name
    detection_pattern: run_terminal_cmd
    action_on_violation: warn
"""


@pytest.fixture
def sample_lock_yaml() -> str:
    """Return a lock config YAML document for testing."""
    return """
modules:
  core:
    name: Core engine
    locked: true
    locked_reason: release freeze
    protected_paths:
      - src/core/engine.py
    protected_symbols:
      - evaluate_rules
    unlock_command: gatekeep locks unlock core
  docs:
    name: Documentation
    locked: false
    protected_paths:
      - docs/
"""


@pytest.fixture
def lock_config_path(temp_dir: Path, sample_lock_yaml: str) -> Path:
    """Write the sample lock config to a temp file."""
    path = temp_dir / "locks.yaml"
    path.write_text(sample_lock_yaml)
    return path
