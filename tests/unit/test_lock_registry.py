"""
Unit tests for the lock registry.

Tests cover:
- Read/write/delete decisions on locked and unlocked modules
- Protected symbol detection in patches
- Lock administration and persistence (YAML and JSON)
- Reload semantics, including malformed documents
"""

import json
from pathlib import Path

import pytest
import yaml

from gatekeep.errors import (
    ConfigMalformedError,
    LockPersistError,
    ModuleExistsError,
    UnknownModuleError,
)
from gatekeep.locks import ConfigDiff, LockRegistry
from gatekeep.schema import LockConfig, OperationKind


@pytest.fixture
def registry(lock_config_path: Path) -> LockRegistry:
    """Registry loaded from the sample lock config."""
    return LockRegistry(lock_config_path)


# =============================================================================
# Checking
# =============================================================================


class TestCheckOperation:
    """Tests for check_operation."""

    def test_read_of_locked_path_allowed(self, registry: LockRegistry) -> None:
        """Reads are never blocked."""
        decision = registry.check_operation("read_file", {"target_file": "src/core/engine.py"})
        assert not decision.blocked
        assert decision.operation_kind == OperationKind.READ
        assert "Read access" in decision.message

    def test_write_to_locked_path_blocked(self, registry: LockRegistry) -> None:
        """Writes to a locked module are vetoed with feedback."""
        decision = registry.check_operation("write", {"file_path": "src/core/engine.py"})
        assert decision.blocked
        assert decision.module_id == "core"
        assert decision.locked_reason == "release freeze"
        assert "gatekeep locks unlock core" in decision.feedback

    def test_delete_via_shell_blocked(self, registry: LockRegistry) -> None:
        """Shell commands are parsed for their target."""
        decision = registry.check_operation(
            "run_terminal_cmd", {"command": "rm -f src/core/engine.py"}
        )
        assert decision.blocked
        assert decision.operation_kind == OperationKind.DELETE

    def test_shell_viewer_allowed(self, registry: LockRegistry) -> None:
        """A viewer command on a locked file is a read."""
        decision = registry.check_operation("run_terminal_cmd", {"command": "cat src/core/engine.py"})
        assert not decision.blocked

    def test_unlocked_module_allowed(self, registry: LockRegistry) -> None:
        """Unlocked modules don't block."""
        assert not registry.check_operation("write", {"file_path": "docs/guide.md"}).blocked

    def test_no_target_allowed(self, registry: LockRegistry) -> None:
        """No path means allow."""
        decision = registry.check_operation("run_terminal_cmd", {"command": "git status"})
        assert not decision.blocked
        assert decision.message == "No target path"

    def test_unlock_then_allowed(self, registry: LockRegistry) -> None:
        """Unlocking lifts the veto for the next check."""
        args = {"file_path": "src/core/engine.py"}
        assert registry.check_operation("write", args).blocked
        registry.unlock("core", reason="approved refactor")
        assert not registry.check_operation("write", args).blocked

    def test_protected_symbol_in_patch(self, registry: LockRegistry) -> None:
        """Patches touching protected symbols report them."""
        decision = registry.check_operation(
            "search_replace",
            {
                "file_path": "src/core/engine.py",
                "old_string": "def evaluate_rules(self):",
                "new_string": "def evaluate_rules(self, strict=False):",
            },
        )
        assert decision.blocked
        assert decision.symbols == ["evaluate_rules"]
        assert "evaluate_rules" in decision.feedback


# =============================================================================
# Administration
# =============================================================================


class TestAdministration:
    """Tests for lock, unlock and registration."""

    def test_lock_persists(self, registry: LockRegistry, lock_config_path: Path) -> None:
        """Locking writes the document before returning."""
        module = registry.lock("docs", reason="docs freeze")
        assert module.locked
        assert module.locked_at is not None

        on_disk = yaml.safe_load(lock_config_path.read_text())
        assert on_disk["modules"]["docs"]["locked"] is True
        assert on_disk["modules"]["docs"]["locked_reason"] == "docs freeze"
        assert "module_id" not in on_disk["modules"]["docs"]

    def test_lock_is_idempotent(self, registry: LockRegistry) -> None:
        """Locking a locked module changes nothing."""
        before = registry.get("core")
        assert registry.lock("core") == before

    def test_unknown_module(self, registry: LockRegistry) -> None:
        """Unknown ids raise UnknownModuleError."""
        with pytest.raises(UnknownModuleError):
            registry.lock("nope")
        assert registry.is_locked("nope") is False

    def test_bulk_operations(self, registry: LockRegistry) -> None:
        """lock_all and unlock_all report the modules they changed."""
        assert registry.lock_all() == ["docs"]
        assert registry.lock_all() == []
        assert sorted(registry.unlock_all()) == ["core", "docs"]
        assert registry.protected_paths() == []

    def test_register_module(self, registry: LockRegistry) -> None:
        """New modules get default operator commands."""
        module = registry.register_module(
            "api", name="API", protected_paths=["src/api/"], locked=True, reason="contract"
        )
        assert module.unlock_command == "gatekeep locks unlock api"
        assert registry.check_operation("write", {"file_path": "src/api/routes.py"}).blocked

    def test_register_duplicate(self, registry: LockRegistry) -> None:
        """Registering an existing id raises ModuleExistsError."""
        with pytest.raises(ModuleExistsError):
            registry.register_module("core")

    def test_status(self, registry: LockRegistry) -> None:
        """status lists every module."""
        status = {entry["module_id"]: entry for entry in registry.status()}
        assert status["core"]["locked"] is True
        assert status["core"]["name"] == "Core engine"
        assert status["docs"]["protected_paths"] == ["docs/"]

    def test_json_document(self, temp_dir: Path) -> None:
        """A .json config is written back as JSON."""
        path = temp_dir / "locks.json"
        path.write_text(json.dumps({"modules": {"core": {"name": "Core", "protected_paths": ["core/"]}}}))
        registry = LockRegistry(path)

        registry.lock("core")
        assert json.loads(path.read_text())["modules"]["core"]["locked"] is True

    def test_persist_failure_keeps_state(self, temp_dir: Path) -> None:
        """A failed write leaves the in-memory config unchanged."""
        blocker = temp_dir / "not_a_dir"
        blocker.write_text("")
        registry = LockRegistry(blocker / "locks.yaml")

        with pytest.raises(LockPersistError):
            registry.register_module("core", protected_paths=["core/"], locked=True)
        assert registry.config.modules == {}


# =============================================================================
# Loading and Reload
# =============================================================================


class TestReload:
    """Tests for loading and reloading the document."""

    def test_missing_document_is_empty(self, temp_dir: Path) -> None:
        """A missing config means no modules."""
        assert LockRegistry(temp_dir / "missing.yaml").config.modules == {}

    def test_bare_module_mapping(self, temp_dir: Path) -> None:
        """A document without a modules key is treated as the module map."""
        path = temp_dir / "locks.yaml"
        path.write_text("core:\n  locked: true\n  protected_paths: [core/]\n")
        assert LockRegistry(path).is_locked("core")

    def test_malformed_on_init_raises(self, temp_dir: Path) -> None:
        """A broken document at startup is an error."""
        path = temp_dir / "locks.yaml"
        path.write_text("modules: [unclosed\n")
        with pytest.raises(ConfigMalformedError):
            LockRegistry(path)

    def test_external_change_picked_up(self, registry: LockRegistry, lock_config_path: Path) -> None:
        """A reload makes an externally locked module block on the next check."""
        args = {"file_path": "docs/guide.md"}
        assert not registry.check_operation("write", args).blocked

        data = yaml.safe_load(lock_config_path.read_text())
        data["modules"]["docs"]["locked"] = True
        lock_config_path.write_text(yaml.safe_dump(data))

        result = registry.reload()
        assert result.success
        assert result.diff.locked == ["docs"]
        assert result.message == "Config updated: 1 locked"
        assert registry.check_operation("write", args).blocked

    def test_malformed_reload_keeps_state(
        self, registry: LockRegistry, lock_config_path: Path
    ) -> None:
        """A corrupt document leaves the previous state active."""
        before = registry.config
        lock_config_path.write_text("modules: {core: {locked: [oops\n")

        result = registry.reload()
        assert not result.success
        assert "Reload failed" in result.message
        assert registry.config is before
        assert registry.check_operation("write", {"file_path": "src/core/engine.py"}).blocked

    def test_emptied_document_keeps_state(
        self, registry: LockRegistry, lock_config_path: Path
    ) -> None:
        """A truncated document fails the reload instead of unlocking everything."""
        lock_config_path.write_text("")

        result = registry.reload()
        assert not result.success
        assert "config document is empty" in result.message
        assert registry.is_locked("core")
        assert registry.check_operation("write_file", {"file_path": "src/core/engine.py"}).blocked

    def test_deleted_document_keeps_state(
        self, registry: LockRegistry, lock_config_path: Path
    ) -> None:
        """A document removed after startup fails the reload."""
        lock_config_path.unlink()

        assert not registry.reload().success
        assert registry.is_locked("core")

    def test_empty_document_on_init(self, temp_dir: Path) -> None:
        """An empty document at startup means no modules."""
        path = temp_dir / "empty.yaml"
        path.write_text("")
        assert LockRegistry(path).config.modules == {}

    def test_reload_without_changes(self, registry: LockRegistry) -> None:
        """Reloading an unchanged document reports no changes."""
        result = registry.refresh()
        assert result.success
        assert result.message == "Config reloaded with no changes"


class TestConfigDiff:
    """Tests for ConfigDiff."""

    def test_between(self) -> None:
        """Locks, unlocks, additions and removals are detected."""
        old = LockConfig.model_validate({
            "modules": {"a": {"locked": False}, "b": {"locked": True}, "c": {}},
        })
        new = LockConfig.model_validate({
            "modules": {"a": {"locked": True}, "b": {"locked": False}, "d": {}},
        })
        diff = ConfigDiff.between(old, new)

        assert diff.locked == ["a"]
        assert diff.unlocked == ["b"]
        assert diff.added == ["d"]
        assert diff.removed == ["c"]
        assert diff.summary == "1 locked, 1 unlocked, 1 added, 1 removed"

    def test_empty_diff(self) -> None:
        """Identical configs have no changes."""
        assert ConfigDiff.between(LockConfig(), LockConfig()).summary == "no changes"
