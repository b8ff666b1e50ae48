"""
Lock Registry for Gatekeep.

The lock registry is an access-control layer that vetoes modification of
protected files and symbols regardless of what the rules decide.

Design Principles:
    - Reads are never blocked: diagnostics must keep working on locked code
    - Copy-then-swap: the in-memory config is an immutable LockConfig that
      is replaced wholesale, so concurrent checks see the old or the new
      config, never a partial one
    - All-or-nothing persistence: the document is written to a temp file
      and renamed into place before the in-memory config is swapped
    - Reload never adopts a broken document: the previous state is kept
      and the failure is reported

How it works:
    1. Extract a target path from the operation (explicit argument or a
       recognized shell command shape); no path means allow
    2. Classify the operation as read, write or delete
    3. For patch operations, scan old/new text for protected symbols of
       locked modules whose paths match the target
    4. For every locked module whose protected paths match, block
       writes and deletes
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from gatekeep.errors import (
    ConfigMalformedError,
    LockPersistError,
    ModuleExistsError,
    UnknownModuleError,
)
from gatekeep.locks.paths import (
    classify_operation,
    extract_target,
    is_patch_operation,
    normalize_path,
    path_matches,
)
from gatekeep.schema import LockConfig, LockDecision, LockModule, OperationKind

logger = structlog.get_logger()


@dataclass
class ConfigDiff:
    """Module-level changes between two lock configs."""

    locked: list[str] = field(default_factory=list)
    unlocked: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        """Number of changed modules."""
        return len(self.locked) + len(self.unlocked) + len(self.added) + len(self.removed)

    @property
    def summary(self) -> str:
        """Short human-readable summary, e.g. "1 locked, 2 added"."""
        parts = [
            f"{len(ids)} {label}"
            for label, ids in (
                ("locked", self.locked),
                ("unlocked", self.unlocked),
                ("added", self.added),
                ("removed", self.removed),
            )
            if ids
        ]
        return ", ".join(parts) or "no changes"

    @classmethod
    def between(cls, old: LockConfig, new: LockConfig) -> "ConfigDiff":
        """Compute the diff from old to new."""
        diff = cls()
        for module_id, module in new.modules.items():
            previous = old.modules.get(module_id)
            if previous is None:
                diff.added.append(module_id)
            elif previous.locked != module.locked:
                (diff.locked if module.locked else diff.unlocked).append(module_id)
        diff.removed = [m for m in old.modules if m not in new.modules]
        return diff

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "locked": list(self.locked),
            "unlocked": list(self.unlocked),
            "added": list(self.added),
            "removed": list(self.removed),
            "total": self.total,
            "summary": self.summary,
        }


@dataclass
class ReloadResult:
    """Outcome of reloading the lock config from disk."""

    success: bool
    message: str
    diff: ConfigDiff | None = None


class LockRegistry:
    """
    Module lock state backed by a single YAML or JSON document.

    Usage:
        registry = LockRegistry("locks.yaml")
        decision = registry.check_operation("write", {"file_path": "src/core.py"})
        if decision.blocked:
            print(decision.feedback)

        registry.unlock("core", reason="refactor approved")

    Attributes:
        config_path: Path of the lock config document
    """

    def __init__(self, config_path: str | Path) -> None:
        """
        Initialize the registry and load the config document.

        A missing document means no modules; a malformed one raises.

        Raises:
            ConfigMalformedError: If the document can't be parsed
        """
        self.config_path = Path(config_path)
        self._write_lock = threading.Lock()
        self._config = self._read_config()

    @property
    def config(self) -> LockConfig:
        """The current (immutable) lock config."""
        return self._config

    # =========================================================================
    # Checking
    # =========================================================================

    def check_operation(self, operation_name: str, arguments: dict[str, Any]) -> LockDecision:
        """
        Decide whether an operation touches a locked module.

        Args:
            operation_name: The operation being invoked
            arguments: Its arguments

        Returns:
            LockDecision; blocked only for writes/deletes on locked modules
        """
        target = extract_target(arguments)
        if target is None:
            return LockDecision.allow(message="No target path")

        path = normalize_path(target.path)
        kind = target.kind or classify_operation(operation_name)
        config = self._config

        locked_matches = [
            module
            for module in config.modules.values()
            if module.locked and any(path_matches(path, p) for p in module.protected_paths)
        ]
        if not locked_matches:
            return LockDecision.allow(matched_path=path, operation_kind=kind)

        if kind == OperationKind.READ:
            logger.debug("lock_read_allowed", path=path, module_id=locked_matches[0].module_id)
            return LockDecision.allow(
                matched_path=path,
                operation_kind=kind,
                message="Read access to a locked module is allowed",
            )

        if is_patch_operation(operation_name, arguments):
            old = str(arguments.get("old_string") or "")
            new = str(arguments.get("new_string") or "")
            for module in locked_matches:
                touched = [s for s in module.protected_symbols if s in old or s in new]
                if touched:
                    logger.warning(
                        "lock_symbol_blocked",
                        module_id=module.module_id,
                        path=path,
                        symbols=touched,
                    )
                    symbol_lines = "\n".join(f"  - {s}" for s in touched)
                    return self._blocked(
                        module,
                        path,
                        kind,
                        message=f"Protected symbols of {module.label} are locked",
                        feedback=(
                            f"The change touches locked symbols:\n{symbol_lines}\n\n"
                            + self.feedback(module.module_id)
                        ),
                        symbols=touched,
                    )

        module = locked_matches[0]
        logger.warning(
            "lock_blocked",
            module_id=module.module_id,
            path=path,
            operation=operation_name,
            kind=kind.value,
        )
        return self._blocked(
            module,
            path,
            kind,
            message=f"{module.label} is locked",
            feedback=self.feedback(module.module_id),
        )

    def _blocked(
        self,
        module: LockModule,
        path: str,
        kind: OperationKind,
        message: str,
        feedback: str,
        symbols: list[str] | None = None,
    ) -> LockDecision:
        return LockDecision(
            blocked=True,
            module_id=module.module_id,
            matched_path=path,
            operation_kind=kind,
            message=message,
            feedback=feedback,
            locked_reason=module.locked_reason,
            locked_at=module.locked_at,
            symbols=symbols or [],
        )

    def feedback(self, module_id: str) -> str:
        """Remediation text shown when a locked module blocks an operation."""
        module = self.get(module_id)
        locked_at = module.locked_at.isoformat() if module.locked_at else "unknown"
        paths = ", ".join(module.protected_paths) or "none"
        return (
            f"{module.label} is locked.\n"
            "\n"
            "Do not work around the lock: no re-creating the module elsewhere,\n"
            "no fallback implementations, no renaming to dodge the check.\n"
            "\n"
            "Instead:\n"
            "  1. Stop the current operation\n"
            "  2. Tell the user why the change is needed\n"
            "  3. Ask the user to unlock the module\n"
            "  4. Wait for the user's authorization\n"
            "\n"
            f"Unlock command: {module.unlock_command or self._default_unlock(module_id)}\n"
            f"Protected paths: {paths}\n"
            f"Locked at: {locked_at}\n"
            f"Lock reason: {module.locked_reason or 'prevent accidental changes'}"
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, module_id: str) -> LockModule:
        """
        Look up a module.

        Raises:
            UnknownModuleError: If no such module exists
        """
        module = self._config.modules.get(module_id)
        if module is None:
            raise UnknownModuleError(module_id=module_id, config_path=str(self.config_path))
        return module

    def is_locked(self, module_id: str) -> bool:
        """Whether a module is locked (unknown modules are not)."""
        module = self._config.modules.get(module_id)
        return bool(module and module.locked)

    def status(self) -> list[dict[str, Any]]:
        """Overview of every module's lock state."""
        return [
            {
                "module_id": module.module_id,
                "name": module.label,
                "locked": module.locked,
                "locked_at": module.locked_at.isoformat() if module.locked_at else None,
                "locked_reason": module.locked_reason,
                "unlocked_at": module.unlocked_at.isoformat() if module.unlocked_at else None,
                "protected_paths": list(module.protected_paths),
                "protected_symbols": list(module.protected_symbols),
            }
            for module in self._config.modules.values()
        ]

    def protected_paths(self) -> list[str]:
        """Every path protected by a locked module, sorted and de-duplicated."""
        return sorted({
            p for module in self._config.modules.values() if module.locked for p in module.protected_paths
        })

    # =========================================================================
    # Administration
    # =========================================================================

    def lock(self, module_id: str, reason: str = "") -> LockModule:
        """
        Lock a module and persist immediately.

        Locking an already-locked module is a no-op.

        Raises:
            UnknownModuleError: If no such module exists
            LockPersistError: If the document could not be written
        """
        with self._write_lock:
            module = self.get(module_id)
            if module.locked:
                return module
            updated = module.model_copy(
                update={
                    "locked": True,
                    "locked_at": datetime.now(UTC),
                    "locked_reason": reason or None,
                }
            )
            self._commit({**self._config.modules, module_id: updated})

        logger.info("module_locked", module_id=module_id, reason=reason)
        return updated

    def unlock(self, module_id: str, reason: str = "") -> LockModule:
        """
        Unlock a module and persist immediately.

        Unlocking an already-unlocked module is a no-op.

        Raises:
            UnknownModuleError: If no such module exists
            LockPersistError: If the document could not be written
        """
        with self._write_lock:
            module = self.get(module_id)
            if not module.locked:
                return module
            updated = module.model_copy(
                update={
                    "locked": False,
                    "unlocked_at": datetime.now(UTC),
                    "unlock_reason": reason or None,
                }
            )
            self._commit({**self._config.modules, module_id: updated})

        logger.info("module_unlocked", module_id=module_id, reason=reason)
        return updated

    def lock_all(self, reason: str = "bulk lock") -> list[str]:
        """Lock every unlocked module in one write; returns the changed ids."""
        return self._set_all(locked=True, reason=reason)

    def unlock_all(self, reason: str = "bulk unlock") -> list[str]:
        """Unlock every locked module in one write; returns the changed ids."""
        return self._set_all(locked=False, reason=reason)

    def _set_all(self, locked: bool, reason: str) -> list[str]:
        now = datetime.now(UTC)
        if locked:
            update = {"locked": True, "locked_at": now, "locked_reason": reason or None}
        else:
            update = {"locked": False, "unlocked_at": now, "unlock_reason": reason or None}

        with self._write_lock:
            modules = dict(self._config.modules)
            changed = [m for m, module in modules.items() if module.locked != locked]
            if not changed:
                return []
            for module_id in changed:
                modules[module_id] = modules[module_id].model_copy(update=update)
            self._commit(modules)

        logger.info("modules_bulk_updated", locked=locked, modules=changed, reason=reason)
        return changed

    def register_module(
        self,
        module_id: str,
        name: str = "",
        protected_paths: list[str] | None = None,
        protected_symbols: list[str] | None = None,
        locked: bool = False,
        reason: str = "",
        lock_command: str | None = None,
        unlock_command: str | None = None,
        auto_registered: bool = False,
    ) -> LockModule:
        """
        Register a new module and persist immediately.

        Raises:
            ModuleExistsError: If a module with this id already exists
            LockPersistError: If the document could not be written
        """
        now = datetime.now(UTC)
        module = LockModule(
            module_id=module_id,
            display_name=name,
            locked=locked,
            protected_paths=list(protected_paths or []),
            protected_symbols=list(protected_symbols or []),
            locked_at=now if locked else None,
            locked_reason=(reason or None) if locked else None,
            lock_command=lock_command or f"gatekeep locks lock {module_id}",
            unlock_command=unlock_command or self._default_unlock(module_id),
            created_at=now,
            auto_registered=auto_registered,
        )

        with self._write_lock:
            if module_id in self._config.modules:
                raise ModuleExistsError(module_id=module_id, config_path=str(self.config_path))
            self._commit({**self._config.modules, module_id: module})

        logger.info("module_registered", module_id=module_id, locked=locked)
        return module

    def _default_unlock(self, module_id: str) -> str:
        return f"gatekeep locks unlock {module_id}"

    # =========================================================================
    # Persistence
    # =========================================================================

    def reload(self) -> ReloadResult:
        """
        Re-read the config document and swap it in.

        A document that fails to parse leaves the current state untouched
        and is reported as a failed reload.
        """
        try:
            new_config = self._read_config(initial=False)
        except ConfigMalformedError as e:
            logger.error("lock_config_reload_failed", path=str(self.config_path), error=str(e))
            return ReloadResult(success=False, message=f"Reload failed: {e.message}")

        with self._write_lock:
            diff = ConfigDiff.between(self._config, new_config)
            self._config = new_config

        logger.info("lock_config_reloaded", path=str(self.config_path), changes=diff.summary)
        if diff.total:
            return ReloadResult(success=True, message=f"Config updated: {diff.summary}", diff=diff)
        return ReloadResult(success=True, message="Config reloaded with no changes", diff=diff)

    def refresh(self) -> ReloadResult:
        """Manually triggered reload."""
        logger.info("lock_config_refresh_requested", path=str(self.config_path))
        return self.reload()

    def _read_config(self, initial: bool = True) -> LockConfig:
        """
        Parse the config document.

        A missing or empty document means no modules only on first load;
        on reload it is treated as malformed so the current locks survive a
        deleted or truncated file.
        """
        if not self.config_path.exists():
            if not initial:
                raise ConfigMalformedError(
                    config_path=str(self.config_path),
                    underlying_error="config document no longer exists",
                )
            logger.info("lock_config_missing", path=str(self.config_path))
            return LockConfig()

        try:
            # JSON documents are valid YAML
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
            raise ConfigMalformedError(
                config_path=str(self.config_path),
                underlying_error=str(e),
            ) from e

        if data is None:
            if not initial:
                raise ConfigMalformedError(
                    config_path=str(self.config_path),
                    underlying_error="config document is empty",
                )
            return LockConfig()
        if not isinstance(data, dict):
            raise ConfigMalformedError(
                config_path=str(self.config_path),
                underlying_error=f"expected a mapping, got {type(data).__name__}",
            )
        if "modules" not in data:
            data = {"modules": data}

        try:
            return LockConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigMalformedError(
                config_path=str(self.config_path),
                underlying_error=str(e),
            ) from e

    def _commit(self, modules: dict[str, LockModule]) -> None:
        """Persist a new module map, then swap it in. Caller holds _write_lock."""
        new_config = LockConfig.model_construct(modules=modules)
        self._write_document(new_config.to_document())
        self._config = new_config

    def _write_document(self, document: dict[str, Any]) -> None:
        if self.config_path.suffix.lower() == ".json":
            text = json.dumps(document, indent=2, ensure_ascii=False) + "\n"
        else:
            text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)

        directory = self.config_path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self.config_path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, self.config_path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise LockPersistError(
                config_path=str(self.config_path),
                underlying_error=str(e),
            ) from e
