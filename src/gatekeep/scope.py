"""
Modification scope guard.

A task may declare up front which files it intends to modify. While a
scope is active, write and delete operations outside it are refused, and
every modification is counted for the end-of-task report.
"""

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from gatekeep.locks.paths import normalize_path, path_matches
from gatekeep.schema import OperationKind


@dataclass(frozen=True)
class ScopeCheck:
    """Result of a scope validation or modification check."""

    allowed: bool
    message: str = ""
    recommendation: str | None = None


@dataclass
class ScopeViolation:
    """One out-of-scope modification attempt."""

    path: str
    operation: str
    task: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ModificationScope:
    """
    Declared modification scope for the current task of one session.

    Attributes:
        description: What the task is about
        allowed_files: Files (or fragments) the task may modify
        modified: Normalized path -> number of modifications seen
        violations: Out-of-scope attempts, oldest first
    """

    description: str = ""
    allowed_files: list[str] = field(default_factory=list)
    modified: dict[str, int] = field(default_factory=dict)
    violations: list[ScopeViolation] = field(default_factory=list)
    started_at: datetime | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def active(self) -> bool:
        """Whether a scope has been declared."""
        return bool(self.allowed_files)

    def declare(self, description: str, files: list[str], max_files: int) -> ScopeCheck:
        """
        Declare the files a task will modify.

        Declaring more than max_files files is refused as too broad; the
        previous scope (if any) stays in place.
        """
        if len(files) > max_files:
            return ScopeCheck(
                allowed=False,
                message=f"Task plans to modify {len(files)} files (max {max_files})",
                recommendation="Split the task into smaller tasks",
            )

        with self._lock:
            self.description = description
            self.allowed_files = list(files)
            self.modified = {}
            self.violations = []
            self.started_at = datetime.now(UTC)
        return ScopeCheck(allowed=True, message="Scope accepted")

    def check(self, path: str, kind: OperationKind, operation: str) -> ScopeCheck:
        """Check and count one modification of path."""
        if not self.active or kind == OperationKind.READ:
            return ScopeCheck(allowed=True)

        normalized = normalize_path(path)
        with self._lock:
            self.modified[normalized] = self.modified.get(normalized, 0) + 1

            if any(path_matches(normalized, allowed) for allowed in self.allowed_files):
                return ScopeCheck(allowed=True)

            self.violations.append(
                ScopeViolation(path=normalized, operation=operation, task=self.description)
            )

        return ScopeCheck(
            allowed=False,
            message=f"Out-of-scope modification: {normalized} is not part of '{self.description}'",
            recommendation=(
                "Finish the current task, report the other file, and ask before "
                "adding it to the scope"
            ),
        )

    def report(self) -> dict[str, Any]:
        """Summarize modifications and violations for the current task."""
        return {
            "task": self.description,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "allowed_files": list(self.allowed_files),
            "total_modifications": len(self.modified),
            "modified_files": [
                {"path": path, "count": count} for path, count in sorted(self.modified.items())
            ],
            "violations": [
                {
                    "path": v.path,
                    "operation": v.operation,
                    "task": v.task,
                    "timestamp": v.timestamp.isoformat(),
                }
                for v in self.violations
            ],
            "has_violations": bool(self.violations),
        }

    def clear(self) -> None:
        """Drop the scope (start of a new task)."""
        with self._lock:
            self.description = ""
            self.allowed_files = []
            self.modified = {}
            self.violations = []
            self.started_at = None
