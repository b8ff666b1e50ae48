"""
Exception hierarchy for Gatekeep.

All Gatekeep exceptions inherit from GatekeepError, allowing callers to catch
all Gatekeep-specific exceptions with a single except clause.

Exception Categories:
    - RuleViolationError / LockViolationError: Expected, user-facing blocks
    - EvaluationError: A single rule's detection logic failed
    - ConfigMalformedError: The lock config resource could not be parsed
    - LockPersistError: Writing the lock config resource failed
    - StorageError: Rule/audit store operation failed

Propagation:
    Internal faults (storage, evaluation, config) are swallowed into safe
    defaults by the pipeline and surfaced only through logging. Violations
    are the pipeline's normal output; callers that prefer exceptions can
    convert a blocking Decision with Decision.to_error().
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Violations: 1xxx
ERROR_RULE_VIOLATION = 1001
ERROR_LOCK_VIOLATION = 1002
ERROR_SCOPE_VIOLATION = 1003

# Evaluation errors: 2xxx
ERROR_EVALUATION_FAILED = 2001
ERROR_UNKNOWN_DETECTION_TYPE = 2002
ERROR_INVALID_PATTERN = 2003

# Lock configuration errors: 3xxx
ERROR_CONFIG_MALFORMED = 3001
ERROR_CONFIG_PERSIST = 3002
ERROR_MODULE_NOT_FOUND = 3003
ERROR_MODULE_EXISTS = 3004

# Storage errors: 5xxx
ERROR_STORAGE_UNAVAILABLE = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class GatekeepError(Exception):
    """
    Base exception for all Gatekeep errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Violations
# =============================================================================


@dataclass
class RuleViolationError(GatekeepError):
    """
    Raised when an operation is blocked by a rule.

    Attributes:
        rule_code: Code of the winning rule
        operation: Operation that was blocked
        phase: Phase in which the rule fired
        severity: Severity of the winning rule
    """

    rule_code: str = ""
    operation: str = ""
    phase: str = ""
    severity: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rule {self.rule_code} blocked {self.operation}"
        if self.code == 0:
            self.code = ERROR_RULE_VIOLATION
        self.context.update({
            "rule_code": self.rule_code,
            "operation": self.operation,
            "phase": self.phase,
            "severity": self.severity,
        })


@dataclass
class LockViolationError(GatekeepError):
    """Raised when an operation targets a file or symbol of a locked module."""

    module_id: str = ""
    path: str = ""
    symbols: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Module {self.module_id} is locked: {self.path}"
        if self.code == 0:
            self.code = ERROR_LOCK_VIOLATION
        if not self.suggestion:
            self.suggestion = f"Ask an administrator to unlock module {self.module_id}"
        self.context.update({
            "module_id": self.module_id,
            "path": self.path,
            "symbols": self.symbols,
        })


@dataclass
class ScopeViolationError(GatekeepError):
    """Raised when a modification falls outside the declared task scope."""

    path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Out-of-scope modification: {self.path}"
        if self.code == 0:
            self.code = ERROR_SCOPE_VIOLATION
        if not self.suggestion:
            self.suggestion = "Finish the current task, then ask before widening its scope"
        self.context["path"] = self.path


# =============================================================================
# Evaluation Errors
# =============================================================================


@dataclass
class EvaluationError(GatekeepError):
    """
    Raised when a rule's detection logic fails.

    The evaluator never lets this escape: the rule is treated as not
    violated and the failure is recorded as an evaluation error.
    """

    rule_code: str = ""
    detection_type: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Rule {self.rule_code} failed to evaluate: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_EVALUATION_FAILED
        self.context.update({
            "rule_code": self.rule_code,
            "detection_type": self.detection_type,
            "underlying_error": self.underlying_error,
        })


@dataclass
class UnknownDetectionTypeError(EvaluationError):
    """Raised when no detector is registered for a detection type."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Unknown detection type: {self.detection_type}"
        if self.code == 0:
            self.code = ERROR_UNKNOWN_DETECTION_TYPE
        super().__post_init__()


@dataclass
class InvalidPatternError(EvaluationError):
    """Raised when a detection pattern has the wrong shape for its type."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if self.code == 0:
            self.code = ERROR_INVALID_PATTERN
        super().__post_init__()


# =============================================================================
# Lock Configuration Errors
# =============================================================================


@dataclass
class LockConfigError(GatekeepError):
    """
    Base class for lock configuration errors.

    Attributes:
        config_path: The lock config resource involved
    """

    config_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["config_path"] = self.config_path


@dataclass
class ConfigMalformedError(LockConfigError):
    """Raised when the lock config resource cannot be parsed or validated."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Malformed lock config {self.config_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_MALFORMED
        if not self.suggestion:
            self.suggestion = "Fix the document; the previously loaded lock state stays active"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class LockPersistError(LockConfigError):
    """Raised when the lock config resource cannot be written."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to persist lock config {self.config_path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_PERSIST
        if not self.suggestion:
            self.suggestion = "Check that the config path is writable and retry"
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class UnknownModuleError(LockConfigError):
    """Raised when a lock operation names a module that is not registered."""

    module_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Module not found: {self.module_id}"
        if self.code == 0:
            self.code = ERROR_MODULE_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Register the module before locking or unlocking it"
        super().__post_init__()
        self.context["module_id"] = self.module_id


@dataclass
class ModuleExistsError(LockConfigError):
    """Raised when registering a module id that is already taken."""

    module_id: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Module already registered: {self.module_id}"
        if self.code == 0:
            self.code = ERROR_MODULE_EXISTS
        super().__post_init__()
        self.context["module_id"] = self.module_id


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(GatekeepError):
    """
    Base class for storage/database errors.

    Attributes:
        operation: The operation that failed (e.g., "fetch_rules")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StoreUnavailableError(StorageError):
    """Raised when the rule or audit store cannot be reached."""

    db_path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Store unavailable ({self.operation}): {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_UNAVAILABLE
        if not self.suggestion:
            self.suggestion = "Check that the database path is valid and readable"
        super().__post_init__()
        self.context.update({
            "db_path": self.db_path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageWriteError(StorageError):
    """Raised when a write operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a read operation fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Database read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
