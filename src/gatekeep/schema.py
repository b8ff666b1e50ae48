"""
Schema definitions for Gatekeep.

This module defines the Pydantic models used throughout Gatekeep:
- Rule: A persisted condition + action used to judge an operation
- ActionRequest/Decision: One attempted operation and its verdict
- LockModule/LockConfig/LockDecision: Access-control layer
- AuditRecord/ConflictResolution: What gets recorded
- Settings: Runtime configuration

Design Decisions:
    - Models are immutable where possible (frozen=True); updates go through
      model_copy so shared instances are replaced, never mutated in place
    - Unknown fields are rejected (extra="forbid") so typos in hand-edited
      rule and lock files surface as validation errors
    - Enums use string values matching the stored representation
"""

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class Phase(str, Enum):
    """Point in an operation's lifecycle at which rules are evaluated."""

    PRE = "pre"
    MID = "mid"
    POST = "post"
    RESPONSE = "response"
    ALL = "all"


class DetectionType(str, Enum):
    """How a generic rule decides whether it is violated."""

    FLAG = "flag"
    NAME = "name"
    ARGS = "args"
    REGEX = "regex"
    API_CALL = "api_call"


class ViolationAction(str, Enum):
    """What happens when a rule is violated."""

    BLOCK = "block"
    WARN = "warn"
    LOG = "log"


class Severity(str, Enum):
    """Rule severity, ordered CRITICAL > HIGH > MEDIUM > LOW."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Numeric rank used for ordering (higher is more severe)."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class ConflictStrategy(str, Enum):
    """How simultaneous block hits within one conflict group are resolved."""

    OVERRIDE = "override"
    MERGE = "merge"
    HIGHEST_PRIORITY = "highest_priority"
    FIRST_MATCH = "first_match"
    CUSTOM = "custom"


class OperationKind(str, Enum):
    """Access class of an operation, used by the lock registry."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class AuditOutcome(str, Enum):
    """Outcome of one rule evaluation."""

    BLOCKED = "blocked"
    WARNED = "warned"
    PASSED = "passed"


class AuditMode(str, Enum):
    """Which evaluations are written to the audit sink."""

    ALL = "all"
    MATCHED = "matched"


# =============================================================================
# Rule Models
# =============================================================================


class Rule(BaseModel):
    """
    A persisted rule.

    Rules are created and edited by an external administration surface and
    are read-only from the pipeline's point of view. Disabled rules never
    enter evaluation.

    Attributes:
        rule_code: Unique, immutable identity
        name: Human-readable name
        phase_scope: Phase the rule applies to (or "all")
        enabled: Whether the rule participates in evaluation
        priority: Evaluation order (higher first)
        detection_type: Which generic detector decides violation
        detection_pattern: Detector-specific structured payload
        action_on_violation: block, warn or log
        severity: CRITICAL, HIGH, MEDIUM or LOW
        conflict_group: Bucket for conflict resolution
        conflict_strategy: Strategy used to resolve conflicts in the group
        conflict_priority: Tie-breaker between conflicting rules
        message: Message returned when the rule blocks
        suggestion: Remediation hint returned when the rule blocks
        custom_resolution: Name or expression used by the custom strategy
        merged_from: Member codes when this is a synthesized merge rule
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_code: str = Field(..., min_length=1, description="Unique rule identity")
    name: str = Field(default="", description="Human-readable rule name")
    phase_scope: Phase = Field(default=Phase.PRE, description="Phase the rule applies to")
    enabled: bool = Field(default=True, description="Whether the rule is evaluated")
    priority: int = Field(default=0, description="Evaluation order, higher first")
    detection_type: DetectionType = Field(
        default=DetectionType.NAME,
        description="Generic detector used to decide violation",
    )
    detection_pattern: Any = Field(
        default=None,
        description="Detector-specific payload (string, list or mapping)",
    )
    action_on_violation: ViolationAction = Field(
        default=ViolationAction.BLOCK,
        description="What happens when the rule is violated",
    )
    severity: Severity = Field(default=Severity.MEDIUM, description="Rule severity")
    conflict_group: str = Field(default="default", description="Conflict bucket")
    conflict_strategy: ConflictStrategy = Field(
        default=ConflictStrategy.OVERRIDE,
        description="Conflict resolution strategy",
    )
    conflict_priority: int = Field(default=5, description="Conflict tie-breaker")
    message: str | None = Field(default=None, description="Block message template")
    suggestion: str | None = Field(default=None, description="Remediation hint")
    custom_resolution: str | None = Field(
        default=None,
        description="Registered resolver name or expression for the custom strategy",
    )
    merged_from: list[str] = Field(
        default_factory=list,
        description="Member rule codes of a synthesized merge rule",
    )

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator(
        "phase_scope", "detection_type", "action_on_violation", "conflict_strategy", mode="before"
    )
    @classmethod
    def _normalize_enum_value(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("conflict_group", mode="before")
    @classmethod
    def _default_group(cls, value: Any) -> Any:
        return value or "default"

    def render_message(self) -> str:
        """Message shown to the caller when this rule fires."""
        return self.message or f"Rule violated: {self.name or self.rule_code}"


# =============================================================================
# Runtime Models
# =============================================================================


class ActionRequest(BaseModel):
    """
    One attempted operation submitted to the pipeline.

    Ephemeral: created once per invocation and never persisted.

    Attributes:
        operation_name: The tool/operation being invoked
        arguments: Opaque key/value arguments
        phase: Phase this request is evaluated in
        result_snapshot: Partial or final result (mid/post phases)
        response_text: Text produced for the response phase
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    operation_name: str = Field(..., min_length=1, description="Operation being invoked")
    arguments: dict[str, Any] = Field(default_factory=dict, description="Operation arguments")
    phase: Phase = Field(default=Phase.PRE, description="Evaluation phase")
    result_snapshot: Any | None = Field(default=None, description="Result for mid/post phases")
    response_text: str | None = Field(default=None, description="Text for the response phase")

    @field_validator("phase")
    @classmethod
    def _concrete_phase(cls, value: Phase) -> Phase:
        if value == Phase.ALL:
            msg = "An action request must be evaluated in a concrete phase"
            raise ValueError(msg)
        return value

    def for_phase(
        self,
        phase: Phase,
        result_snapshot: Any | None = None,
        response_text: str | None = None,
    ) -> "ActionRequest":
        """Return a copy of this request for another phase."""
        return self.model_copy(
            update={
                "phase": phase,
                "result_snapshot": result_snapshot,
                "response_text": response_text,
            }
        )


class LockDecision(BaseModel):
    """
    Result of checking an operation against the lock registry.

    Attributes:
        blocked: Whether the operation is vetoed
        module_id: Locked module that matched
        matched_path: Target path extracted from the operation
        operation_kind: read, write or delete
        message: Short reason
        feedback: Full remediation text for the caller
        locked_reason: Why the module was locked
        locked_at: When the module was locked
        symbols: Protected symbols touched by a patch
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    blocked: bool = Field(..., description="Whether the operation is vetoed")
    module_id: str | None = Field(default=None, description="Matching locked module")
    matched_path: str | None = Field(default=None, description="Extracted target path")
    operation_kind: OperationKind | None = Field(default=None, description="Access class")
    message: str = Field(default="", description="Short reason")
    feedback: str = Field(default="", description="Remediation text")
    locked_reason: str | None = Field(default=None, description="Why the module is locked")
    locked_at: datetime | None = Field(default=None, description="When the module was locked")
    symbols: list[str] = Field(default_factory=list, description="Touched protected symbols")

    @classmethod
    def allow(
        cls,
        matched_path: str | None = None,
        operation_kind: OperationKind | None = None,
        message: str = "",
    ) -> "LockDecision":
        """Create a non-blocking lock decision."""
        return cls(
            blocked=False,
            matched_path=matched_path,
            operation_kind=operation_kind,
            message=message,
        )


class Decision(BaseModel):
    """
    The pipeline's verdict for one action request in one phase.

    Attributes:
        blocked: Whether the operation must not proceed
        phase: Phase the decision was made in
        matched_rule_code: Winning rule (or lock:<module_id> for lock blocks)
        message: Human-readable reason
        suggestion: Remediation hint
        severity: Severity of the winning rule
        warnings: Codes of rules that fired with warn/log or non-blocking hits
        lock: Lock registry result when the lock check decided the outcome
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    blocked: bool = Field(..., description="Whether the operation must not proceed")
    phase: Phase = Field(..., description="Phase the decision was made in")
    matched_rule_code: str | None = Field(default=None, description="Winning rule code")
    message: str = Field(default="", description="Human-readable reason")
    suggestion: str | None = Field(default=None, description="Remediation hint")
    severity: Severity | None = Field(default=None, description="Winning rule severity")
    warnings: list[str] = Field(default_factory=list, description="Non-blocking hits")
    lock: LockDecision | None = Field(default=None, description="Lock check result")

    @classmethod
    def allow(cls, phase: Phase, warnings: list[str] | None = None) -> "Decision":
        """Create a non-blocking decision."""
        return cls(blocked=False, phase=phase, message="OK", warnings=warnings or [])

    def to_error(self) -> Exception | None:
        """Convert a blocking decision into the matching violation error."""
        from gatekeep.errors import LockViolationError, RuleViolationError, ScopeViolationError

        if not self.blocked:
            return None
        if self.matched_rule_code == "scope":
            return ScopeViolationError(message=self.message, suggestion=self.suggestion)
        if self.lock is not None and self.lock.blocked:
            return LockViolationError(
                message=self.message,
                suggestion=self.suggestion,
                module_id=self.lock.module_id or "",
                path=self.lock.matched_path or "",
                symbols=list(self.lock.symbols),
            )
        return RuleViolationError(
            message=self.message,
            suggestion=self.suggestion,
            rule_code=self.matched_rule_code or "",
            phase=self.phase.value,
            severity=self.severity.value if self.severity else "",
        )


class AuditRecord(BaseModel):
    """
    Immutable record of one rule evaluation.

    Attributes:
        rule_code: Rule that was evaluated
        operation_name: Operation under evaluation
        phase: Phase of the evaluation
        outcome: blocked, warned or passed
        reason: Why the outcome was reached
        timestamp: When the evaluation happened
        violated: Whether the rule's condition held
        action: The rule's action on violation
        evaluation_error: Set when detection failed (outcome is then passed)
        session_id: Session the request belonged to
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rule_code: str = Field(..., description="Evaluated rule")
    operation_name: str = Field(..., description="Operation under evaluation")
    phase: Phase = Field(..., description="Evaluation phase")
    outcome: AuditOutcome = Field(..., description="Evaluation outcome")
    reason: str = Field(default="", description="Reason for the outcome")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the evaluation happened",
    )
    violated: bool = Field(default=False, description="Whether the condition held")
    action: ViolationAction | None = Field(default=None, description="Rule action")
    evaluation_error: str | None = Field(default=None, description="Detection failure")
    session_id: str | None = Field(default=None, description="Owning session")


class ConflictResolution(BaseModel):
    """
    Result of resolving simultaneous block hits.

    Attributes:
        resolved_rule: The winning (possibly synthesized) rule
        strategy_used: Strategy that produced the winner
        message: Explanation of the choice
        all_resolved: Per-group winners when several groups were involved
        conflicting_codes: Codes of all rules that fired
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    resolved_rule: Rule | None = Field(default=None, description="Winning rule")
    strategy_used: str = Field(..., description="Strategy that produced the winner")
    message: str = Field(default="", description="Explanation")
    all_resolved: list[Rule] = Field(default_factory=list, description="Per-group winners")
    conflicting_codes: list[str] = Field(default_factory=list, description="Fired rule codes")


# =============================================================================
# Lock Models
# =============================================================================


class LockModule(BaseModel):
    """
    A named unit of protected files and symbols.

    Mutated only through the registry's lock/unlock operations, which
    replace the instance via model_copy.

    Attributes:
        module_id: Unique identifier (the key in the config document)
        display_name: Human-readable name ("name" in the document)
        locked: Whether modification is vetoed
        protected_paths: Path fragments or glob patterns
        protected_symbols: Identifiers whose presence in a patch blocks it
        locked_at: When the module was last locked
        locked_reason: Why the module was last locked
        unlocked_at: When the module was last unlocked
        unlock_reason: Why the module was last unlocked
        lock_command: Operator hint for locking
        unlock_command: Operator hint for unlocking
        created_at: When the module was registered
        auto_registered: Whether the module was registered automatically
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    module_id: str = Field(..., min_length=1, description="Unique module identifier")
    display_name: str = Field(default="", alias="name", description="Human-readable name")
    locked: bool = Field(default=False, description="Whether modification is vetoed")
    protected_paths: list[str] = Field(default_factory=list, description="Protected paths")
    protected_symbols: list[str] = Field(default_factory=list, description="Protected symbols")
    locked_at: datetime | None = Field(default=None, description="Last lock time")
    locked_reason: str | None = Field(default=None, description="Last lock reason")
    unlocked_at: datetime | None = Field(default=None, description="Last unlock time")
    unlock_reason: str | None = Field(default=None, description="Last unlock reason")
    lock_command: str | None = Field(default=None, description="Operator lock hint")
    unlock_command: str | None = Field(default=None, description="Operator unlock hint")
    created_at: datetime | None = Field(default=None, description="Registration time")
    auto_registered: bool = Field(default=False, description="Registered automatically")

    @property
    def label(self) -> str:
        """Display name, falling back to the id."""
        return self.display_name or self.module_id


class LockConfig(BaseModel):
    """
    The lock config document: module_id -> module definition.

    The module id lives in the document as the mapping key; it is copied
    into each LockModule on load and stripped again on dump.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    modules: dict[str, LockModule] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _inject_module_ids(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        modules = data.get("modules") or {}
        if not isinstance(modules, dict):
            return data
        injected = {}
        for module_id, body in modules.items():
            if isinstance(body, dict):
                body = {**body, "module_id": module_id}
            injected[module_id] = body
        return {**data, "modules": injected}

    def to_document(self) -> dict[str, Any]:
        """Serialize back to the on-disk document shape."""
        return {
            "modules": {
                module_id: module.model_dump(
                    mode="json",
                    by_alias=True,
                    exclude={"module_id"},
                    exclude_none=True,
                )
                for module_id, module in self.modules.items()
            }
        }


# =============================================================================
# Settings
# =============================================================================


class Settings(BaseModel):
    """
    Runtime configuration for Gatekeep.

    Attributes:
        db_path: SQLite database holding rules, audit records and logs
        lock_config_path: Lock config resource (YAML or JSON)
        cache_ttl_seconds: Rule cache TTL per phase bucket
        reload_debounce_seconds: Window that coalesces config change bursts
        audit_mode: Record every evaluation or only matched ones
        collect_conflicts: Evaluate all rules of a phase and resolve conflicts
        exempt_operations: Bootstrap operations that flag rules never block
        max_scope_files: Largest modification scope a task may declare
        log_level: Logging level name
        log_json: Render logs as JSON (console renderer otherwise)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    db_path: Path = Field(default=Path("gatekeep.db"), description="SQLite database path")
    lock_config_path: Path = Field(default=Path("locks.yaml"), description="Lock config path")
    cache_ttl_seconds: float = Field(default=60.0, gt=0, description="Rule cache TTL")
    reload_debounce_seconds: float = Field(default=0.3, ge=0, description="Reload debounce")
    audit_mode: AuditMode = Field(default=AuditMode.ALL, description="Audit coverage")
    collect_conflicts: bool = Field(default=True, description="Resolve all block hits")
    exempt_operations: list[str] = Field(
        default_factory=lambda: ["smart_preloader"],
        description="Operations flag rules never block",
    )
    max_scope_files: int = Field(default=5, gt=0, description="Largest task scope")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="JSON log rendering")


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_settings(path: Path | str) -> Settings:
    """
    Load settings from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return Settings.model_validate(data or {})


def load_settings_from_string(content: str) -> Settings:
    """Load settings from a YAML string."""
    data = yaml.safe_load(content)
    return Settings.model_validate(data or {})


def load_rules_file(path: Path | str) -> list[Rule]:
    """
    Load rule definitions from a YAML file.

    The document is either a list of rules or a mapping with a
    top-level "rules" list.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If a rule doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        return _rules_from_data(yaml.safe_load(f))


def load_rules_from_string(content: str) -> list[Rule]:
    """Load rule definitions from a YAML string."""
    return _rules_from_data(yaml.safe_load(content))


def _rules_from_data(data: Any) -> list[Rule]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("rules") or []
    return [Rule.model_validate(item) for item in data]
