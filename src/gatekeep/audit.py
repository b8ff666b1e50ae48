"""
Audit Logger for Gatekeep.

Every rule evaluation the pipeline performs is handed to the audit logger,
which writes one AuditRecord per evaluation to an append-only sink.

Design Principles:
    - Never abort the pipeline: sink failures are logged and counted,
      never raised to the caller
    - Mode-aware: "all" records every evaluation, "matched" only rules
      that violated or failed to evaluate
"""

from typing import Any

import structlog

from gatekeep.rules.evaluator import RuleEvaluation
from gatekeep.schema import (
    ActionRequest,
    AuditMode,
    AuditOutcome,
    AuditRecord,
    ConflictResolution,
    LockDecision,
)
from gatekeep.store.base import AuditSink
from gatekeep.store.db import GatekeepDB

logger = structlog.get_logger()


class AuditLogger:
    """
    Writes audit records and conflict logs without ever failing the caller.

    Usage:
        audit = AuditLogger(sink=db, mode=AuditMode.ALL, conflict_log=db)
        audit.record(evaluation, request, session_id="abc123")

    Attributes:
        sink: Destination of audit records (None disables auditing)
        mode: Which evaluations are recorded
        conflict_log: Destination of conflict resolutions (optional)
        appended: Records written successfully
        failed: Records the sink rejected
    """

    def __init__(
        self,
        sink: AuditSink | None,
        mode: AuditMode = AuditMode.ALL,
        conflict_log: GatekeepDB | None = None,
    ) -> None:
        self.sink = sink
        self.mode = mode
        self.conflict_log = conflict_log
        self.appended = 0
        self.failed = 0

    def should_record(self, evaluation: RuleEvaluation) -> bool:
        """Whether an evaluation is recorded under the current mode."""
        if self.mode == AuditMode.ALL:
            return True
        return evaluation.violated or evaluation.evaluation_error is not None

    def record(
        self,
        evaluation: RuleEvaluation,
        request: ActionRequest,
        session_id: str | None = None,
        outcome: AuditOutcome | None = None,
        reason: str | None = None,
    ) -> bool:
        """
        Record one rule evaluation.

        Args:
            evaluation: The evaluation to record
            request: The request it was evaluated against
            session_id: Owning session
            outcome: Final outcome when the pipeline overrides the rule's own
            reason: Final reason when the pipeline overrides the rule's own

        Returns:
            True if a record was written
        """
        if not self.should_record(evaluation):
            return False
        return self.append(evaluation.to_audit_record(request, session_id, outcome, reason))

    def record_lock(
        self,
        decision: LockDecision,
        request: ActionRequest,
        session_id: str | None = None,
    ) -> bool:
        """Record a lock block as a pseudo-rule "lock:<module_id>"."""
        return self.append(
            AuditRecord(
                rule_code=f"lock:{decision.module_id}",
                operation_name=request.operation_name,
                phase=request.phase,
                outcome=AuditOutcome.BLOCKED,
                reason=decision.message,
                violated=True,
                session_id=session_id,
            )
        )

    def record_scope(
        self,
        message: str,
        request: ActionRequest,
        session_id: str | None = None,
    ) -> bool:
        """Record a scope block as the pseudo-rule "scope"."""
        return self.append(
            AuditRecord(
                rule_code="scope",
                operation_name=request.operation_name,
                phase=request.phase,
                outcome=AuditOutcome.BLOCKED,
                reason=message,
                violated=True,
                session_id=session_id,
            )
        )

    def append(self, record: AuditRecord) -> bool:
        """Append a record to the sink, swallowing and logging failures."""
        if self.sink is None:
            return False
        try:
            self.sink.append(record)
        except Exception as e:
            self.failed += 1
            logger.error(
                "audit_append_failed",
                rule_code=record.rule_code,
                operation=record.operation_name,
                phase=record.phase.value,
                error=str(e),
            )
            return False
        self.appended += 1
        return True

    def record_conflict(
        self,
        resolution: ConflictResolution,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """Persist a conflict resolution, swallowing and logging failures."""
        if self.conflict_log is None:
            return False
        try:
            self.conflict_log.record_conflict(resolution, context)
        except Exception as e:
            logger.error(
                "conflict_log_failed",
                conflicting=resolution.conflicting_codes,
                error=str(e),
            )
            return False
        return True

    def stats(self) -> dict[str, Any]:
        """Audit counters for observability."""
        return {
            "mode": self.mode.value,
            "appended": self.appended,
            "failed": self.failed,
        }
