"""
Rule Evaluator for Gatekeep.

Decides whether one rule is violated by one action request and maps the
rule's action to an outcome:

    violated + block -> blocked
    violated + warn  -> not blocked, recorded as warned
    violated + log   -> not blocked, recorded as passed (informational)

Built-in rules (registered by exact rule code) are decided by their
handler; every other rule goes through the generic detectors.

Design Principles:
    - Fail-open on internal faults: a detection error means "not violated"
      and is reported as an evaluation error, distinct from a normal pass
    - Pure over in-memory data: no I/O except the built-ins' store lookups
"""

from dataclasses import dataclass

import structlog

from gatekeep.errors import EvaluationError
from gatekeep.rules.builtins import (
    BuiltinContext,
    BuiltinKind,
    BuiltinRegistry,
    RuleKind,
    create_default_builtins,
)
from gatekeep.rules.detectors import detect
from gatekeep.schema import (
    ActionRequest,
    AuditOutcome,
    AuditRecord,
    Rule,
    Severity,
    ViolationAction,
)
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB

logger = structlog.get_logger()


@dataclass
class RuleEvaluation:
    """
    Result of evaluating one rule against one request.

    Attributes:
        rule: The evaluated rule
        kind: Generic or built-in
        violated: Whether the rule's condition held
        blocked: Whether the rule asks to block (violated with block action)
        outcome: Audit outcome for this evaluation
        message: Reason shown to the caller
        suggestion: Remediation hint
        evaluation_error: Set when detection failed
    """

    rule: Rule
    kind: RuleKind
    violated: bool = False
    blocked: bool = False
    outcome: AuditOutcome = AuditOutcome.PASSED
    message: str = ""
    suggestion: str | None = None
    evaluation_error: str | None = None

    @property
    def rule_code(self) -> str:
        """Code of the evaluated rule."""
        return self.rule.rule_code

    @property
    def severity(self) -> Severity:
        """Severity of the evaluated rule."""
        return self.rule.severity

    @property
    def triggered(self) -> bool:
        """Whether the rule fired with any action."""
        return self.violated

    def to_audit_record(
        self,
        request: ActionRequest,
        session_id: str | None = None,
        outcome: AuditOutcome | None = None,
        reason: str | None = None,
    ) -> AuditRecord:
        """Build the audit record for this evaluation."""
        return AuditRecord(
            rule_code=self.rule_code,
            operation_name=request.operation_name,
            phase=request.phase,
            outcome=outcome or self.outcome,
            reason=reason if reason is not None else self.message,
            violated=self.violated,
            action=self.rule.action_on_violation,
            evaluation_error=self.evaluation_error,
            session_id=session_id,
        )


class RuleEvaluator:
    """
    Evaluates rules against action requests.

    Usage:
        evaluator = RuleEvaluator(store=db, exempt_operations={"smart_preloader"})
        result = evaluator.evaluate(rule, request, session)
        if result.blocked:
            ...
    """

    def __init__(
        self,
        store: GatekeepDB | None = None,
        builtins: BuiltinRegistry | None = None,
        exempt_operations: set[str] | frozenset[str] | list[str] = frozenset(),
    ) -> None:
        """
        Initialize the evaluator.

        Args:
            store: Verification history for built-in rules
            builtins: Built-in handler registry (a fresh default registry if omitted)
            exempt_operations: Bootstrap operations that flag rules let through
        """
        self.store = store
        self.builtins = builtins if builtins is not None else create_default_builtins()
        self.exempt_operations = frozenset(exempt_operations)

    def evaluate(
        self,
        rule: Rule,
        request: ActionRequest,
        session: SessionState,
    ) -> RuleEvaluation:
        """
        Evaluate one rule against one request.

        Never raises for detection faults: they produce a not-violated
        evaluation carrying evaluation_error.
        """
        kind = self.builtins.kind_of(rule)
        result = RuleEvaluation(rule=rule, kind=kind)

        try:
            if isinstance(kind, BuiltinKind):
                handler = self.builtins.get(rule.rule_code)
                verdict = handler.check(
                    rule,
                    request,
                    BuiltinContext(
                        session=session,
                        store=self.store,
                        exempt_operations=self.exempt_operations,
                    ),
                )
                violated = verdict.violated
                default_message = verdict.message
                default_suggestion = verdict.suggestion
            else:
                violated = detect(rule, request, session, self.exempt_operations)
                default_message = None
                default_suggestion = None
        except EvaluationError as e:
            return self._failed(result, request, str(e))
        except Exception as e:
            # Built-in handlers and store lookups
            return self._failed(result, request, f"{type(e).__name__}: {e}")

        if not violated:
            result.message = "OK"
            return result

        result.violated = True
        result.message = rule.message or default_message or rule.render_message()
        result.suggestion = rule.suggestion or default_suggestion

        action = rule.action_on_violation
        if action == ViolationAction.BLOCK:
            result.blocked = True
            result.outcome = AuditOutcome.BLOCKED
        elif action == ViolationAction.WARN:
            result.outcome = AuditOutcome.WARNED
            logger.warning(
                "rule_warning",
                rule_code=rule.rule_code,
                operation=request.operation_name,
                phase=request.phase.value,
                message=result.message,
            )
        else:
            result.outcome = AuditOutcome.PASSED
            logger.info(
                "rule_logged",
                rule_code=rule.rule_code,
                operation=request.operation_name,
                phase=request.phase.value,
            )
        return result

    def _failed(
        self,
        result: RuleEvaluation,
        request: ActionRequest,
        error: str,
    ) -> RuleEvaluation:
        logger.error(
            "rule_evaluation_error",
            rule_code=result.rule_code,
            operation=request.operation_name,
            phase=request.phase.value,
            error=error,
        )
        result.evaluation_error = error
        result.message = "Evaluation failed; treated as not violated"
        return result
