"""
Decision Pipeline for Gatekeep.

The pipeline is the single orchestration layer between a calling agent and
the operations it wants to perform. Transports (CLI, HTTP, stdio) adapt
their input to an ActionRequest and call into this one implementation.

Execution Flow:
    1. Lock check: a blocked lock decision short-circuits everything
    2. Scope check: writes outside a declared task scope are refused
    3. Pre-phase rules: evaluated in priority order
    4. The caller performs the operation
    5. Mid-phase rules: may still withhold the result
    6. Post-phase rules: never block, only audit and statistics
    7. Several block hits in one phase go through the Conflict Resolver
    8. Every evaluated rule is audited exactly once per phase

Design Principles:
    - Fail-open on internal faults: store, evaluation and audit failures
      never block an operation or crash the pipeline
    - Expected violations are normal output: a blocking Decision carries a
      human-readable reason and a remediation hint
    - No shared per-request state: everything session-scoped lives in the
      SessionState passed in
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from gatekeep.audit import AuditLogger
from gatekeep.conflict.resolver import ConflictResolver
from gatekeep.locks.paths import classify_operation, extract_target
from gatekeep.locks.registry import LockRegistry
from gatekeep.logging import bind_context
from gatekeep.rules.cache import RuleCache
from gatekeep.rules.evaluator import RuleEvaluation, RuleEvaluator
from gatekeep.schema import (
    ActionRequest,
    AuditOutcome,
    Decision,
    LockDecision,
    Phase,
    Settings,
)
from gatekeep.scope import ScopeCheck
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB


@dataclass
class PipelineResult:
    """
    Result of running one operation through every phase.

    Attributes:
        request: The original request
        executed: Whether the operation was performed
        result: The operation's result (None when blocked or withheld)
        decisions: One Decision per phase that was evaluated
    """

    request: ActionRequest
    executed: bool = False
    result: Any = None
    decisions: dict[Phase, Decision] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        """Whether any phase blocked the operation or withheld its result."""
        return any(d.blocked for d in self.decisions.values())

    @property
    def final(self) -> Decision:
        """The blocking decision if there is one, else the last decision made."""
        for decision in self.decisions.values():
            if decision.blocked:
                return decision
        return list(self.decisions.values())[-1]


class DecisionPipeline:
    """
    Orchestrates lock, scope and rule checks around one operation.

    Usage:
        with DecisionPipeline.from_settings(settings) as pipeline:
            session = SessionState()
            decision = pipeline.before(request, session)
            if not decision.blocked:
                result = perform(request)
                pipeline.after(request, session, result)

        # or all phases at once
        outcome = pipeline.run(request, perform, session)
    """

    def __init__(
        self,
        rules: RuleCache,
        evaluator: RuleEvaluator,
        resolver: ConflictResolver | None = None,
        locks: LockRegistry | None = None,
        audit: AuditLogger | None = None,
        collect_conflicts: bool = True,
        max_scope_files: int = 5,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            rules: Rule cache to load phase rules from
            evaluator: Evaluates one rule against one request
            resolver: Conflict resolver (a default one if omitted)
            locks: Lock registry (no lock checks if omitted)
            audit: Audit logger (no auditing if omitted)
            collect_conflicts: Evaluate every rule of a blocking phase and
                resolve multiple block hits; otherwise stop at the first
            max_scope_files: Largest modification scope a task may declare
        """
        self.rules = rules
        self.evaluator = evaluator
        self.resolver = resolver or ConflictResolver()
        self.locks = locks
        self.audit = audit or AuditLogger(sink=None)
        self.collect_conflicts = collect_conflicts
        self.max_scope_files = max_scope_files
        self._db: GatekeepDB | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DecisionPipeline":
        """Build a pipeline with SQLite storage and a file-backed lock registry."""
        db = GatekeepDB(settings.db_path)
        pipeline = cls(
            rules=RuleCache(db, ttl_seconds=settings.cache_ttl_seconds),
            evaluator=RuleEvaluator(store=db, exempt_operations=settings.exempt_operations),
            locks=LockRegistry(Path(settings.lock_config_path)),
            audit=AuditLogger(sink=db, mode=settings.audit_mode, conflict_log=db),
            collect_conflicts=settings.collect_conflicts,
            max_scope_files=settings.max_scope_files,
        )
        pipeline._db = db
        return pipeline

    @property
    def db(self) -> GatekeepDB | None:
        """The database opened by from_settings, if any."""
        return self._db

    def close(self) -> None:
        """Close the database opened by from_settings."""
        if self._db is not None:
            self._db.close()
            self._db = None

    def __enter__(self) -> "DecisionPipeline":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Phases
    # =========================================================================

    def check_lock(self, request: ActionRequest) -> LockDecision:
        """Check the request against the lock registry."""
        if self.locks is None:
            return LockDecision.allow(message="No lock registry")
        return self.locks.check_operation(request.operation_name, request.arguments)

    def declare_scope(self, session: SessionState, description: str, files: list[str]) -> ScopeCheck:
        """Declare the files the session's current task may modify."""
        return session.scope.declare(description, files, self.max_scope_files)

    def before(self, request: ActionRequest, session: SessionState) -> Decision:
        """
        Decide whether an operation may start.

        Lock check, then scope check, then pre-phase rules.
        """
        request = request.for_phase(Phase.PRE)
        log = bind_context(session_id=session.session_id, operation=request.operation_name)

        lock = self.check_lock(request)
        if lock.blocked:
            code = f"lock:{lock.module_id}"
            session.record_trigger(code, blocked=True)
            self.audit.record_lock(lock, request, session.session_id)
            log.info("operation_blocked", phase="pre", rule_code=code, path=lock.matched_path)
            return Decision(
                blocked=True,
                phase=Phase.PRE,
                matched_rule_code=code,
                message=lock.message,
                suggestion=lock.feedback,
                lock=lock,
            )

        scope_decision = self._check_scope(request, session)
        if scope_decision is not None:
            log.info("operation_blocked", phase="pre", rule_code="scope")
            return scope_decision

        return self.evaluate_phase(request, session)

    def during(self, request: ActionRequest, session: SessionState, partial_result: Any = None) -> Decision:
        """Evaluate mid-phase rules against a partial result; may block."""
        return self.evaluate_phase(request.for_phase(Phase.MID, result_snapshot=partial_result), session)

    def after(self, request: ActionRequest, session: SessionState, result: Any = None) -> Decision:
        """Evaluate post-phase rules; never blocks the completed operation."""
        return self.evaluate_phase(
            request.for_phase(Phase.POST, result_snapshot=result),
            session,
            enforce=False,
        )

    def review_response(
        self,
        response_text: str,
        session: SessionState,
        operation_name: str = "response",
    ) -> Decision:
        """Evaluate response-phase rules against text produced for the user."""
        request = ActionRequest(
            operation_name=operation_name,
            phase=Phase.RESPONSE,
            response_text=response_text,
        )
        return self.evaluate_phase(request, session)

    def run(
        self,
        request: ActionRequest,
        execute: Callable[[ActionRequest], Any],
        session: SessionState,
    ) -> PipelineResult:
        """
        Run an operation through every phase.

        The operation is performed only if the pre phase allows it. A
        blocking mid-phase decision withholds the result. Exceptions raised
        by execute propagate to the caller.
        """
        outcome = PipelineResult(request=request)

        pre = self.before(request, session)
        outcome.decisions[Phase.PRE] = pre
        if pre.blocked:
            return outcome

        result = execute(request)
        outcome.executed = True

        mid = self.during(request, session, result)
        outcome.decisions[Phase.MID] = mid
        outcome.decisions[Phase.POST] = self.after(request, session, result)

        if not mid.blocked:
            outcome.result = result
        return outcome

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate_phase(
        self,
        request: ActionRequest,
        session: SessionState,
        enforce: bool = True,
    ) -> Decision:
        """
        Evaluate every rule of the request's phase and produce one Decision.

        Args:
            request: Request carrying the phase to evaluate
            session: Session whose flags and counters are used
            enforce: False for the post phase: block hits are recorded but
                the decision never blocks
        """
        phase = request.phase
        log = bind_context(
            session_id=session.session_id,
            operation=request.operation_name,
            phase=phase.value,
        )

        evaluations: list[RuleEvaluation] = []
        fired: list[RuleEvaluation] = []
        for rule in self.rules.load_rules(phase):
            evaluation = self.evaluator.evaluate(rule, request, session)
            evaluations.append(evaluation)
            if evaluation.violated:
                session.record_trigger(rule.rule_code, blocked=evaluation.blocked)
            if evaluation.blocked:
                fired.append(evaluation)
                if enforce and not self.collect_conflicts:
                    break

        warnings = [e.rule_code for e in evaluations if e.violated and not e.blocked]

        if not enforce or not fired:
            for evaluation in evaluations:
                if evaluation.blocked:
                    self.audit.record(
                        evaluation,
                        request,
                        session.session_id,
                        outcome=AuditOutcome.WARNED,
                        reason=f"Not enforced after completion: {evaluation.message}",
                    )
                else:
                    self.audit.record(evaluation, request, session.session_id)
            warnings += [e.rule_code for e in fired]
            if fired:
                log.warning("post_phase_violation", rules=[e.rule_code for e in fired])
            return Decision.allow(phase, warnings=warnings)

        resolution = self.resolver.resolve(
            [e.rule for e in fired],
            context={
                "operation_name": request.operation_name,
                "phase": phase.value,
                "session_id": session.session_id,
            },
        )
        if len(fired) > 1:
            self.audit.record_conflict(
                resolution,
                context={"operation_name": request.operation_name, "phase": phase.value},
            )

        winner = resolution.resolved_rule
        winning = next((e for e in fired if e.rule_code == winner.rule_code), None)
        message = winning.message if winning else winner.render_message()
        suggestion = winning.suggestion if winning else winner.suggestion

        for evaluation in evaluations:
            if evaluation.blocked and evaluation is not winning and len(fired) > 1:
                self.audit.record(
                    evaluation,
                    request,
                    session.session_id,
                    reason=f"{evaluation.message} (resolved to {winner.rule_code})",
                )
            else:
                self.audit.record(evaluation, request, session.session_id)

        log.info(
            "operation_blocked",
            rule_code=winner.rule_code,
            strategy=resolution.strategy_used,
            fired=[e.rule_code for e in fired],
        )
        return Decision(
            blocked=True,
            phase=phase,
            matched_rule_code=winner.rule_code,
            message=message,
            suggestion=suggestion,
            severity=winner.severity,
            warnings=warnings,
        )

    def _check_scope(self, request: ActionRequest, session: SessionState) -> Decision | None:
        if not session.scope.active:
            return None
        target = extract_target(request.arguments)
        if target is None:
            return None

        kind = target.kind or classify_operation(request.operation_name)
        check = session.scope.check(target.path, kind, request.operation_name)
        if check.allowed:
            return None

        session.record_trigger("scope", blocked=True)
        self.audit.record_scope(check.message, request, session.session_id)
        return Decision(
            blocked=True,
            phase=Phase.PRE,
            matched_rule_code="scope",
            message=check.message,
            suggestion=check.recommendation,
        )

    def stats(self, session: SessionState | None = None) -> dict[str, Any]:
        """Counters from the cache, the audit logger and (optionally) a session."""
        stats: dict[str, Any] = {
            "cache": self.rules.stats(),
            "audit": self.audit.stats(),
        }
        if session is not None:
            stats["session"] = session.stats.to_dict()
        return stats
