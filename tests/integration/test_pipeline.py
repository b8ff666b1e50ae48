"""
Integration tests for the Decision Pipeline.

Tests the full flow: SQLite rule store -> cache -> evaluator -> conflict
resolver -> audit, with a file-backed lock registry in front.
"""

import sqlite3
from pathlib import Path

import pytest

from gatekeep.audit import AuditLogger
from gatekeep.errors import LockViolationError, RuleViolationError, ScopeViolationError
from gatekeep.pipeline import DecisionPipeline
from gatekeep.rules.cache import RuleCache
from gatekeep.rules.evaluator import RuleEvaluator
from gatekeep.schema import (
    ActionRequest,
    AuditOutcome,
    Phase,
    Rule,
    Settings,
    Severity,
    load_rules_from_string,
)
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(temp_dir: Path, lock_config_path: Path) -> Settings:
    """Settings pointing at temp storage and the sample lock config."""
    return Settings(db_path=temp_dir / "pipeline.db", lock_config_path=lock_config_path)


@pytest.fixture
def pipeline(settings: Settings, sample_rules_yaml: str) -> DecisionPipeline:
    """Pipeline with R1, R2 and W1 loaded."""
    with DecisionPipeline.from_settings(settings) as p:
        p.db.import_rules(load_rules_from_string(sample_rules_yaml))
        yield p


def _add_rule(pipeline: DecisionPipeline, rule: Rule) -> None:
    pipeline.db.upsert_rule(rule)
    pipeline.rules.invalidate_all()


def _records(pipeline: DecisionPipeline, session: SessionState):
    return {r.rule_code: r for r in pipeline.db.list_audit_records(session_id=session.session_id)}


# =============================================================================
# Pre Phase
# =============================================================================


class TestPrePhase:
    """Tests for before()."""

    def test_conflicting_blocks_resolve_to_highest_priority(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """delete_file on /etc trips R1 and R2; R1 wins and both are audited."""
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "/etc/passwd"})
        decision = pipeline.before(request, session)

        assert decision.blocked
        assert decision.matched_rule_code == "R1"
        assert decision.phase == Phase.PRE
        assert "No deletes" in decision.message
        assert isinstance(decision.to_error(), RuleViolationError)

        records = _records(pipeline, session)
        assert records["R1"].outcome == AuditOutcome.BLOCKED
        assert records["R2"].outcome == AuditOutcome.BLOCKED
        assert "(resolved to R1)" in records["R2"].reason
        assert records["W1"].outcome == AuditOutcome.PASSED

        (conflict,) = pipeline.db.list_conflicts()
        assert conflict["conflicting_rules"] == ["R1", "R2"]
        assert conflict["resolved_rule"] == "R1"
        assert conflict["strategy_used"] == "highest_priority"

    def test_single_block_no_conflict_logged(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """One block hit needs no resolution log."""
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "notes.txt"})
        decision = pipeline.before(request, session)

        assert decision.matched_rule_code == "R1"
        assert pipeline.db.list_conflicts() == []

    def test_each_rule_audited_once(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """Every evaluated rule produces exactly one record for the phase."""
        request = ActionRequest(operation_name="write", arguments={"file_path": "notes.txt"})
        assert not pipeline.before(request, session).blocked

        records = pipeline.db.list_audit_records(session_id=session.session_id)
        assert sorted(r.rule_code for r in records) == ["R1", "R2", "W1"]

    def test_warn_rule_does_not_block(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """Warn hits are returned as warnings."""
        request = ActionRequest(operation_name="run_terminal_cmd", arguments={"command": "ls"})
        decision = pipeline.before(request, session)

        assert not decision.blocked
        assert decision.warnings == ["W1"]
        assert _records(pipeline, session)["W1"].outcome == AuditOutcome.WARNED

    def test_session_counters(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """Both block hits count as violations."""
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "/etc/hosts"})
        pipeline.before(request, session)
        assert session.stats.violation_count == 2
        assert session.stats.violated_rules == {"R1", "R2"}

    def test_stop_at_first_block(self, db: GatekeepDB, r1_rule: Rule, r2_rule: Rule) -> None:
        """Without conflict collection only the first block hit is evaluated."""
        db.import_rules([r1_rule, r2_rule])
        pipeline = DecisionPipeline(
            rules=RuleCache(db),
            evaluator=RuleEvaluator(store=db),
            audit=AuditLogger(db, conflict_log=db),
            collect_conflicts=False,
        )
        session = SessionState()
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "/etc/passwd"})

        decision = pipeline.before(request, session)
        assert decision.matched_rule_code == "R1"
        assert [r.rule_code for r in db.list_audit_records()] == ["R1"]
        assert db.list_conflicts() == []


# =============================================================================
# Locks and Scope
# =============================================================================


class TestLocksAndScope:
    """Tests for the checks that run before the rules."""

    def test_lock_short_circuits_rules(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """A locked module blocks before any rule is evaluated."""
        request = ActionRequest(operation_name="write", arguments={"file_path": "src/core/engine.py"})
        decision = pipeline.before(request, session)

        assert decision.blocked
        assert decision.matched_rule_code == "lock:core"
        assert "gatekeep locks unlock core" in decision.suggestion
        assert isinstance(decision.to_error(), LockViolationError)
        assert list(_records(pipeline, session)) == ["lock:core"]

    def test_read_of_locked_module_reaches_rules(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """Reads pass the lock check and are judged by the rules."""
        request = ActionRequest(operation_name="read_file", arguments={"target_file": "src/core/engine.py"})
        assert not pipeline.before(request, session).blocked
        assert "R1" in _records(pipeline, session)

    def test_unlock_takes_effect_immediately(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """The next check after an unlock sees the new state."""
        request = ActionRequest(operation_name="write", arguments={"file_path": "src/core/engine.py"})
        assert pipeline.before(request, session).blocked
        pipeline.locks.unlock("core")
        assert not pipeline.before(request, session).blocked

    def test_scope_violation(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """Writes outside the declared scope are refused."""
        assert pipeline.declare_scope(session, "fix app", ["src/app.py"]).allowed

        inside = ActionRequest(operation_name="write", arguments={"file_path": "src/app.py"})
        outside = ActionRequest(operation_name="write", arguments={"file_path": "src/other.py"})
        assert not pipeline.before(inside, session).blocked

        decision = pipeline.before(outside, session)
        assert decision.blocked
        assert decision.matched_rule_code == "scope"
        assert isinstance(decision.to_error(), ScopeViolationError)
        assert session.scope.report()["has_violations"]


# =============================================================================
# Later Phases
# =============================================================================


class TestLaterPhases:
    """Tests for mid, post and response phases."""

    def test_post_phase_never_blocks(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """Post-phase block hits are recorded as warnings."""
        _add_rule(
            pipeline,
            Rule(rule_code="P1", phase_scope="post", detection_type="name", detection_pattern="write"),
        )
        request = ActionRequest(operation_name="write", arguments={"file_path": "notes.txt"})
        decision = pipeline.after(request, session, result={"ok": True})

        assert not decision.blocked
        assert decision.phase == Phase.POST
        assert "P1" in decision.warnings
        record = _records(pipeline, session)["P1"]
        assert record.outcome == AuditOutcome.WARNED
        assert record.reason.startswith("Not enforced after completion")
        assert session.stats.violation_count == 1

    def test_run_executes_allowed_operation(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """run() performs an allowed operation and returns its result."""
        request = ActionRequest(operation_name="write", arguments={"file_path": "notes.txt"})
        outcome = pipeline.run(request, lambda r: "written", session)

        assert outcome.executed
        assert outcome.result == "written"
        assert not outcome.blocked
        assert set(outcome.decisions) == {Phase.PRE, Phase.MID, Phase.POST}

    def test_run_skips_blocked_operation(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """A pre-phase block means the operation never runs."""
        calls = []
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "notes.txt"})
        outcome = pipeline.run(request, calls.append, session)

        assert calls == []
        assert not outcome.executed
        assert outcome.final.matched_rule_code == "R1"

    def test_mid_block_withholds_result(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """A mid-phase block keeps the result from the caller."""
        _add_rule(
            pipeline,
            Rule(rule_code="M1", phase_scope="mid", detection_type="name", detection_pattern="fetch"),
        )
        outcome = pipeline.run(ActionRequest(operation_name="fetch"), lambda r: "secret", session)

        assert outcome.executed
        assert outcome.result is None
        assert outcome.final.matched_rule_code == "M1"
        assert outcome.final.phase == Phase.MID

    def test_completion_claim_needs_verification(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """TEST-FORCE-001 checks recorded verification runs."""
        _add_rule(
            pipeline,
            Rule(rule_code="TEST-FORCE-001", phase_scope="response", severity="HIGH"),
        )
        decision = pipeline.review_response("All tests passed, deployment complete", session)
        assert decision.blocked
        assert decision.matched_rule_code == "TEST-FORCE-001"
        assert decision.severity == Severity.HIGH

        for _ in range(3):
            pipeline.db.record_verification("default", True)
        assert not pipeline.review_response("All tests passed", session).blocked


# =============================================================================
# Fail-Open Behavior
# =============================================================================


class TestFailOpen:
    """Tests for internal faults never blocking."""

    def test_evaluation_error_recorded(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """A broken rule passes and its error is audited."""
        _add_rule(
            pipeline,
            Rule(rule_code="BAD", detection_type="regex", detection_pattern="(unclosed"),
        )
        request = ActionRequest(operation_name="write", arguments={"file_path": "notes.txt"})
        assert not pipeline.before(request, session).blocked

        record = _records(pipeline, session)["BAD"]
        assert record.outcome == AuditOutcome.PASSED
        assert record.evaluation_error
        assert pipeline.db.audit_summary()["evaluation_errors"] == 1

    def test_store_down_allows(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """With the store gone, rules can't block and nothing raises."""
        pipeline.db.close()
        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "notes.txt"})
        decision = pipeline.before(request, session)

        assert not decision.blocked
        assert pipeline.stats(session)["cache"]["misses"] == 1

    def test_flag_rule_exempt_bootstrap(self, pipeline: DecisionPipeline, session: SessionState) -> None:
        """The bootstrap operation passes flag rules it is meant to satisfy."""
        _add_rule(
            pipeline,
            Rule(rule_code="F1", detection_type="flag", detection_pattern="preloader_called"),
        )
        assert not pipeline.before(ActionRequest(operation_name="smart_preloader"), session).blocked
        assert pipeline.before(ActionRequest(operation_name="grep"), session).matched_rule_code == "F1"

        session.set_flag("preloader_called")
        assert not pipeline.before(ActionRequest(operation_name="grep"), session).blocked

    def test_externally_written_rows_do_not_crash(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """Loosely formatted and invalid rule rows never escape the pipeline."""
        conn = sqlite3.connect(str(pipeline.db.db_path))
        conn.executemany(
            "INSERT INTO rules (rule_code, phase_scope, detection_type, detection_pattern, "
            "severity, updated_at) VALUES (?, ?, ?, ?, ?, '2026-01-01T00:00:00+00:00')",
            [
                ("X1", "pre", "name", "read_file", "high"),
                ("X2", "pre", "telepathy", "anything", "LOW"),
            ],
        )
        conn.commit()
        conn.close()
        pipeline.rules.invalidate_all()

        decision = pipeline.before(
            ActionRequest(operation_name="read_file", arguments={"target_file": "notes.txt"}),
            session,
        )

        assert decision.blocked
        assert decision.matched_rule_code == "X1"
        assert decision.severity == Severity.HIGH
        assert "X2" not in _records(pipeline, session)

    def test_raising_custom_resolver_falls_back(
        self, pipeline: DecisionPipeline, session: SessionState
    ) -> None:
        """A faulty custom resolver still yields a blocked Decision."""

        def broken(rules, context):
            raise RuntimeError("resolver bug")

        pipeline.resolver.register_custom("broken", broken)
        for code, conflict_priority, resolution in (("C1", 2, "broken"), ("C2", 9, None)):
            _add_rule(
                pipeline,
                Rule(
                    rule_code=code,
                    detection_pattern=["delete_file"],
                    conflict_group="custom",
                    conflict_strategy="custom",
                    conflict_priority=conflict_priority,
                    custom_resolution=resolution,
                ),
            )

        request = ActionRequest(operation_name="delete_file", arguments={"file_path": "notes.txt"})
        decision = pipeline.before(request, session)

        assert decision.blocked
        assert decision.matched_rule_code == "C2"
