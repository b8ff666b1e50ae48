"""
SQLite storage for Gatekeep.

This module provides persistent storage for rules, audit records,
conflict resolution logs and verification runs in a single SQLite file.

Design Principles:
    - Append-only audit: audit records and conflict logs are never modified
    - Immutable identity: a rule's rule_code never changes once stored
    - Thread-safe: one connection guarded by a lock, shared across requests

Tables:
    - rules: Rule definitions (detection_pattern stored as JSON)
    - audit_records: One row per rule evaluation
    - conflict_logs: One row per conflict resolution of 2+ rules
    - verification_runs: Recorded verification runs per scenario
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Generator

import structlog
from pydantic import ValidationError

from gatekeep.errors import StorageReadError, StorageWriteError, StoreUnavailableError
from gatekeep.schema import (
    AuditOutcome,
    AuditRecord,
    ConflictResolution,
    Phase,
    Rule,
    ViolationAction,
)
from gatekeep.store.base import AuditSink, RuleSource

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rules (
    rule_code TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    phase_scope TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 0,
    detection_type TEXT NOT NULL,
    detection_pattern TEXT,
    action_on_violation TEXT NOT NULL DEFAULT 'block',
    severity TEXT NOT NULL DEFAULT 'MEDIUM',
    conflict_group TEXT NOT NULL DEFAULT 'default',
    conflict_strategy TEXT NOT NULL DEFAULT 'override',
    conflict_priority INTEGER NOT NULL DEFAULT 5,
    message TEXT,
    suggestion TEXT,
    custom_resolution TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_code TEXT NOT NULL,
    operation_name TEXT NOT NULL,
    phase TEXT NOT NULL,
    outcome TEXT NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    violated INTEGER NOT NULL DEFAULT 0,
    action TEXT,
    evaluation_error TEXT,
    session_id TEXT,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conflict_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    conflict_count INTEGER NOT NULL,
    conflicting_rules TEXT NOT NULL,
    strategy_used TEXT NOT NULL,
    resolved_rule TEXT,
    context TEXT
);

CREATE TABLE IF NOT EXISTS verification_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scenario TEXT NOT NULL,
    success INTEGER NOT NULL,
    note TEXT,
    recorded_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rules_phase ON rules(phase_scope, enabled);
CREATE INDEX IF NOT EXISTS idx_audit_rule_code ON audit_records(rule_code);
CREATE INDEX IF NOT EXISTS idx_audit_session ON audit_records(session_id);
CREATE INDEX IF NOT EXISTS idx_verification_scenario ON verification_runs(scenario);
"""

_RULE_COLUMNS = (
    "rule_code",
    "name",
    "phase_scope",
    "enabled",
    "priority",
    "detection_type",
    "detection_pattern",
    "action_on_violation",
    "severity",
    "conflict_group",
    "conflict_strategy",
    "conflict_priority",
    "message",
    "suggestion",
    "custom_resolution",
    "updated_at",
)


def now_iso() -> str:
    """Get current UTC time in ISO format."""
    return datetime.now(UTC).isoformat()


class GatekeepDB(RuleSource, AuditSink):
    """
    SQLite database for Gatekeep storage.

    Usage:
        db = GatekeepDB("gatekeep.db")
        db.upsert_rule(rule)
        rules = db.fetch_rules(Phase.PRE)
        db.append(record)
        db.close()

    Or use as context manager:
        with GatekeepDB("gatekeep.db") as db:
            ...
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file.
                     Will be created if it doesn't exist.
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._connect()
        self._init_schema()

    def _connect(self) -> None:
        """Establish database connection."""
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
        except sqlite3.Error as e:
            raise StoreUnavailableError(
                db_path=str(self.db_path),
                operation="connect",
                underlying_error=str(e),
            ) from e

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            with self._lock:
                cursor = self._conn.executescript(CREATE_TABLES_SQL)
                cursor.close()

                cursor = self._conn.execute(
                    "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
                )
                if cursor.fetchone() is None:
                    self._conn.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now_iso()),
                    )
                self._conn.commit()
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="init_schema",
                underlying_error=str(e),
            ) from e

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Context manager for database transactions."""
        with self._lock:
            if self._conn is None:
                raise StoreUnavailableError(
                    db_path=str(self.db_path),
                    operation="transaction",
                    underlying_error="database connection is closed",
                )
            try:
                yield
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "GatekeepDB":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Rule Operations
    # =========================================================================

    def fetch_rules(self, phase: Phase) -> list[Rule]:
        """Fetch enabled rules for a phase (plus "all"), highest priority first."""
        try:
            with self._lock:
                if self._conn is None:
                    raise sqlite3.ProgrammingError("database connection is closed")
                cursor = self._conn.execute(
                    """
                    SELECT * FROM rules
                    WHERE enabled = 1 AND phase_scope IN (?, 'all')
                    ORDER BY priority DESC, rule_code
                    """,
                    (phase.value,),
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailableError(
                db_path=str(self.db_path),
                operation="fetch_rules",
                underlying_error=str(e),
            ) from e

        return _rows_to_rules(rows)

    def upsert_rule(self, rule: Rule) -> None:
        """
        Insert a rule, or update every field but its code if it exists.

        Args:
            rule: The rule to store
        """
        values = _rule_to_row(rule)
        assignments = ", ".join(f"{col} = excluded.{col}" for col in _RULE_COLUMNS[1:])
        try:
            with self.transaction():
                self._conn.execute(
                    f"""
                    INSERT INTO rules ({', '.join(_RULE_COLUMNS)})
                    VALUES ({', '.join('?' for _ in _RULE_COLUMNS)})
                    ON CONFLICT(rule_code) DO UPDATE SET {assignments}
                    """,
                    values,
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="upsert_rule",
                underlying_error=str(e),
            ) from e

    def import_rules(self, rules: list[Rule]) -> int:
        """Upsert several rules in one transaction; returns the count."""
        assignments = ", ".join(f"{col} = excluded.{col}" for col in _RULE_COLUMNS[1:])
        try:
            with self.transaction():
                self._conn.executemany(
                    f"""
                    INSERT INTO rules ({', '.join(_RULE_COLUMNS)})
                    VALUES ({', '.join('?' for _ in _RULE_COLUMNS)})
                    ON CONFLICT(rule_code) DO UPDATE SET {assignments}
                    """,
                    [_rule_to_row(rule) for rule in rules],
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="import_rules",
                underlying_error=str(e),
            ) from e
        return len(rules)

    def set_rule_enabled(self, rule_code: str, enabled: bool) -> bool:
        """Enable or disable a rule; returns False if it doesn't exist."""
        try:
            with self.transaction():
                cursor = self._conn.execute(
                    "UPDATE rules SET enabled = ?, updated_at = ? WHERE rule_code = ?",
                    (int(enabled), now_iso(), rule_code),
                )
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="set_rule_enabled",
                underlying_error=str(e),
            ) from e

    def get_rule(self, rule_code: str) -> Rule | None:
        """Get a rule by code (enabled or not)."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT * FROM rules WHERE rule_code = ?",
                    (rule_code,),
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="get_rule",
                underlying_error=str(e),
            ) from e
        return _row_to_rule(row) if row else None

    def list_rules(self, include_disabled: bool = True) -> list[Rule]:
        """List rules, highest priority first."""
        sql = "SELECT * FROM rules"
        if not include_disabled:
            sql += " WHERE enabled = 1"
        sql += " ORDER BY priority DESC, rule_code"
        try:
            with self._lock:
                rows = self._conn.execute(sql).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_rules",
                underlying_error=str(e),
            ) from e
        return _rows_to_rules(rows)

    # =========================================================================
    # Audit Operations
    # =========================================================================

    def append(self, record: AuditRecord) -> None:
        """Append one audit record."""
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO audit_records (
                        rule_code, operation_name, phase, outcome, reason,
                        violated, action, evaluation_error, session_id, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.rule_code,
                        record.operation_name,
                        record.phase.value,
                        record.outcome.value,
                        record.reason,
                        int(record.violated),
                        record.action.value if record.action else None,
                        record.evaluation_error,
                        record.session_id,
                        record.timestamp.isoformat(),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="append_audit_record",
                underlying_error=str(e),
            ) from e

    def list_audit_records(
        self,
        limit: int = 100,
        rule_code: str | None = None,
        session_id: str | None = None,
    ) -> list[AuditRecord]:
        """
        List audit records, most recent first.

        Args:
            limit: Maximum number of records to return
            rule_code: Only records for this rule
            session_id: Only records for this session
        """
        clauses = []
        params: list[Any] = []
        if rule_code:
            clauses.append("rule_code = ?")
            params.append(rule_code)
        if session_id:
            clauses.append("session_id = ?")
            params.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)

        try:
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT * FROM audit_records {where} ORDER BY id DESC LIMIT ?",
                    params,
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_audit_records",
                underlying_error=str(e),
            ) from e

        return [
            AuditRecord(
                rule_code=row["rule_code"],
                operation_name=row["operation_name"],
                phase=Phase(row["phase"]),
                outcome=AuditOutcome(row["outcome"]),
                reason=row["reason"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                violated=bool(row["violated"]),
                action=ViolationAction(row["action"]) if row["action"] else None,
                evaluation_error=row["evaluation_error"],
                session_id=row["session_id"],
            )
            for row in rows
        ]

    def audit_summary(self) -> dict[str, int]:
        """Count audit records by outcome, plus evaluation errors."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT outcome, COUNT(*) AS n FROM audit_records GROUP BY outcome"
                ).fetchall()
                errors = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM audit_records WHERE evaluation_error IS NOT NULL"
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="audit_summary",
                underlying_error=str(e),
            ) from e

        summary = {outcome.value: 0 for outcome in AuditOutcome}
        for row in rows:
            summary[row["outcome"]] = row["n"]
        summary["evaluation_errors"] = errors["n"]
        return summary

    # =========================================================================
    # Conflict Log Operations
    # =========================================================================

    def record_conflict(
        self,
        resolution: ConflictResolution,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Record one conflict resolution."""
        resolved = resolution.resolved_rule.rule_code if resolution.resolved_rule else None
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO conflict_logs (
                        timestamp, conflict_count, conflicting_rules,
                        strategy_used, resolved_rule, context
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        now_iso(),
                        len(resolution.conflicting_codes),
                        json.dumps(resolution.conflicting_codes),
                        resolution.strategy_used,
                        resolved,
                        json.dumps(context or {}, default=str),
                    ),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_conflict",
                underlying_error=str(e),
            ) from e

    def list_conflicts(self, limit: int = 100) -> list[dict[str, Any]]:
        """List conflict resolutions, most recent first."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT * FROM conflict_logs ORDER BY id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="list_conflicts",
                underlying_error=str(e),
            ) from e

        return [
            {
                "timestamp": row["timestamp"],
                "conflict_count": row["conflict_count"],
                "conflicting_rules": json.loads(row["conflicting_rules"]),
                "strategy_used": row["strategy_used"],
                "resolved_rule": row["resolved_rule"],
                "context": json.loads(row["context"]) if row["context"] else {},
            }
            for row in rows
        ]

    # =========================================================================
    # Verification Operations
    # =========================================================================

    def record_verification(self, scenario: str, success: bool, note: str | None = None) -> None:
        """Record one verification run for a scenario."""
        try:
            with self.transaction():
                self._conn.execute(
                    """
                    INSERT INTO verification_runs (scenario, success, note, recorded_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (scenario, int(success), note, now_iso()),
                )
        except sqlite3.Error as e:
            raise StorageWriteError(
                operation="record_verification",
                underlying_error=str(e),
            ) from e

    def consecutive_successes(self, scenario: str) -> int:
        """Count successful runs for a scenario since its most recent failure."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT success FROM verification_runs WHERE scenario = ? ORDER BY id DESC",
                    (scenario,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageReadError(
                operation="consecutive_successes",
                underlying_error=str(e),
            ) from e

        count = 0
        for row in rows:
            if not row["success"]:
                break
            count += 1
        return count


def _rule_to_row(rule: Rule) -> tuple[Any, ...]:
    return (
        rule.rule_code,
        rule.name,
        rule.phase_scope.value,
        int(rule.enabled),
        rule.priority,
        rule.detection_type.value,
        json.dumps(rule.detection_pattern) if rule.detection_pattern is not None else None,
        rule.action_on_violation.value,
        rule.severity.value,
        rule.conflict_group,
        rule.conflict_strategy.value,
        rule.conflict_priority,
        rule.message,
        rule.suggestion,
        rule.custom_resolution,
        now_iso(),
    )


def _decode_pattern(pattern: str | None) -> Any:
    if pattern is None:
        return None
    try:
        return json.loads(pattern)
    except json.JSONDecodeError:
        # Rows written outside gatekeep may hold a bare string
        return pattern


def _rows_to_rules(rows: list[sqlite3.Row]) -> list[Rule]:
    """Convert rows, skipping (and logging) rows that don't form a valid Rule."""
    rules = []
    for row in rows:
        try:
            rules.append(_row_to_rule(row))
        except (ValidationError, ValueError) as e:
            logger.warning("rule_row_invalid", rule_code=row["rule_code"], error=str(e))
    return rules


def _row_to_rule(row: sqlite3.Row) -> Rule:
    """Build a Rule from a stored row; enum values are normalized by the model."""
    return Rule(
        rule_code=row["rule_code"],
        name=row["name"],
        phase_scope=row["phase_scope"],
        enabled=bool(row["enabled"]),
        priority=row["priority"],
        detection_type=row["detection_type"],
        detection_pattern=_decode_pattern(row["detection_pattern"]),
        action_on_violation=row["action_on_violation"],
        severity=row["severity"],
        conflict_group=row["conflict_group"],
        conflict_strategy=row["conflict_strategy"],
        conflict_priority=row["conflict_priority"],
        message=row["message"],
        suggestion=row["suggestion"],
        custom_resolution=row["custom_resolution"],
    )
