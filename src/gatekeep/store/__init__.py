"""
Storage module for Gatekeep.

This module provides SQLite-based persistence for rules and for everything
the pipeline records about its decisions.

Tables:
    - rules: Rule definitions, read by the rule cache
    - audit_records: One row per rule evaluation (append-only)
    - conflict_logs: One row per conflict resolution (append-only)
    - verification_runs: Verification evidence for built-in rules

The pipeline depends only on the RuleSource and AuditSink interfaces;
GatekeepDB is the SQLite implementation of both.
"""

from gatekeep.store.base import AuditSink, RuleSource
from gatekeep.store.db import GatekeepDB

__all__ = [
    "AuditSink",
    "GatekeepDB",
    "RuleSource",
]
