"""
Boundary interfaces for the persistence engine.

The pipeline never talks to a database directly. It needs exactly two
things from persistence:

- RuleSource: enabled rules for a phase, ordered by priority descending
  (SELECT ... WHERE enabled=1 AND phase_scope IN (?, 'all')
  ORDER BY priority DESC)
- AuditSink: append one AuditRecord per call

GatekeepDB implements both on SQLite; any other engine can be plugged in
by implementing these classes.
"""

from abc import ABC, abstractmethod

from gatekeep.schema import AuditRecord, Phase, Rule


class RuleSource(ABC):
    """Read-only query interface for rules."""

    @abstractmethod
    def fetch_rules(self, phase: Phase) -> list[Rule]:
        """
        Fetch enabled rules for a phase, highest priority first.

        Rules scoped to "all" are included for every phase.

        Raises:
            StoreUnavailableError: If the backing store cannot be reached
        """


class AuditSink(ABC):
    """Append-only destination for audit records."""

    @abstractmethod
    def append(self, record: AuditRecord) -> None:
        """
        Append one audit record.

        Raises:
            StorageWriteError: If the record could not be written
        """
