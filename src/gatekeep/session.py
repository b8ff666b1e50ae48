"""
Per-session state threaded through the Decision Pipeline.

A SessionState replaces process-wide flags and counters: each conversation
or agent session owns one, so statistics and "has step X happened yet"
flags never leak between sessions.
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from gatekeep.scope import ModificationScope


@dataclass
class SessionStats:
    """
    Trigger/violation counters for one session.

    A trigger is any rule whose condition held (block, warn or log).
    A violation is a rule that fired with the block action, including
    post-phase hits that could no longer stop the operation.
    """

    trigger_count: int = 0
    violation_count: int = 0
    triggered_rules: set[str] = field(default_factory=set)
    violated_rules: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "trigger_count": self.trigger_count,
            "violation_count": self.violation_count,
            "triggered_rules": sorted(self.triggered_rules),
            "violated_rules": sorted(self.violated_rules),
        }


@dataclass
class SessionState:
    """
    Mutable state for one session.

    Attributes:
        session_id: Identifier recorded on audit records
        flags: Named shared state consulted by flag rules and built-ins
        stats: Trigger/violation counters
        last_user_input: Most recent user message, for keyword built-ins
        scope: Declared modification scope of the current task
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    flags: dict[str, Any] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)
    last_user_input: str = ""
    scope: ModificationScope = field(default_factory=ModificationScope)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def set_flag(self, name: str, value: Any = True) -> None:
        """Set a named flag."""
        with self._lock:
            self.flags[name] = value

    def get_flag(self, name: str, default: Any = None) -> Any:
        """Read a named flag."""
        return self.flags.get(name, default)

    def record_trigger(self, rule_code: str, blocked: bool) -> None:
        """Count a rule hit; blocked hits also count as violations."""
        with self._lock:
            self.stats.trigger_count += 1
            self.stats.triggered_rules.add(rule_code)
            if blocked:
                self.stats.violation_count += 1
                self.stats.violated_rules.add(rule_code)

    def reset(self) -> None:
        """Clear flags and counters (start of a new conversation)."""
        with self._lock:
            self.flags.clear()
            self.stats = SessionStats()
            self.last_user_input = ""
        self.scope.clear()
