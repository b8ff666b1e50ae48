"""
Unit tests for the modification scope guard and session state.

Tests cover:
- Declaring scopes and the max_files limit
- Counting modifications and recording violations
- Session flags, counters and reset
"""

from gatekeep.schema import OperationKind
from gatekeep.scope import ModificationScope
from gatekeep.session import SessionState


class TestModificationScope:
    """Tests for ModificationScope."""

    def test_inactive_allows_everything(self) -> None:
        """Without a declared scope nothing is refused."""
        scope = ModificationScope()
        assert not scope.active
        assert scope.check("anything.py", OperationKind.WRITE, "write").allowed

    def test_declare_too_many_files(self) -> None:
        """A scope wider than max_files is refused."""
        scope = ModificationScope()
        check = scope.declare("big task", [f"f{i}.py" for i in range(6)], max_files=5)
        assert not check.allowed
        assert check.message == "Task plans to modify 6 files (max 5)"
        assert not scope.active

    def test_in_scope_modification(self) -> None:
        """Declared files may be modified and are counted."""
        scope = ModificationScope()
        scope.declare("fix parser", ["src/parser.py"], max_files=5)

        assert scope.check("./src/parser.py", OperationKind.WRITE, "edit_file").allowed
        assert scope.check("src/parser.py", OperationKind.WRITE, "edit_file").allowed
        assert scope.modified == {"src/parser.py": 2}

    def test_out_of_scope_modification(self) -> None:
        """Other files are refused and recorded."""
        scope = ModificationScope()
        scope.declare("fix parser", ["src/parser.py"], max_files=5)

        check = scope.check("src/lexer.py", OperationKind.DELETE, "delete_file")
        assert not check.allowed
        assert "src/lexer.py" in check.message
        assert check.recommendation

        report = scope.report()
        assert report["has_violations"]
        assert report["violations"][0]["operation"] == "delete_file"
        assert report["task"] == "fix parser"

    def test_reads_not_counted(self) -> None:
        """Reads are always allowed and not counted."""
        scope = ModificationScope()
        scope.declare("fix parser", ["src/parser.py"], max_files=5)
        assert scope.check("src/lexer.py", OperationKind.READ, "read_file").allowed
        assert scope.modified == {}

    def test_clear(self) -> None:
        """clear drops the scope."""
        scope = ModificationScope()
        scope.declare("task", ["a.py"], max_files=5)
        scope.clear()
        assert not scope.active
        assert scope.report()["started_at"] is None


class TestSessionState:
    """Tests for SessionState."""

    def test_flags(self) -> None:
        """Flags default to None and can be set."""
        session = SessionState()
        assert session.get_flag("has_rephrased") is None
        session.set_flag("has_rephrased")
        assert session.get_flag("has_rephrased") is True

    def test_trigger_counting(self) -> None:
        """Triggers and violations are counted separately."""
        session = SessionState()
        session.record_trigger("W1", blocked=False)
        session.record_trigger("R1", blocked=True)
        session.record_trigger("R1", blocked=True)

        stats = session.stats.to_dict()
        assert stats["trigger_count"] == 3
        assert stats["violation_count"] == 2
        assert stats["triggered_rules"] == ["R1", "W1"]
        assert stats["violated_rules"] == ["R1"]

    def test_sessions_are_independent(self) -> None:
        """Two sessions never share flags or ids."""
        a, b = SessionState(), SessionState()
        a.set_flag("preloader_called")
        assert b.get_flag("preloader_called") is None
        assert a.session_id != b.session_id

    def test_reset(self) -> None:
        """reset clears flags, counters, input and scope."""
        session = SessionState(last_user_input="hello")
        session.set_flag("x")
        session.record_trigger("R1", blocked=True)
        session.scope.declare("task", ["a.py"], max_files=5)

        session.reset()
        assert session.flags == {}
        assert session.stats.trigger_count == 0
        assert session.last_user_input == ""
        assert not session.scope.active
