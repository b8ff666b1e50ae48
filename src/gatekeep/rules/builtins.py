"""
Built-in rules for Gatekeep.

Most rules are decided by the generic detectors. A few conditions can't be
expressed in that grammar (session workflow state, verification history
kept in the store), so they are implemented as built-in handlers and
registered under their exact rule code.

Every rule therefore has a kind:

    RuleKind = GenericKind(detection_type) | BuiltinKind(handler_id)

The registry decides the kind; the evaluator dispatches on it.

Usage:
    from gatekeep.rules.builtins import create_default_builtins

    builtins = create_default_builtins()
    kind = builtins.kind_of(rule)
    if isinstance(kind, BuiltinKind):
        verdict = builtins.get(rule.rule_code).check(rule, request, ctx)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator

from gatekeep.locks.paths import normalize_operation_name
from gatekeep.schema import ActionRequest, DetectionType, Rule
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB


@dataclass(frozen=True)
class GenericKind:
    """Rule decided by the generic detector for its detection type."""

    detection_type: DetectionType


@dataclass(frozen=True)
class BuiltinKind:
    """Rule decided by a registered built-in handler."""

    handler_id: str


RuleKind = GenericKind | BuiltinKind


@dataclass
class BuiltinContext:
    """
    What a built-in handler may consult besides the request.

    Attributes:
        session: Flags and last user input of the current session
        store: Verification history (None means no history recorded)
        exempt_operations: Bootstrap operations that workflow rules let through
    """

    session: SessionState
    store: GatekeepDB | None = None
    exempt_operations: frozenset[str] = field(default_factory=frozenset)

    def is_exempt(self, request: ActionRequest) -> bool:
        """Whether the request is one of the exempt bootstrap operations."""
        names = {request.operation_name, normalize_operation_name(request.operation_name)}
        return bool(names & self.exempt_operations)


@dataclass(frozen=True)
class BuiltinVerdict:
    """
    Outcome of a built-in handler.

    message and suggestion are defaults used when the stored rule
    doesn't define its own.
    """

    violated: bool
    message: str | None = None
    suggestion: str | None = None

    @classmethod
    def ok(cls) -> "BuiltinVerdict":
        """Create a not-violated verdict."""
        return cls(violated=False)


class BuiltinRule(ABC):
    """Base class for built-in rule handlers."""

    @property
    @abstractmethod
    def rule_code(self) -> str:
        """Exact rule code this handler decides."""
        ...

    @property
    def handler_id(self) -> str:
        """Stable identifier of the handler."""
        return type(self).__name__

    @abstractmethod
    def check(self, rule: Rule, request: ActionRequest, ctx: BuiltinContext) -> BuiltinVerdict:
        """Decide whether the rule is violated by the request."""
        ...


# =============================================================================
# Built-in Handlers
# =============================================================================


MODIFYING_OPERATIONS = frozenset({
    "run_terminal_cmd",
    "search_replace",
    "write",
    "write_file",
    "edit_file",
    "delete_file",
})


class ForceRephraseRule(BuiltinRule):
    """Modifying operations require the request to have been restated first."""

    rule_code = "FORCE-REPHRASE-001"
    flag = "has_rephrased"

    def check(self, rule: Rule, request: ActionRequest, ctx: BuiltinContext) -> BuiltinVerdict:
        name = normalize_operation_name(request.operation_name)
        if name not in MODIFYING_OPERATIONS or ctx.session.get_flag(self.flag):
            return BuiltinVerdict.ok()
        return BuiltinVerdict(
            violated=True,
            message="Restate the user's request before modifying anything",
            suggestion='Summarize the request first: "I understand you need: 1) ... 2) ..."',
        )


class TeamPreloaderRule(BuiltinRule):
    """Every operation waits until the preloader has run in this session."""

    rule_code = "TEAM-PRELOADER-001"
    flag = "preloader_called"

    def check(self, rule: Rule, request: ActionRequest, ctx: BuiltinContext) -> BuiltinVerdict:
        if ctx.is_exempt(request) or ctx.session.get_flag(self.flag):
            return BuiltinVerdict.ok()
        return BuiltinVerdict(
            violated=True,
            message="The preloader must run before any other operation",
            suggestion="Call the preloader first",
        )


class ReadOverviewRule(BuiltinRule):
    """System-wide questions require the system overview to be read first."""

    rule_code = "READ-OVERVIEW-001"
    flag = "has_read_overview"
    keywords = (
        "system",
        "architecture",
        "overview",
        "interceptor",
        "overall",
        "analyze",
        "analyse",
        "inspect",
    )

    def check(self, rule: Rule, request: ActionRequest, ctx: BuiltinContext) -> BuiltinVerdict:
        if ctx.is_exempt(request) or ctx.session.get_flag(self.flag):
            return BuiltinVerdict.ok()

        args = request.arguments
        text = str(
            args.get("user_input") or args.get("message") or ctx.session.last_user_input or ""
        ).lower()
        if not any(keyword in text for keyword in self.keywords):
            return BuiltinVerdict.ok()

        return BuiltinVerdict(
            violated=True,
            message="System-level request detected: read the system overview first",
            suggestion="Read the system overview document before continuing",
        )


class TestForceRule(BuiltinRule):
    """
    Completion claims need recorded evidence.

    A response that claims tests passed or a deployment completed is
    violated unless the store holds at least `required_successes`
    consecutive successful verification runs for the scenario. The
    scenario comes from the "test_scenario" argument, then from the rule's
    pattern, then defaults to "default".
    """

    __test__ = False

    rule_code = "TEST-FORCE-001"
    required_successes = 3
    completion_phrases = (
        "tests passed",
        "all tests pass",
        "test passed",
        "testing complete",
        "deployment complete",
        "deployed successfully",
        "verified",
    )

    def check(self, rule: Rule, request: ActionRequest, ctx: BuiltinContext) -> BuiltinVerdict:
        args = request.arguments
        text = str(
            args.get("text") or args.get("response") or request.response_text or ""
        ).lower()
        if not any(phrase in text for phrase in self.completion_phrases):
            return BuiltinVerdict.ok()

        pattern: dict[str, Any] = (
            rule.detection_pattern if isinstance(rule.detection_pattern, dict) else {}
        )
        scenario = args.get("test_scenario") or pattern.get("scenario") or "default"
        required = int(pattern.get("required_successes", self.required_successes))
        successes = ctx.store.consecutive_successes(scenario) if ctx.store else 0
        if successes >= required:
            return BuiltinVerdict.ok()

        return BuiltinVerdict(
            violated=True,
            message=(
                f"Completion claimed without verification: {successes}/{required} "
                f"consecutive successful runs recorded for '{scenario}'"
            ),
            suggestion=f"Run and record the '{scenario}' verification until it passes "
            f"{required} times in a row",
        )


# =============================================================================
# Registry
# =============================================================================


class BuiltinRegistry:
    """
    Registry of built-in handlers keyed by exact rule code.

    Attributes:
        _handlers: Internal mapping of rule codes to handlers
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._handlers: dict[str, BuiltinRule] = {}

    def register(self, handler: BuiltinRule) -> None:
        """
        Register a handler under its rule code.

        Re-registering a rule code replaces the previous handler.

        Raises:
            ValueError: If the handler has an empty rule code
        """
        if not handler.rule_code:
            msg = "Built-in handler must have a non-empty rule code"
            raise ValueError(msg)
        self._handlers[handler.rule_code] = handler

    def get(self, rule_code: str) -> BuiltinRule | None:
        """Look up the handler for a rule code."""
        return self._handlers.get(rule_code)

    def unregister(self, rule_code: str) -> bool:
        """Remove a handler; returns False if none was registered."""
        return self._handlers.pop(rule_code, None) is not None

    def kind_of(self, rule: Rule) -> RuleKind:
        """Classify a rule as built-in or generic."""
        handler = self._handlers.get(rule.rule_code)
        if handler is not None:
            return BuiltinKind(handler_id=handler.handler_id)
        return GenericKind(detection_type=rule.detection_type)

    def list_codes(self) -> list[str]:
        """Registered rule codes in sorted order."""
        return sorted(self._handlers)

    def __len__(self) -> int:
        """Return the number of registered handlers."""
        return len(self._handlers)

    def __iter__(self) -> Iterator[BuiltinRule]:
        """Iterate over all registered handlers."""
        return iter(self._handlers.values())

    def __contains__(self, rule_code: str) -> bool:
        """Check if a rule code has a handler using 'in' operator."""
        return rule_code in self._handlers


def create_default_builtins() -> BuiltinRegistry:
    """Create a registry holding the standard built-in handlers."""
    registry = BuiltinRegistry()
    registry.register(ForceRephraseRule())
    registry.register(TeamPreloaderRule())
    registry.register(ReadOverviewRule())
    registry.register(TestForceRule())
    return registry
