"""
Conflict Resolver for Gatekeep.

When several rules fire with the block action for one request in one
phase, the resolver reduces them to a single winning rule.

How it works:
    1. Zero or one fired rule: returned unchanged ("no_conflict")
    2. Rules are partitioned by conflict_group (first-seen order)
    3. Each group is resolved with its strategy; when members disagree,
       the member with the highest conflict_priority picks the strategy
    4. With several groups, the winners are sorted by conflict_priority
       (descending, stable) and the first one wins overall

Strategies:
    - override: the last rule in the group wins
    - merge: a synthesized rule combining every member
    - highest_priority: max conflict_priority, ties to the earliest
    - first_match: the first rule in the group
    - custom: a registered resolver or a small expression carried by a
      member's custom_resolution; falls back to highest_priority

Resolution is deterministic: the same input list always yields the same
winner.
"""

import re
from typing import Any, Callable

import structlog

from gatekeep.schema import ConflictResolution, ConflictStrategy, Rule, Severity

logger = structlog.get_logger()

CustomResolver = Callable[[list[Rule], dict[str, Any]], Rule | None]

# max(field) / min(field) / code(RULE-CODE)
_EXPRESSION = re.compile(r"^\s*(max|min|code)\(\s*([A-Za-z0-9_\-.]+)\s*\)\s*$")

_SORT_FIELDS: dict[str, Callable[[Rule], int]] = {
    "conflict_priority": lambda r: r.conflict_priority,
    "priority": lambda r: r.priority,
    "severity": lambda r: r.severity.rank,
}


def most_severe(rules: list[Rule]) -> Severity:
    """Most severe severity among rules (LOW when empty)."""
    best = Severity.LOW
    for rule in rules:
        if rule.severity.rank > best.rank:
            best = rule.severity
    return best


def _resolve_most_severe(rules: list[Rule], context: dict[str, Any]) -> Rule | None:
    top = most_severe(rules)
    return next((r for r in rules if r.severity == top), None)


def _resolve_lowest_priority(rules: list[Rule], context: dict[str, Any]) -> Rule | None:
    return min(rules, key=lambda r: r.conflict_priority) if rules else None


class ConflictResolver:
    """
    Resolves simultaneous block hits to one winning rule.

    Usage:
        resolver = ConflictResolver()
        resolution = resolver.resolve(fired_rules)
        winner = resolution.resolved_rule

    Custom strategies are looked up by name in a registry of pure
    functions; register more with register_custom().
    """

    def __init__(self) -> None:
        """Initialize with the built-in custom resolvers."""
        self._custom: dict[str, CustomResolver] = {
            "most_severe": _resolve_most_severe,
            "lowest_priority": _resolve_lowest_priority,
        }
        self._strategies: dict[ConflictStrategy, Callable[..., Rule]] = {
            ConflictStrategy.OVERRIDE: self._override,
            ConflictStrategy.MERGE: self._merge,
            ConflictStrategy.HIGHEST_PRIORITY: self._highest_priority,
            ConflictStrategy.FIRST_MATCH: self._first_match,
        }

    def register_custom(self, name: str, resolver: CustomResolver) -> None:
        """
        Register a named custom resolver.

        Args:
            name: Name referenced by a rule's custom_resolution
            resolver: Pure function (rules, context) -> winning rule or None
        """
        if not name:
            msg = "Custom resolver must have a non-empty name"
            raise ValueError(msg)
        self._custom[name] = resolver

    def custom_names(self) -> list[str]:
        """Registered custom resolver names in sorted order."""
        return sorted(self._custom)

    def resolve(
        self,
        rules: list[Rule],
        context: dict[str, Any] | None = None,
    ) -> ConflictResolution:
        """
        Resolve fired rules to one winner.

        Args:
            rules: Rules that fired with the block action, in evaluation order
            context: Extra information passed to custom resolvers

        Returns:
            ConflictResolution with the winning (possibly synthesized) rule
        """
        context = context or {}
        codes = [r.rule_code for r in rules]

        if not rules:
            return ConflictResolution(strategy_used="none", message="No rules fired")
        if len(rules) == 1:
            return ConflictResolution(
                resolved_rule=rules[0],
                strategy_used="no_conflict",
                message="No conflict",
                conflicting_codes=codes,
            )

        groups: dict[str, list[Rule]] = {}
        for rule in rules:
            groups.setdefault(rule.conflict_group, []).append(rule)

        if len(groups) == 1:
            winner, strategy = self._resolve_group(rules, context)
            resolution = ConflictResolution(
                resolved_rule=winner,
                strategy_used=strategy,
                message=f"{strategy}: {winner.rule_code} wins over {len(rules) - 1} other rule(s)",
                conflicting_codes=codes,
            )
        else:
            winners = [self._resolve_group(members, context)[0] for members in groups.values()]
            winners = sorted(winners, key=lambda r: r.conflict_priority, reverse=True)
            resolution = ConflictResolution(
                resolved_rule=winners[0],
                strategy_used="multi_group_resolution",
                message=(
                    f"{len(groups)} conflict groups resolved; "
                    f"{winners[0].rule_code} has the highest conflict priority"
                ),
                all_resolved=winners,
                conflicting_codes=codes,
            )

        logger.info(
            "conflict_resolved",
            conflicting=codes,
            strategy=resolution.strategy_used,
            resolved=resolution.resolved_rule.rule_code,
        )
        return resolution

    def _resolve_group(self, rules: list[Rule], context: dict[str, Any]) -> tuple[Rule, str]:
        """Resolve one conflict group; returns (winner, strategy name used)."""
        strategies = {r.conflict_strategy for r in rules}
        if len(strategies) == 1:
            strategy = rules[0].conflict_strategy
        else:
            strategy = self._highest_priority(rules).conflict_strategy

        if strategy == ConflictStrategy.CUSTOM:
            return self._custom_strategy(rules, context)
        return self._strategies[strategy](rules), strategy.value

    # =========================================================================
    # Strategies
    # =========================================================================

    def _override(self, rules: list[Rule]) -> Rule:
        return rules[-1]

    def _first_match(self, rules: list[Rule]) -> Rule:
        return rules[0]

    def _highest_priority(self, rules: list[Rule]) -> Rule:
        # sorted() is stable, so ties keep list order
        return sorted(rules, key=lambda r: r.conflict_priority, reverse=True)[0]

    def _merge(self, rules: list[Rule]) -> Rule:
        """Synthesize one rule standing for every member."""
        first = rules[0]
        messages = [r.render_message() for r in rules]
        suggestions = [r.suggestion for r in rules if r.suggestion]
        return Rule(
            rule_code="MERGED_" + "_".join(r.rule_code for r in rules),
            name="Merged: " + ", ".join(r.name or r.rule_code for r in rules),
            phase_scope=first.phase_scope,
            priority=max(r.priority for r in rules),
            detection_type=first.detection_type,
            action_on_violation=first.action_on_violation,
            severity=most_severe(rules),
            conflict_group=first.conflict_group,
            conflict_strategy=ConflictStrategy.MERGE,
            conflict_priority=max(r.conflict_priority for r in rules),
            message="; ".join(messages),
            suggestion="; ".join(suggestions) or None,
            merged_from=[r.rule_code for r in rules],
        )

    def _custom_strategy(self, rules: list[Rule], context: dict[str, Any]) -> tuple[Rule, str]:
        for rule in rules:
            if not rule.custom_resolution:
                continue
            try:
                winner = self._run_custom(rule.custom_resolution, rules, context)
            except Exception as e:
                # Bad expressions and faulty registered resolvers alike
                logger.warning(
                    "custom_resolution_failed",
                    rule_code=rule.rule_code,
                    resolution=rule.custom_resolution,
                    error=f"{type(e).__name__}: {e}",
                )
                continue
            if winner is not None:
                return winner, ConflictStrategy.CUSTOM.value

        logger.warning("custom_resolution_fallback", conflicting=[r.rule_code for r in rules])
        return self._highest_priority(rules), ConflictStrategy.HIGHEST_PRIORITY.value

    def _run_custom(
        self,
        resolution: str,
        rules: list[Rule],
        context: dict[str, Any],
    ) -> Rule | None:
        """
        Run a registered resolver, or evaluate a resolution expression.

        Expressions:
            max(field) / min(field): member with the extreme value of
                conflict_priority, priority or severity (ties: earliest)
            code(RULE-CODE): the member with that rule code, if present
        """
        resolver = self._custom.get(resolution)
        if resolver is not None:
            winner = resolver(list(rules), dict(context))
            if winner is not None and not isinstance(winner, Rule):
                msg = f"resolver {resolution!r} returned {type(winner).__name__}, not a Rule"
                raise TypeError(msg)
            return winner

        match = _EXPRESSION.match(resolution)
        if match is None:
            msg = f"unknown custom resolution: {resolution!r}"
            raise ValueError(msg)

        func, arg = match.groups()
        if func == "code":
            return next((r for r in rules if r.rule_code == arg), None)

        key = _SORT_FIELDS[arg]
        if func == "max":
            return sorted(rules, key=key, reverse=True)[0]
        return sorted(rules, key=key)[0]
