"""
Rules module for Gatekeep.

This module loads rules through a TTL cache and decides, per rule, whether
an action request violates it.

Components:
    - RuleCache: Per-phase rule buckets in front of a RuleSource
    - detectors: Generic detection dispatch (flag/name/args/regex/api_call)
    - builtins: Registered built-in handlers for rules the grammar can't express
    - RuleEvaluator: Dispatches on the rule kind and maps the action to an outcome
"""

from gatekeep.rules.builtins import (
    BuiltinContext,
    BuiltinKind,
    BuiltinRegistry,
    BuiltinRule,
    BuiltinVerdict,
    GenericKind,
    RuleKind,
    create_default_builtins,
)
from gatekeep.rules.cache import RuleCache
from gatekeep.rules.detectors import DETECTORS, detect
from gatekeep.rules.evaluator import RuleEvaluation, RuleEvaluator

__all__ = [
    "DETECTORS",
    "BuiltinContext",
    "BuiltinKind",
    "BuiltinRegistry",
    "BuiltinRule",
    "BuiltinVerdict",
    "GenericKind",
    "RuleCache",
    "RuleEvaluation",
    "RuleEvaluator",
    "RuleKind",
    "create_default_builtins",
    "detect",
]
