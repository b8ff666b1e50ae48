"""
Conflict resolution for Gatekeep.

Reduces several simultaneous block hits to one winning rule using the
override, merge, highest_priority, first_match or custom strategy.
"""

from gatekeep.conflict.resolver import ConflictResolver, CustomResolver, most_severe

__all__ = [
    "ConflictResolver",
    "CustomResolver",
    "most_severe",
]
