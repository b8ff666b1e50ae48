"""
Gatekeep - Policy enforcement pipeline for agent tool calls.

Gatekeep sits between an agent and the operations it wants to perform.
It provides:
- Multi-phase rule evaluation (before, during and after an operation)
- Deterministic conflict resolution when several rules fire
- Module locks that veto modification of protected files and symbols,
  hot-reloaded from a config file
- Append-only audit of every rule evaluation in SQLite

Example usage:
    $ gatekeep rules import rules.yaml
    $ gatekeep check '{"operation_name": "delete_file", "arguments": {"path": "/etc/passwd"}}'
    $ gatekeep locks lock core --reason "release freeze"
"""

__version__ = "0.1.0"
__author__ = "Gatekeep Contributors"

__all__ = [
    "__version__",
    "__author__",
]
