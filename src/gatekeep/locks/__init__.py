"""
Lock module for Gatekeep.

This module provides the access-control layer: named modules of protected
files and symbols that can be locked against modification, with the lock
config hot-reloaded from disk.

Components:
    - paths: Target path extraction and read/write/delete classification
    - LockRegistry: Lock state, checks and administration
    - ConfigWatcher: Debounced watchdog-based hot reload
"""

from gatekeep.locks.paths import (
    COMMAND_SHAPES,
    CommandShape,
    ExtractedTarget,
    classify_operation,
    extract_path_from_command,
    extract_target,
    path_matches,
)
from gatekeep.locks.registry import ConfigDiff, LockRegistry, ReloadResult
from gatekeep.locks.watcher import ConfigWatcher

__all__ = [
    "COMMAND_SHAPES",
    "CommandShape",
    "ConfigDiff",
    "ConfigWatcher",
    "ExtractedTarget",
    "LockRegistry",
    "ReloadResult",
    "classify_operation",
    "extract_path_from_command",
    "extract_target",
    "path_matches",
]
