"""
Target path extraction and operation classification.

The lock registry needs two facts about an operation before it can decide
anything: which file it targets, and whether it reads, writes or deletes.
Both are derived here, independently of any lock state, so the parsing can
be tested on its own.

Path extraction order:
    1. Explicit path arguments (file_path, target_file, path, ...)
    2. Shell command strings, matched against a fixed list of recognized
       command shapes. Anything else yields None (no path, allow).
"""

import posixpath
import re
from dataclasses import dataclass
from fnmatch import fnmatch
from typing import Any

from gatekeep.schema import OperationKind

# Argument keys that carry a target path, in lookup order
PATH_ARGUMENT_KEYS = ("file_path", "target_file", "path", "filename", "target")

# Argument keys that carry a shell command string
COMMAND_ARGUMENT_KEYS = ("command", "cmd")

READ_OPERATIONS = frozenset({
    "read_file",
    "grep",
    "list_dir",
    "glob_file_search",
    "codebase_search",
    "file_search",
    "fs.read",
})

DELETE_OPERATIONS = frozenset({
    "delete_file",
    "fs.delete",
})

# Operations that carry an old/new text pair
PATCH_OPERATIONS = frozenset({
    "search_replace",
    "edit_file",
    "str_replace",
})

_FILE_TOKEN = r"[A-Za-z0-9_\-./\\~]+\.[A-Za-z0-9]+"


@dataclass(frozen=True)
class CommandShape:
    """
    A recognized shell command shape.

    Attributes:
        name: Identifier for logs and tests
        pattern: Regex whose first group is the target path
        kind: Access class implied by the command (None: use the name table)
    """

    name: str
    pattern: re.Pattern[str]
    kind: OperationKind | None = None


COMMAND_SHAPES: tuple[CommandShape, ...] = (
    CommandShape(
        "redirect",
        re.compile(r">>?\s*(" + _FILE_TOKEN + r")"),
        OperationKind.WRITE,
    ),
    CommandShape(
        "remove",
        re.compile(r"(?:^|[\s;&|])(?:rm|del|unlink)\s+(?:-\S+\s+)*(" + _FILE_TOKEN + r")", re.I),
        OperationKind.DELETE,
    ),
    CommandShape(
        "in_place_edit",
        re.compile(r"(?:^|[\s;&|])sed\s+-i\S*\s+(?:'[^']*'|\"[^\"]*\"|\S+)\s+(" + _FILE_TOKEN + r")"),
        OperationKind.WRITE,
    ),
    CommandShape(
        "move_or_copy",
        re.compile(
            r"(?:^|[\s;&|])(?:mv|cp|copy|move|touch)\s+(?:-\S+\s+)*(?:\S+\s+)*?(" + _FILE_TOKEN + r")\s*$",
            re.I,
        ),
        OperationKind.WRITE,
    ),
    CommandShape(
        "viewer",
        re.compile(r"(?:^|[\s;&|])(?:cat|head|tail|less|more|type)\s+(?:-\S+\s+)*(" + _FILE_TOKEN + r")", re.I),
        OperationKind.READ,
    ),
    CommandShape(
        "interpreter",
        re.compile(r"(?:^|[\s;&|])(?:node|python3?|npm|bash|sh)\s+(?:-\S+\s+)*(" + _FILE_TOKEN + r")", re.I),
        None,
    ),
    CommandShape("double_quoted", re.compile(r"\"([^\"]+\.[A-Za-z0-9]+)\""), None),
    CommandShape("single_quoted", re.compile(r"'([^']+\.[A-Za-z0-9]+)'"), None),
)


@dataclass(frozen=True)
class ExtractedTarget:
    """A target path and, when known, the access class its source implies."""

    path: str
    source: str
    kind: OperationKind | None = None


def normalize_operation_name(operation_name: str) -> str:
    """
    Strip transport prefixes from an operation name.

    Examples:
        mcp_read_file -> read_file
        mcp_unified_mcp_delete_file -> delete_file
        fs.read -> fs.read
    """
    if "mcp_" in operation_name:
        return operation_name.rsplit("mcp_", 1)[-1]
    return operation_name


def classify_operation(operation_name: str) -> OperationKind:
    """Classify an operation by the static name table (unknown: write)."""
    name = normalize_operation_name(operation_name)
    if name in READ_OPERATIONS:
        return OperationKind.READ
    if name in DELETE_OPERATIONS:
        return OperationKind.DELETE
    return OperationKind.WRITE


def is_patch_operation(operation_name: str, arguments: dict[str, Any]) -> bool:
    """Whether the operation carries an old/new text pair."""
    if normalize_operation_name(operation_name) in PATCH_OPERATIONS:
        return True
    return "old_string" in arguments and "new_string" in arguments


def extract_path_from_command(command: str) -> ExtractedTarget | None:
    """
    Extract a target file from a shell command string.

    Only the shapes in COMMAND_SHAPES are recognized; the first shape that
    matches wins.
    """
    if not command:
        return None
    for shape in COMMAND_SHAPES:
        match = shape.pattern.search(command)
        if match and match.group(1):
            return ExtractedTarget(path=match.group(1), source=shape.name, kind=shape.kind)
    return None


def extract_target(arguments: dict[str, Any]) -> ExtractedTarget | None:
    """Extract the target path of an operation, or None if there is none."""
    for key in PATH_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return ExtractedTarget(path=value, source=key)

    for key in COMMAND_ARGUMENT_KEYS:
        value = arguments.get(key)
        if isinstance(value, list):
            value = " ".join(str(part) for part in value)
        if isinstance(value, str) and value:
            return extract_path_from_command(value)

    return None


def normalize_path(path: str) -> str:
    """Normalize separators and redundant segments for matching."""
    return posixpath.normpath(path.replace("\\", "/"))


def path_matches(path: str, fragment: str) -> bool:
    """
    Check whether a target path matches a protected path fragment.

    Fragments may be glob patterns, path fragments (substring match) or
    bare file names (basename match).
    """
    if not path or not fragment:
        return False

    target = normalize_path(path)
    pattern = normalize_path(fragment)

    if any(ch in pattern for ch in "*?["):
        return fnmatch(target, pattern) or fnmatch(target, f"*/{pattern}")

    if pattern in target:
        return True

    return posixpath.basename(target) == posixpath.basename(pattern)
