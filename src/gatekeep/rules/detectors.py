"""
Generic detection dispatch.

Each detection type maps to one detector function that decides whether a
rule's condition holds for an action request:

- flag: a named session flag differs from its expected value
- name: the operation name equals, or is a member of, the pattern
- args: structured checks over the arguments (file counts, forbidden
  paths, interactive commands without their flags, long-running commands
  not backgrounded)
- regex: a pattern tested against the arguments or the response text
- api_call: a downstream call matched by endpoint, HTTP method and headers

Detectors return True when the rule is violated. A malformed pattern
raises InvalidPatternError; the evaluator turns any failure into a
"not violated" outcome with an evaluation error.
"""

import json
import re
from typing import Any, Callable

from gatekeep.errors import EvaluationError, InvalidPatternError, UnknownDetectionTypeError
from gatekeep.locks.paths import normalize_operation_name
from gatekeep.schema import ActionRequest, DetectionType, Phase, Rule
from gatekeep.session import SessionState

Detector = Callable[[Any, ActionRequest, SessionState], bool]


class PatternError(ValueError):
    """A detection pattern has the wrong shape."""


def _load_pattern(pattern: Any) -> Any:
    """Decode JSON-encoded object/array patterns; leave everything else as is."""
    if isinstance(pattern, str) and pattern.strip()[:1] in ("{", "["):
        try:
            return json.loads(pattern)
        except json.JSONDecodeError as e:
            raise PatternError(f"pattern is not valid JSON: {e}") from e
    return pattern


def arguments_text(arguments: dict[str, Any]) -> str:
    """Textual projection of the arguments used by substring and regex checks."""
    return json.dumps(arguments, ensure_ascii=False, default=str)


def _operation_names(request: ActionRequest) -> set[str]:
    return {request.operation_name, normalize_operation_name(request.operation_name)}


# =============================================================================
# Detectors
# =============================================================================


def detect_flag(pattern: Any, request: ActionRequest, session: SessionState) -> bool:
    """Violated when the session flag differs from the expected value."""
    if isinstance(pattern, str):
        flag, expected = pattern, True
    elif isinstance(pattern, dict) and pattern.get("flag"):
        flag, expected = pattern["flag"], pattern.get("expected", True)
    else:
        raise PatternError("flag pattern needs a 'flag' name")
    return session.get_flag(flag) != expected


def detect_name(pattern: Any, request: ActionRequest, session: SessionState) -> bool:
    """Violated when the operation name matches the pattern."""
    names = _operation_names(request)
    if isinstance(pattern, str):
        return pattern in names
    if isinstance(pattern, list):
        return any(name in pattern for name in names)
    if isinstance(pattern, dict):
        tools = pattern.get("tools") or pattern.get("names") or []
        return any(name in tools for name in names)
    raise PatternError("name pattern must be a string, a list or {tools: [...]}")


def count_files(arguments: dict[str, Any]) -> int:
    """Number of files an operation touches, as far as its arguments say."""
    count = 0
    if arguments.get("file_path"):
        count += 1
    if arguments.get("target_file"):
        count += 1
    files = arguments.get("files")
    if isinstance(files, list):
        count += len(files)
    return count


def detect_args(pattern: Any, request: ActionRequest, session: SessionState) -> bool:
    """Violated when any configured argument check fails."""
    if not isinstance(pattern, dict):
        raise PatternError("args pattern must be a mapping")

    args = request.arguments
    command = str(args.get("command") or "").lower()

    threshold = pattern.get("file_count_threshold")
    if threshold and count_files(args) > int(threshold):
        return True

    forbidden = pattern.get("forbidden_paths")
    if forbidden:
        text = arguments_text(args).lower()
        if any(str(fragment).lower() in text for fragment in forbidden):
            return True

    if pattern.get("check_interactive") and command:
        interactive = [c.lower() for c in pattern.get("interactive_commands", [])]
        if any(c in command for c in interactive):
            flags = pattern.get("required_flags", [])
            if not any(flag in command for flag in flags):
                return True

    if pattern.get("check_long_running") and command:
        long_running = [c.lower() for c in pattern.get("long_running_commands", [])]
        if any(c in command for c in long_running) and not args.get("is_background"):
            return True

    return False


def detect_regex(pattern: Any, request: ActionRequest, session: SessionState) -> bool:
    """
    Test a regex against the arguments or the response text.

    The pattern is either a bare regex (a match is a violation) or a
    mapping {pattern, mode, target}. With mode "required" the absence of
    a match is the violation. The target defaults to the response text in
    the response phase and to the arguments everywhere else.
    """
    if isinstance(pattern, str):
        regex, mode, target = pattern, "forbidden", None
    elif isinstance(pattern, dict) and pattern.get("pattern"):
        regex = pattern["pattern"]
        mode = pattern.get("mode", "forbidden")
        target = pattern.get("target")
    else:
        raise PatternError("regex pattern must be a string or {pattern, mode, target}")

    if mode not in ("forbidden", "required"):
        raise PatternError(f"unknown regex mode: {mode}")

    if target is None:
        target = "response" if request.phase == Phase.RESPONSE else "arguments"
    if target == "response":
        text = request.response_text or ""
    elif target == "arguments":
        text = arguments_text(request.arguments)
    else:
        raise PatternError(f"unknown regex target: {target}")

    try:
        compiled = re.compile(regex, re.IGNORECASE | re.MULTILINE)
    except re.error as e:
        raise PatternError(f"invalid regex: {e}") from e

    matched = compiled.search(text) is not None
    return matched if mode == "forbidden" else not matched


def detect_api_call(pattern: Any, request: ActionRequest, session: SessionState) -> bool:
    """
    Violated when the request is the described downstream call.

    Every configured criterion must hold: api_endpoint (substring of the
    arguments), http_method (the "method" argument) and required_headers
    (all present in the "headers" argument, with matching value when one
    is given). tool_name restricts the check to one operation.
    """
    if not isinstance(pattern, dict):
        raise PatternError("api_call pattern must be a mapping")

    criteria = ("api_endpoint", "http_method", "required_headers")
    if not any(pattern.get(key) for key in criteria):
        return False

    args = request.arguments
    tool_name = pattern.get("tool_name")
    if tool_name and tool_name not in _operation_names(request):
        return False

    endpoint = pattern.get("api_endpoint")
    if endpoint and str(endpoint).lower() not in arguments_text(args).lower():
        return False

    method = pattern.get("http_method")
    if method and str(args.get("method", "")).lower() != str(method).lower():
        return False

    required = pattern.get("required_headers")
    if required:
        headers = args.get("headers")
        if not isinstance(headers, dict):
            return False
        for header in required:
            if isinstance(header, str):
                header = {"name": header}
            value = headers.get(header.get("name"))
            if not value:
                return False
            if header.get("value") is not None and value != header["value"]:
                return False

    return True


DETECTORS: dict[DetectionType, Detector] = {
    DetectionType.FLAG: detect_flag,
    DetectionType.NAME: detect_name,
    DetectionType.ARGS: detect_args,
    DetectionType.REGEX: detect_regex,
    DetectionType.API_CALL: detect_api_call,
}


def detect(
    rule: Rule,
    request: ActionRequest,
    session: SessionState,
    exempt_operations: frozenset[str] | set[str] = frozenset(),
    detectors: dict[DetectionType, Detector] | None = None,
) -> bool:
    """
    Decide whether a generic rule is violated.

    Flag rules never fire for exempt operations: those are the bootstrap
    operations that set the flags in the first place.

    Raises:
        UnknownDetectionTypeError: If no detector handles the rule's type
        InvalidPatternError: If the rule's pattern has the wrong shape
        EvaluationError: If the detector failed for any other reason
    """
    table = DETECTORS if detectors is None else detectors
    detector = table.get(rule.detection_type)
    if detector is None:
        raise UnknownDetectionTypeError(
            rule_code=rule.rule_code,
            detection_type=str(rule.detection_type),
        )

    if rule.detection_type == DetectionType.FLAG and _operation_names(request) & set(
        exempt_operations
    ):
        return False

    try:
        return detector(_load_pattern(rule.detection_pattern), request, session)
    except PatternError as e:
        raise InvalidPatternError(
            rule_code=rule.rule_code,
            detection_type=rule.detection_type.value,
            underlying_error=str(e),
        ) from e
    except Exception as e:
        raise EvaluationError(
            rule_code=rule.rule_code,
            detection_type=rule.detection_type.value,
            underlying_error=f"{type(e).__name__}: {e}",
        ) from e
