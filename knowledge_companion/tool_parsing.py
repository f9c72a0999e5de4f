"""Tool-call extraction from model output.

Models do not agree on how to ask for a tool. Besides the structured
``tool_calls`` field of the completion envelope, the assistant text may
carry calls in one of several encodings:

- ``[TOOL]{"tool": "name", "args": {...}}[/TOOL]`` (or ``[TOOL_CALL]``),
  holding one JSON object, an array of objects, or several concatenated
  objects; a legacy ``tool => "name"`` / ``args => {...}`` grammar is
  accepted inside the same markers.
- ``<tool_code>{"name": "...", "arguments": {...}}</tool_code>``.
- A bare ``{"tool": "...", ...}`` object anywhere in the text.

Each text encoding is an independent strategy. ``extract_tool_calls`` tries
them in order and the first one that yields calls wins. Strategies never
raise; unparseable fragments are skipped.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Iterable

from knowledge_companion.llm import ToolCall
from knowledge_companion.logging import get_logger

log = get_logger(__name__)

_BRACKET_BLOCK_RE = re.compile(
    r"\[(?:TOOL_CALL|TOOL)\]\s*(.*?)\s*\[/(?:TOOL_CALL|TOOL)\]",
    re.IGNORECASE | re.DOTALL,
)
_XML_BLOCK_RE = re.compile(r"<tool_code>\s*(.*?)\s*</tool_code>", re.IGNORECASE | re.DOTALL)
_LEGACY_NAME_RE = re.compile(r'(?:tool|name)\s*(?:=>|:)\s*"([^"]+)"', re.IGNORECASE)
_LEGACY_ARGS_RE = re.compile(r"(?:args|arguments)\s*(?:=>|:)\s*(\{.*?\})", re.IGNORECASE | re.DOTALL)
_LEGACY_PAIR_RE = re.compile(r'(\w+)\s*(?:=>|:)\s*"([^"]*)"')
_BARE_TOOL_KEY_RE = re.compile(r'"tool"\s*:\s*"')

# (name, arguments-json) before ids are assigned
RawCall = tuple[str, str]
Strategy = Callable[[str], list[RawCall]]


def _serialize_arguments(value: Any) -> str:
    """Objects/arrays are re-serialized, strings pass through untouched."""
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _first_present(obj: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in obj:
            return obj[key]
    return None


def _call_from_object(
    obj: Any,
    name_keys: tuple[str, ...],
    arg_keys: tuple[str, ...],
) -> RawCall | None:
    """Read a (name, arguments) pair from one decoded JSON object."""
    if not isinstance(obj, dict):
        return None
    function = obj.get("function") if isinstance(obj.get("function"), dict) else {}
    name = _first_present(obj, name_keys)
    if name is None:
        name = function.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    args = _first_present(obj, arg_keys)
    if args is None:
        args = function.get("arguments")
    return name.strip(), _serialize_arguments(args)


def _iter_json_values(text: str) -> list[Any]:
    """Decode consecutive JSON values (``{} {}`` or ``[...]``), stopping at the first bad one."""
    decoder = json.JSONDecoder()
    values: list[Any] = []
    pos = 0
    length = len(text)
    while True:
        while pos < length and text[pos].isspace():
            pos += 1
        if pos >= length:
            break
        try:
            value, pos = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            break
        values.append(value)
    return values


def _calls_from_values(
    values: list[Any],
    name_keys: tuple[str, ...],
    arg_keys: tuple[str, ...],
) -> list[RawCall]:
    calls: list[RawCall] = []
    for value in values:
        items = value if isinstance(value, list) else [value]
        for item in items:
            call = _call_from_object(item, name_keys, arg_keys)
            if call is not None:
                calls.append(call)
    return calls


def _parse_legacy_block(block: str) -> RawCall | None:
    """Parse ``tool => "name"`` followed by ``args => {...}``."""
    name_match = _LEGACY_NAME_RE.search(block)
    if not name_match:
        return None
    args_match = _LEGACY_ARGS_RE.search(block)
    args_text = args_match.group(1) if args_match else "{}"
    try:
        arguments = json.dumps(json.loads(args_text))
    except json.JSONDecodeError:
        pairs = {key: value for key, value in _LEGACY_PAIR_RE.findall(args_text)}
        arguments = json.dumps(pairs)
    return name_match.group(1), arguments


def extract_bracketed(text: str) -> list[RawCall]:
    """``[TOOL]...[/TOOL]`` blocks: JSON first, legacy key-value grammar second."""
    calls: list[RawCall] = []
    for match in _BRACKET_BLOCK_RE.finditer(text or ""):
        block = match.group(1).strip()
        values = _iter_json_values(block)
        if values:
            calls.extend(
                _calls_from_values(values, ("tool", "name"), ("args", "arguments"))
            )
            continue
        legacy = _parse_legacy_block(block)
        if legacy is not None:
            calls.append(legacy)
    return calls


def extract_xml(text: str) -> list[RawCall]:
    """``<tool_code>...</tool_code>`` blocks holding a JSON object or array."""
    calls: list[RawCall] = []
    for match in _XML_BLOCK_RE.finditer(text or ""):
        try:
            value = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        calls.extend(
            _calls_from_values(
                [value],
                ("name", "tool_name"),
                ("arguments", "args", "parameters"),
            )
        )
    return calls


def _matching_brace(text: str, start: int) -> int | None:
    """Index one past the brace closing ``text[start]``; string and escape aware."""
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif ch == "{" and not in_string:
            depth += 1
        elif ch == "}" and not in_string:
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def _decode_object(text: str, start: int) -> tuple[Any, int] | None:
    end = _matching_brace(text, start)
    if end is None:
        return None
    try:
        return json.loads(text[start:end]), end
    except json.JSONDecodeError:
        return None


def extract_bare_json(text: str) -> list[RawCall]:
    """Unwrapped ``{"tool": "..."}`` objects located by brace counting.

    Objects are tried outermost first; once one is accepted as a call, the
    scan resumes after its closing brace so nested ``"tool"`` keys inside its
    arguments never become calls of their own.
    """
    text = text or ""
    calls: list[RawCall] = []
    if not _BARE_TOOL_KEY_RE.search(text):
        return calls
    pos = text.find("{")
    while pos != -1:
        decoded = _decode_object(text, pos)
        call = None
        if decoded is not None and isinstance(decoded[0], dict) and "tool" in decoded[0]:
            call = _call_from_object(decoded[0], ("tool",), ("arguments", "args"))
        if call is not None:
            calls.append(call)
            pos = text.find("{", decoded[1])
        else:
            pos = text.find("{", pos + 1)
    return calls


TEXT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("bracketed", extract_bracketed),
    ("xml", extract_xml),
    ("bare_json", extract_bare_json),
)


def normalize_structured_calls(structured_calls: list[Any], base_index: int = 0) -> list[ToolCall]:
    """Normalize calls returned natively by the completion service."""
    calls: list[ToolCall] = []
    for n, raw in enumerate(structured_calls):
        if isinstance(raw, ToolCall):
            call_id = raw.id or f"call_{base_index + n}"
            calls.append(ToolCall(id=call_id, name=raw.name, arguments=_serialize_arguments(raw.arguments)))
            continue
        parsed = _call_from_object(raw, ("name",), ("arguments",))
        if parsed is None:
            continue
        call_id = str(raw.get("id") or "") or f"call_{base_index + n}"
        calls.append(ToolCall(id=call_id, name=parsed[0], arguments=parsed[1]))
    return calls


def extract_tool_calls(
    raw_text: str,
    structured_calls: list[Any] | None = None,
    base_index: int = 0,
    strategies: tuple[tuple[str, Strategy], ...] = TEXT_STRATEGIES,
) -> list[ToolCall]:
    """Produce the ordered tool calls requested by one model response.

    Args:
        raw_text: Assistant free-text content
        structured_calls: Calls from the response envelope; when non-empty
            they are used as-is and the text is not scanned
        base_index: Offset for synthetic ``call_N`` ids
        strategies: Ordered text strategies

    Returns:
        List of ToolCall, possibly empty
    """
    if structured_calls:
        return normalize_structured_calls(structured_calls, base_index)

    for label, strategy in strategies:
        try:
            raw_calls = strategy(raw_text or "")
        except Exception as e:
            log.warning("Tool-call strategy failed", strategy=label, error=str(e))
            continue
        if raw_calls:
            log.debug("Parsed tool calls from text", strategy=label, count=len(raw_calls))
            return [
                ToolCall(id=f"call_{base_index + n}", name=name, arguments=arguments)
                for n, (name, arguments) in enumerate(raw_calls)
            ]
    return []


_THINK_RE = re.compile(r"<think>(.*?)</think>", re.DOTALL)


def split_thinking(text: str) -> tuple[str, list[str]]:
    """Separate ``<think>`` blocks from the visible answer.

    Returns:
        The text with every block removed and trimmed, and the block bodies in order
    """
    thoughts = [match.strip() for match in _THINK_RE.findall(text or "")]
    return _THINK_RE.sub("", text or "").strip(), thoughts


def strip_thinking(text: str) -> str:
    return split_thinking(text)[0]
