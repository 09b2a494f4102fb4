"""
Intercept Wave Common Utilities

Shared JSON helpers used by the configuration layer and the WebSocket
session manager. Mock payloads and WebSocket frames are stored and relayed
as raw strings, so every helper here is tolerant: bad input degrades to a
default instead of raising.
"""

import json
import re
from typing import Any, List, Optional, Tuple


def safe_json_parse(json_string: Optional[str], default: Any = None) -> Any:
    """
    Safely parse JSON string with error handling.

    Args:
        json_string: JSON string to parse
        default: Default value to return if parsing fails

    Returns:
        Parsed JSON object, or default if parsing fails

    Example:
        event = safe_json_parse(frame_text, default={})
    """
    if not json_string:
        return default

    try:
        return json.loads(json_string)
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def strip_comments(text: str) -> str:
    """Remove // line comments and /* */ block comments outside string literals."""
    out = []
    i = 0
    quote = None
    length = len(text)

    while i < length:
        ch = text[i]
        nxt = text[i + 1] if i + 1 < length else ''

        if quote:
            out.append(ch)
            if ch == '\\' and i + 1 < length:
                out.append(nxt)
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch == '/' and nxt == '/':
            end = text.find('\n', i)
            i = length if end == -1 else end
            continue
        if ch == '/' and nxt == '*':
            end = text.find('*/', i + 2)
            i = length if end == -1 else end + 2
            continue
        if ch in ('"', "'", '`'):
            quote = ch

        out.append(ch)
        i += 1

    return ''.join(out)


_TRAILING_COMMA = re.compile(r',\s*(?=[}\]])')
_UNQUOTED_KEY = re.compile(r'([,{]\s*)([A-Za-z_$][\w$-]*)(\s*):')
_SINGLE_QUOTED = re.compile(r"'([^'\\]*(?:\\.[^'\\]*)*)'")


def _convert_single_quoted(match: 're.Match') -> str:
    content = match.group(1).replace("\\'", "'")
    content = content.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{content}"'


def parse_json_tolerant(raw: Optional[str]) -> Any:
    """
    Parse JSON written by hand in a configuration editor.

    Strict JSON is tried first. On failure the text is repaired before a
    second attempt: comments are stripped, single-quoted strings become
    double-quoted, bare object keys are quoted and trailing commas removed.

    Args:
        raw: Text to parse

    Returns:
        Parsed JSON value

    Raises:
        ValueError: If the text is empty or still invalid after repair
    """
    text = (raw or '').strip()
    if not text:
        raise ValueError('Empty JSON')

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    repaired = strip_comments(text)
    repaired = _SINGLE_QUOTED.sub(_convert_single_quoted, repaired)
    repaired = _UNQUOTED_KEY.sub(lambda m: f'{m.group(1)}"{m.group(2)}"{m.group(3)}:', repaired)
    repaired = _TRAILING_COMMA.sub('', repaired)
    return json.loads(repaired)


def stringify_compact(value: Any) -> str:
    """Serialize to minified JSON, keeping non-ASCII characters readable."""
    return json.dumps(value, ensure_ascii=False, separators=(',', ':'))


def stringify_pretty(value: Any, indent: int = 2) -> str:
    """Serialize to indented JSON."""
    return json.dumps(value, ensure_ascii=False, indent=indent)


def json_fields(text: Optional[str]) -> List[Tuple[str, Any]]:
    """
    Return the top-level (key, value) pairs of a JSON object string.

    Anything that is not a JSON object (invalid text, arrays, scalars)
    yields an empty list.
    """
    parsed = safe_json_parse(text)
    if not isinstance(parsed, dict):
        return []
    return list(parsed.items())


def first_json_field(text: Optional[str]) -> Optional[Tuple[str, Any]]:
    """Return the first top-level (key, value) pair of a JSON object string."""
    fields = json_fields(text)
    return fields[0] if fields else None


def js_string(value: Any) -> str:
    """
    Render a JSON value the way it is compared against configured event values.

    Booleans and null use their JSON spelling and integral floats drop the
    fractional part, so ``1``, ``1.0`` and ``"1"`` all compare equal.
    """
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return stringify_compact(value)
    return str(value)
