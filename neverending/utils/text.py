"""Text helpers shared by the agents: JSON extraction, truncation, token estimates."""

import json
import math
import re

_SENTENCE_BREAKS = ['. ', '! ', '? ', '."', '!"', '?"', '\n']


def estimate_tokens(text: str) -> int:
    """Approximate token count (characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def _close_open_brackets(candidate: str) -> str:
    stack = []
    in_str = False
    esc = False
    for c in candidate:
        if esc:
            esc = False
            continue
        if c == '\\' and in_str:
            esc = True
            continue
        if c == '"':
            in_str = not in_str
            continue
        if in_str:
            continue
        if c in ('{', '['):
            stack.append('}' if c == '{' else ']')
        elif c in ('}', ']') and stack:
            stack.pop()
    return candidate + ''.join(reversed(stack))


def _repair_truncated_json(text: str) -> str:
    """Cut a truncated JSON reply back to its last complete value and close it."""
    if not text or text[0] not in ('{', '['):
        return text

    end = len(text)
    while end > 0:
        pos = max(text.rfind('}', 0, end), text.rfind(']', 0, end), text.rfind('"', 0, end))
        if pos <= 0:
            break
        candidate = _close_open_brackets(text[:pos + 1].rstrip().rstrip(','))
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            end = pos
    return text


def parse_json_response(text: str) -> dict | list:
    """Extract JSON from a model reply that may contain markdown fences."""
    m = re.search(r'```(?:json)?\s*\n(.*?)\n```', text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass
    cleaned = text.strip()
    if cleaned.startswith('{') or cleaned.startswith('['):
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
    for open_ch, close_ch in [('{', '}'), ('[', ']')]:
        start = cleaned.find(open_ch)
        if start == -1:
            continue
        end = cleaned.rfind(close_ch)
        if end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                pass
    # Last resort: the reply was cut off mid-object
    for open_ch in ('{', '['):
        start = cleaned.find(open_ch)
        if start != -1:
            try:
                return json.loads(_repair_truncated_json(cleaned[start:]))
            except (json.JSONDecodeError, ValueError):
                pass
    raise ValueError(f"Could not parse JSON from response: {text[:200]}...")


def truncate_text(text: str, max_chars: int, from_end: bool = False) -> str:
    """Truncate text at sentence boundaries.

    Args:
        text: The text to truncate.
        max_chars: Maximum number of characters.
        from_end: If True, keep the end of the text instead of the beginning.
    """
    if len(text) <= max_chars:
        return text

    if from_end:
        chunk = text[-max_chars:]
        for sep in _SENTENCE_BREAKS:
            idx = chunk.find(sep)
            if idx != -1 and idx < 200:
                return "..." + chunk[idx + len(sep):].lstrip()
        return "..." + chunk

    chunk = text[:max_chars]
    best = -1
    for sep in _SENTENCE_BREAKS:
        idx = chunk.rfind(sep)
        if idx != -1 and idx >= max_chars - 200:
            best = max(best, idx + len(sep))
    if best == -1:
        best = max_chars
    return text[:best].rstrip() + "..."


def as_list(value) -> list:
    """A JSON field expected to be an array; null or any other shape reads as empty."""
    return value if isinstance(value, list) else []


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def as_text(value) -> str:
    return "" if value is None else str(value)
