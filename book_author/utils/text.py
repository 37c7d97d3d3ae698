"""Text helpers shared by the context builder, evaluators and pipeline."""

import json
import re

from ..errors import ResponseParseError

ELLIPSIS_MARKER = "\n...\n"


def _repair_truncated_json(text: str) -> str:
    """Close a truncated JSON document after its last complete element."""
    if not text or text[0] not in ("{", "["):
        return text

    last_end = len(text)
    for ch in ("}", "]", '"'):
        while True:
            pos = text.rfind(ch, 0, last_end)
            if pos <= 0:
                break
            candidate = text[: pos + 1].rstrip().rstrip(",")
            stack = []
            in_str = False
            esc = False
            for c in candidate:
                if esc:
                    esc = False
                    continue
                if c == "\\" and in_str:
                    esc = True
                    continue
                if c == '"':
                    in_str = not in_str
                    continue
                if in_str:
                    continue
                if c in ("{", "["):
                    stack.append("}" if c == "{" else "]")
                elif c in ("}", "]") and stack:
                    stack.pop()
            closing = "".join(reversed(stack))
            try:
                json.loads(candidate + closing)
                return candidate + closing
            except json.JSONDecodeError:
                last_end = pos
        last_end = len(text)

    return text


def parse_json_response(text: str) -> dict | list:
    """Extract JSON from a backend response that may contain markdown fences.

    Raises:
        ResponseParseError: if no JSON document can be recovered.
    """
    if not text or not text.strip():
        raise ResponseParseError("Empty response")

    m = re.search(r"```(?:json)?\s*\n(.*?)\n?```", text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass

    cleaned = text.strip()
    if cleaned.startswith("{") or cleaned.startswith("["):
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

    for open_ch, close_ch in [("{", "}"), ("[", "]")]:
        start = cleaned.find(open_ch)
        if start == -1:
            continue
        end = cleaned.rfind(close_ch)
        if end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                pass

    for open_ch in ("{", "["):
        start = cleaned.find(open_ch)
        if start != -1:
            try:
                return json.loads(_repair_truncated_json(cleaned[start:]))
            except json.JSONDecodeError:
                pass

    raise ResponseParseError(f"Could not parse JSON from response: {text[:200]}...")


def parse_json_object(text: str) -> dict:
    data = parse_json_response(text)
    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def count_words(text: str) -> int:
    """Whitespace-delimited token count."""
    if not text:
        return 0
    return len(text.split())


def last_paragraphs(text: str, count: int = 2) -> str:
    paragraphs = [p for p in re.split(r"\r?\n\r?\n", text) if p.strip()]
    return "\n\n".join(paragraphs[-count:])


def truncate_middle(text: str, max_chars: int) -> str:
    """Keep the head and tail of ``text`` and replace the middle with a marker.

    The kept head and tail are each ``max_chars // 2`` characters long.
    """
    if len(text) <= max_chars:
        return text
    half = max_chars // 2
    return text[:half] + ELLIPSIS_MARKER + text[len(text) - half :]


def head(text: str, max_chars: int) -> str:
    return text[:max_chars]


def list_field(data: dict, key: str) -> list:
    """Return ``data[key]`` as a list; a missing or null field is empty.

    Raises:
        ResponseParseError: if the field holds anything other than a list.
    """
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ResponseParseError(f"Expected '{key}' to be a list, got {type(value).__name__}")
    return value


def string_list(value) -> list[str]:
    """Coerce a JSON value into a list of strings, dropping non-strings."""
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]
