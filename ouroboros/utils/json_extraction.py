from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Literal

ExtractionMethod = Literal["markdown_json", "markdown_block", "braces", "brackets", "raw"]

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_FENCED_ANY = re.compile(r"```[a-zA-Z]*\s*([\s\S]*?)\s*```")
_INVISIBLE = re.compile("[\ufeff\u200b-\u200d\ufffe\uffff]")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


@dataclass(slots=True)
class ExtractionResult:
    success: bool
    data: Any
    method: ExtractionMethod | None = None
    error: str | None = None


def sanitize_json_text(text: str) -> str:
    cleaned = _INVISIBLE.sub("", text).strip()
    return _TRAILING_COMMA.sub(r"\1", cleaned)


def _balanced(text: str, opener: str, closer: str) -> str | None:
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    end = text.rfind(closer)
    if end > start:
        return text[start : end + 1]
    return None


def _try_parse(candidate: str | None) -> tuple[bool, Any]:
    if candidate is None:
        return False, None
    try:
        return True, json.loads(sanitize_json_text(candidate))
    except (json.JSONDecodeError, ValueError):
        return False, None


def extract_json(text: str | None, default: Any = None) -> ExtractionResult:
    """Pull the first JSON value out of free-form model output.

    Strategies run in order: ```json fence, any fence, balanced braces,
    balanced brackets, raw text. Never raises; on failure ``data`` is
    ``default``.
    """
    if not text or not text.strip():
        return ExtractionResult(success=False, data=default, error="empty response")

    fenced = _FENCED_JSON.search(text)
    balanced: list[tuple[ExtractionMethod, Callable[[], str | None]]] = [
        ("braces", lambda: _balanced(text, "{", "}")),
        ("brackets", lambda: _balanced(text, "[", "]")),
    ]
    first_brace, first_bracket = text.find("{"), text.find("[")
    if first_bracket != -1 and (first_brace == -1 or first_bracket < first_brace):
        # top-level array: try brackets first so it is not cut down to its first object
        balanced.reverse()
    strategies: list[tuple[ExtractionMethod, Callable[[], str | None]]] = [
        ("markdown_json", lambda: fenced.group(1) if fenced else None),
        ("markdown_block", lambda: (match.group(1) if (match := _FENCED_ANY.search(text)) else None)),
        *balanced,
        ("raw", lambda: text),
    ]
    for method, pick in strategies:
        ok, data = _try_parse(pick())
        if ok:
            return ExtractionResult(success=True, data=data, method=method)
    return ExtractionResult(success=False, data=default, error="no parseable JSON found")


def extract_object(text: str | None) -> dict[str, Any]:
    """Like ``extract_json`` but always returns a dict (empty when nothing usable was found)."""
    result = extract_json(text, default={})
    if isinstance(result.data, dict):
        return result.data
    if isinstance(result.data, list):
        for item in result.data:
            if isinstance(item, dict):
                return item
    return {}


def extract_list(text: str | None, *, key: str | None = None) -> list[Any]:
    """Return a JSON array from the text, or the array stored under ``key`` in an object."""
    result = extract_json(text, default=[])
    data = result.data
    if isinstance(data, dict) and key is not None:
        data = data.get(key, [])
    if isinstance(data, list):
        return data
    if result.method != "brackets":
        fallback = _try_parse(_balanced(text or "", "[", "]"))
        if fallback[0] and isinstance(fallback[1], list):
            return fallback[1]
    return []


__all__ = ["ExtractionResult", "extract_json", "extract_list", "extract_object", "sanitize_json_text"]
