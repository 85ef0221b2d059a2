"""Turn unreliable model text into structured data.

The pipeline is a fixed sequence of small pure functions, applied in order:

  1. strip_fences      : unwrap ```json ... ``` (object fence, then array fence)
  2. find_json_span    : no fence: first [...] span, else first {...} span
  3. repair_json       : strip_trailing_commas, strip_ellipses,
                         close_open_string, balance_brackets
  4. parse             : json.loads; on failure, repair a minimal object that
                         carries the required key; on failure again, return
                         a copy of FALLBACK_PAYLOAD

extract_json() never raises. It guarantees syntactically valid data only;
callers still check the fields they need.
"""

import copy
import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

FALLBACK_PAYLOAD: dict[str, Any] = {
    "scene": "The story continues to unfold",
    "choices": [],
    "mood": "mysterious",
    "tension_level": 5,
}

_OBJECT_FENCE_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")
_ARRAY_FENCE_RE = re.compile(r"```(?:json)?\s*(\[[\s\S]*\])\s*```")
_ARRAY_SPAN_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_SPAN_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_ELLIPSIS_RE = re.compile(r"\.{3,}|…")


def strip_fences(text: str) -> str | None:
    """Return the JSON body of a fenced block, or None when there is no fence."""
    match = _OBJECT_FENCE_RE.search(text)
    if match:
        return match.group(1)
    match = _ARRAY_FENCE_RE.search(text)
    if match:
        return match.group(1)
    return None


def find_json_span(text: str) -> str | None:
    """First array-looking span, else first object-looking span.

    Arrays are checked first because choice lists are arrays; an array that
    sits inside an earlier object span belongs to that object and loses.
    """
    array = _ARRAY_SPAN_RE.search(text)
    obj = _OBJECT_SPAN_RE.search(text)
    if array and obj and obj.start() < array.start():
        return obj.group(0)
    if array:
        return array.group(0)
    if obj:
        return obj.group(0)
    return None


def isolate_json(text: str) -> str:
    text = text.strip()
    fenced = strip_fences(text)
    if fenced is not None:
        return fenced
    span = find_json_span(text)
    return span if span is not None else text


# ── Repair steps ─────────────────────────────────────────


def strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def strip_ellipses(text: str) -> str:
    """Drop truncation ellipses ("...", "....", "…")."""
    return _ELLIPSIS_RE.sub("", text)


def _scan(text: str) -> tuple[bool, list[str]]:
    """Walk the text once; return (inside_string_at_end, open_bracket_stack)."""
    in_string = False
    escaped = False
    stack: list[str] = []
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack and stack[-1] == ("{" if ch == "}" else "["):
            stack.pop()
    return in_string, stack


def close_open_string(text: str) -> str:
    """Terminate a string cut off mid-way, and fill a dangling value slot.

    `{"scene": "It was` becomes `{"scene": "It was"`; `{"scene": ` becomes
    `{"scene": ""`.
    """
    in_string, _ = _scan(text)
    if in_string:
        if text.endswith("\\"):
            text = text[:-1]
        text += '"'
    stripped = text.rstrip()
    if stripped.endswith(":"):
        text = stripped + ' ""'
    elif stripped.endswith(","):
        text = stripped[:-1]
    return text


def balance_brackets(text: str) -> str:
    """Append the closers for every bracket still open, innermost first."""
    _, stack = _scan(text)
    closers = "".join("}" if opener == "{" else "]" for opener in reversed(stack))
    return text + closers


_REPAIR_STEPS = (strip_trailing_commas, strip_ellipses, close_open_string, balance_brackets)


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except (ValueError, RecursionError):
        return False
    return True


def repair_json(text: str) -> str:
    """Apply the repair steps in order. Valid JSON is returned untouched."""
    text = text.strip()
    if _parses(text):
        return text
    for step in _REPAIR_STEPS:
        text = step(text)
    # Closing brackets can expose a new trailing comma: `[1, 2,` -> `[1, 2,]`.
    return strip_trailing_commas(text)


def _minimal_object(text: str, required_key: str) -> str | None:
    match = re.search(r'\{[^{}]*"' + re.escape(required_key) + r'"[^{}]*\}', text)
    return match.group(0) if match else None


def fallback_payload() -> dict[str, Any]:
    return copy.deepcopy(FALLBACK_PAYLOAD)


def extract_json(raw: str | bytes | None, required_key: str = "scene") -> Any:
    """Parse model output into a dict or list; never raises."""
    try:
        if raw is None:
            raw = ""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        candidate = repair_json(isolate_json(str(raw)))
        try:
            return json.loads(candidate)
        except (ValueError, RecursionError):
            pass

        minimal = _minimal_object(candidate, required_key)
        if minimal is not None:
            try:
                value = json.loads(repair_json(isolate_json(minimal)))
                logger.warning("Model output only partially recovered (key %r)", required_key)
                return value
            except (ValueError, RecursionError):
                pass
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected failure while extracting model output")

    logger.warning("Model output is not valid JSON, using fallback payload")
    return fallback_payload()


def extract_object(raw: str | bytes | None, required_key: str = "scene") -> dict[str, Any]:
    """Like extract_json, but always a dict (non-dict results become the fallback)."""
    value = extract_json(raw, required_key)
    if isinstance(value, dict):
        return value
    return fallback_payload()


def extract_list(raw: str | bytes | None) -> list[Any]:
    """Like extract_json, but always a list (non-list results become [])."""
    value = extract_json(raw, required_key="text")
    if isinstance(value, list):
        return value
    if isinstance(value, dict) and isinstance(value.get("choices"), list):
        return value["choices"]
    return []
