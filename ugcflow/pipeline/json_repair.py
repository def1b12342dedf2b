"""
Structured-output repair parser.

LLM responses that should be JSON often arrive fenced in markdown, with
trailing commas, ``//`` comment lines, or cut off mid-object. ``parse_structured``
tries, in order:
  1. strip code fences and parse directly          → ParseOutcome "ok"
  2. syntactic repair (repair_json) and reparse    → ParseOutcome "repaired"
  3. give up, keeping the first error and raw text → ParseOutcome "failed"

Both successful paths normalise the value into the expected shape: a list
(bare, or under a known wrapper key) or an object.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

OK = "ok"
REPAIRED = "repaired"
FAILED = "failed"

DEFAULT_WRAPPER_KEYS = ("shots", "broll_shots", "segments", "items")

_FENCE_JSON = re.compile(r"```json\s*", re.IGNORECASE)
_FENCE = re.compile(r"```\s*")


@dataclass
class ParseOutcome:
    kind: str
    value: Any = None
    error: str = ""
    raw: str = ""

    @property
    def ok(self) -> bool:
        return self.kind != FAILED


def strip_fences(raw: str) -> str:
    return _FENCE.sub("", _FENCE_JSON.sub("", raw)).strip()


def _comment_line_end(text: str, i: int) -> int:
    """Index of the newline ending a ``//`` comment line starting at ``i``, else -1."""
    j = i
    while j < len(text) and text[j] in " \t\r":
        j += 1
    if not text.startswith("//", j):
        return -1
    end = text.find("\n", j)
    return len(text) if end == -1 else end


def repair_json(text: str) -> str:
    """
    Best-effort syntactic repair. Applying it twice gives the same text.

    Drops comment-only lines and trailing commas, closes an unterminated
    string, then appends the missing closers (braces first, then brackets).
    String contents are copied verbatim, so a ``,]`` or ``//`` inside a
    string value is left alone.
    """
    out = []
    comma = None  # position in out of a comma not yet followed by a value
    in_string = False
    escaped = False
    line_start = True
    braces = 0
    brackets = 0

    def emit(ch):
        nonlocal comma
        if ch in "]}" and comma is not None:
            del out[comma]
        comma = len(out) if ch == "," else None
        out.append(ch)

    i = 0
    while i < len(text):
        ch = text[i]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if line_start:
            line_start = False
            end = _comment_line_end(text, i)
            if end != -1:
                i = end
                continue

        if ch.isspace():
            out.append(ch)
            line_start = ch == "\n"
            i += 1
            continue

        emit(ch)
        if ch == '"':
            in_string = True
        elif ch == "{":
            braces += 1
        elif ch == "}":
            braces -= 1
        elif ch == "[":
            brackets += 1
        elif ch == "]":
            brackets -= 1
        i += 1

    if in_string:
        if escaped:
            # a lone trailing backslash would escape the closing quote
            out.pop()
        out.append('"')
        comma = None

    for closer in "}" * max(braces, 0) + "]" * max(brackets, 0):
        emit(closer)
    return "".join(out)


def _normalize(value: Any, expect: type, wrapper_keys, kind: str, raw: str) -> ParseOutcome:
    if expect is list:
        if isinstance(value, list):
            return ParseOutcome(kind, value=value, raw=raw)
        if isinstance(value, dict):
            for key in wrapper_keys:
                if isinstance(value.get(key), list):
                    return ParseOutcome(kind, value=value[key], raw=raw)
        return ParseOutcome(
            FAILED,
            error=f"Expected a JSON array (or one of {list(wrapper_keys)}), got {type(value).__name__}",
            raw=raw,
        )

    if isinstance(value, dict):
        return ParseOutcome(kind, value=value, raw=raw)
    return ParseOutcome(FAILED, error=f"Expected a JSON object, got {type(value).__name__}", raw=raw)


def parse_structured(raw: str, expect: type = list, wrapper_keys=DEFAULT_WRAPPER_KEYS) -> ParseOutcome:
    """Parse ``raw`` into ``expect`` (list or dict); never raises."""
    cleaned = strip_fences(raw or "")
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as e:
        first_error = str(e)
    else:
        return _normalize(value, expect, wrapper_keys, OK, raw)

    try:
        value = json.loads(repair_json(cleaned))
    except json.JSONDecodeError:
        return ParseOutcome(FAILED, error=first_error, raw=raw)
    return _normalize(value, expect, wrapper_keys, REPAIRED, raw)
