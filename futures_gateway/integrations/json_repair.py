from __future__ import annotations

import json
import re
from typing import Any

_CLOSERS = "}]"

_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*):")
_SINGLE_QUOTED_KEY = re.compile(r"([{,]\s*)'([^'\"]*)'(\s*):")
_MISSING_COMMA = re.compile(r"([0-9\"}\]]|\btrue|\bfalse|\bnull)(\s+)(\"|\{)")
_MISSING_COMMA_DIGIT_QUOTE = re.compile(r"(\d)(\")(?=[A-Za-z_])")
_ADJACENT_OBJECTS = re.compile(r"\}(\s*)\{")
_TRAILING_COMMA = re.compile(r",(\s*)([}\]])")
_LEADING_DOT = re.compile(r"([:\[,]\s*)(-?)\.(\d)")
_TRAILING_DOT = re.compile(r"(\d)\.(?=\s*[,}\]])")
_DANGLING_EXPONENT = re.compile(r"(\d)[eE][+-]?(?=\s*[,}\]])")
_PERCENT_SUFFIX = re.compile(r"(:\s*-?\d+(?:\.\d+)?)%")


def _count_unescaped_quotes(text: str) -> int:
    count = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
        elif ch == '"':
            count += 1
    return count


def _fix_braces(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return text
    text = text[start:].strip()

    missing = text.count("{") - text.count("}")
    if missing > 0:
        return text + "}" * missing

    end = text.rfind("}")
    if missing == 0 and end >= 0:
        return text[: end + 1]
    return text


def _quote_bare_keys(text: str) -> str:
    text = _SINGLE_QUOTED_KEY.sub(r'\1"\2"\3:', text)
    return _BARE_KEY.sub(r'\1"\2"\3:', text)


def _balance_quotes(text: str) -> str:
    if _count_unescaped_quotes(text) % 2 == 0:
        return text
    cut = len(text)
    while cut > 0 and (text[cut - 1] in _CLOSERS or text[cut - 1].isspace()):
        cut -= 1
    return text[:cut] + '"' + text[cut:]


def _insert_missing_commas(text: str) -> str:
    text = _ADJACENT_OBJECTS.sub(r"},\1{", text)
    text = _MISSING_COMMA_DIGIT_QUOTE.sub(r"\1,\2", text)
    return _MISSING_COMMA.sub(r"\1,\2\3", text)


def _strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1\2", text)


def _normalize_numbers(text: str) -> str:
    text = _LEADING_DOT.sub(r"\g<1>\g<2>0.\3", text)
    text = _TRAILING_DOT.sub(r"\1.0", text)
    text = _DANGLING_EXPONENT.sub(r"\1", text)
    return _PERCENT_SUFFIX.sub(r"\1", text)


_REPAIRS = (
    _fix_braces,
    _quote_bare_keys,
    _balance_quotes,
    _insert_missing_commas,
    _strip_trailing_commas,
    _normalize_numbers,
)


def repair_json_text(text: str) -> str:
    """Apply the ordered textual repairs to a malformed JSON object string."""
    for repair in _REPAIRS:
        text = repair(text)
    return text


def parse_frame(raw: Any) -> tuple[Any | None, bool]:
    """Parse a raw frame, repairing it only when it is not valid JSON.

    Returns ``(payload, repaired)``. ``payload`` is None when the frame could
    not be parsed even after repair.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    if isinstance(raw, dict):
        return raw, False
    if not isinstance(raw, str):
        return None, False

    try:
        return json.loads(raw), False
    except (ValueError, RecursionError):
        # ValueError also covers the int digit limit
        pass

    try:
        return json.loads(repair_json_text(raw)), True
    except (ValueError, RecursionError):
        return None, True
