"""Best-effort recovery of a JSON object from free-form model output.

Both helpers are total: they never raise and always return their best guess. Callers still
have to ``json.loads`` the result and handle failure.
"""

from __future__ import annotations

import json
import re


_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_NUMBER_RE = re.compile(r"-?(?:0|[1-9]\d*)(?:\.\d+)?(?:[eE][+-]?\d+)?")
_LITERALS = ("true", "false", "null")
_CLOSERS = {"{": "}", "[": "]"}

# Per-container parser states.
_KEY = "key"
_COLON = "colon"
_VALUE = "value"
_AFTER_VALUE = "after_value"


def extract_json(text: str) -> str:
    candidate = text.strip()
    if _parses(candidate):
        return candidate

    match = _FENCE_RE.search(candidate)
    if match and match.group(1):
        candidate = match.group(1).strip()

    first_brace = candidate.find("{")
    last_brace = candidate.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        return candidate[first_brace : last_brace + 1]
    return candidate


def repair_json(json_text: str) -> str:
    """Close whatever a premature cut left open.

    The text is scanned once, tracking string/escape state and a stack of unmatched ``{``/``[``
    with the position inside each container (expecting a key, a colon, a value, or a separator).
    At the end an open string is closed, a dangling key/colon/comma or half-written literal is
    completed or dropped, and the open containers are closed innermost first.
    """
    text = json_text
    stack: list[list[str]] = []
    in_string = False
    string_is_key = False
    escape = False
    unicode_left = 0
    unicode_start = -1
    scalar_start = -1

    for index, char in enumerate(text):
        if in_string:
            if unicode_left:
                unicode_left -= 1
                continue
            if escape:
                escape = False
                if char == "u":
                    unicode_left = 4
                    unicode_start = index - 1
                continue
            if char == "\\":
                escape = True
                continue
            if char == '"':
                in_string = False
                if stack:
                    stack[-1][1] = _COLON if string_is_key else _AFTER_VALUE
            continue

        if char in " \t\r\n":
            scalar_start = -1
            continue

        if char == '"':
            in_string = True
            string_is_key = bool(stack) and stack[-1][0] == "{" and stack[-1][1] == _KEY
            scalar_start = -1
            continue

        if char in "{[":
            stack.append([char, _KEY if char == "{" else _VALUE])
            scalar_start = -1
            continue

        if char in "}]":
            if stack and _CLOSERS[stack[-1][0]] == char:
                stack.pop()
                if stack:
                    stack[-1][1] = _AFTER_VALUE
            scalar_start = -1
            continue

        if char == ":":
            if stack and stack[-1][1] == _COLON:
                stack[-1][1] = _VALUE
            scalar_start = -1
            continue

        if char == ",":
            if stack:
                stack[-1][1] = _KEY if stack[-1][0] == "{" else _VALUE
            scalar_start = -1
            continue

        # Bare scalar characters: numbers and true/false/null.
        if scalar_start == -1:
            scalar_start = index
        if stack:
            stack[-1][1] = _AFTER_VALUE

    if in_string:
        if unicode_left:
            text = text[:unicode_start]
        elif escape:
            text = text[:-1]
        text += '"'
        if stack:
            stack[-1][1] = _COLON if string_is_key else _AFTER_VALUE
    elif scalar_start != -1:
        text = text[:scalar_start] + _complete_scalar(text[scalar_start:])

    if stack:
        kind, state = stack[-1]
        if state == _COLON:
            text += ":null"
        elif state == _VALUE and kind == "{":
            text += "null"
        elif state in (_KEY, _VALUE):
            text = _strip_trailing_comma(text)

    for kind, _state in reversed(stack):
        text += _CLOSERS[kind]
    return text


def _parses(text: str) -> bool:
    if not text:
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True


def _complete_scalar(token: str) -> str:
    if token in _LITERALS:
        return token
    for literal in _LITERALS:
        if literal.startswith(token):
            return literal
    match = _NUMBER_RE.match(token)
    if match:
        return match.group(0)
    return "null"


def _strip_trailing_comma(text: str) -> str:
    stripped = text.rstrip()
    if stripped.endswith(","):
        return stripped[:-1]
    return text
