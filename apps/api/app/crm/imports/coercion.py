"""Classify model responses into entity collections or a tagged failure.

Everything downstream of ``interpret_response`` can assume the five entity lists exist and
are lists; the raw response shape is never trusted past this point.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from app.crm.imports.json_recovery import extract_json, repair_json


ENTITY_KEYS = ("companies", "contacts", "deals", "notes", "tasks")

TRUNCATED = "truncated"
MALFORMED_JSON = "malformed_json"
WRONG_SHAPE = "wrong_shape"

TRUNCATION_STOP_REASONS = frozenset({"max_tokens", "length"})

WRONG_SHAPE_MESSAGE = "AI response did not contain recognizable entity data"


@dataclass(frozen=True)
class Unusable:
    """A model response that did not yield a non-empty entity batch."""

    reason: str
    error: str
    stop_reason: str | None = None


def is_truncated(stop_reason: str | None) -> bool:
    return stop_reason in TRUNCATION_STOP_REASONS


def coerce(parsed: Any) -> dict[str, Any] | None:
    """Normalize a parsed model response into the five entity lists.

    A ``{"data": {...}}`` wrapper is unwrapped, object-shaped collections become lists of their
    values and anything else becomes an empty list. Keys other than the entity lists
    (``stageMappings``, ``warnings``, ``summary``) are carried through untouched. Returns ``None``
    when every list ends up empty, since that almost always means a misparse.
    """
    if not isinstance(parsed, dict):
        return None

    target = parsed
    wrapped = target.get("data")
    if isinstance(wrapped, dict) and any(wrapped.get(key) for key in ENTITY_KEYS):
        target = wrapped

    collections = dict(target)
    for key in ENTITY_KEYS:
        value = target.get(key)
        if isinstance(value, list):
            collections[key] = value
        elif isinstance(value, dict):
            collections[key] = list(value.values())
        else:
            collections[key] = []

    if not any(collections[key] for key in ENTITY_KEYS):
        return None
    return collections


def interpret_response(
    text: str,
    stop_reason: str | None,
    *,
    empty_list_key: str | None = None,
) -> dict[str, Any] | Unusable:
    """Turn one raw model response into entity collections or a classified failure.

    An all-empty result is a misparse unless ``empty_list_key`` names a key the response
    explicitly answered with a list, e.g. ``{"tasks": []}`` for a transcript with no action items.
    """
    truncated = is_truncated(stop_reason)
    json_text = extract_json(text)
    if truncated:
        json_text = repair_json(json_text)

    try:
        parsed = json.loads(json_text)
    except ValueError as exc:
        return Unusable(
            reason=TRUNCATED if truncated else MALFORMED_JSON,
            error=f"JSON parse failed: {exc}",
            stop_reason=stop_reason,
        )

    collections = coerce(parsed)
    if collections is None and not truncated and _answered_empty(parsed, empty_list_key):
        collections = {**parsed, **{key: [] for key in ENTITY_KEYS}}
    if collections is None:
        return Unusable(
            reason=TRUNCATED if truncated else WRONG_SHAPE,
            error=WRONG_SHAPE_MESSAGE,
            stop_reason=stop_reason,
        )
    return collections


def _answered_empty(parsed: Any, key: str | None) -> bool:
    return key is not None and isinstance(parsed, dict) and isinstance(parsed.get(key), list)
