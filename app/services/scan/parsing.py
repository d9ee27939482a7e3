"""Best-effort decoding of JSON payloads embedded in model output."""

from __future__ import annotations

import json
from typing import Any

_ARRAY_KEYS = ("candidates", "results", "items", "innovations", "matches")


def _strip_fences(raw_text: str) -> str:
    candidate = raw_text.strip()
    if candidate.startswith("```"):
        candidate = "\n".join(
            line for line in candidate.splitlines() if not line.strip().startswith("```")
        ).strip()
    return candidate


def parse_json_object(raw_text: str) -> dict[str, Any]:
    """Decode a JSON object, tolerating code fences or surrounding prose."""
    candidate = _strip_fences(raw_text)
    if candidate.startswith("{") and candidate.endswith("}"):
        payload = json.loads(candidate)
    else:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise ValueError("Response did not contain JSON object.")
        payload = json.loads(candidate[start : end + 1])
    if not isinstance(payload, dict):
        raise ValueError("Response JSON was not an object.")
    return payload


def parse_json_array(raw_text: str) -> list[Any]:
    """Decode the single array-shaped payload embedded in ``raw_text``.

    Accepts a bare array, an object wrapping the array under a well-known key
    (or as its only list value), and either form surrounded by fences or prose.
    """
    candidate = _strip_fences(raw_text)
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError:
        payload = None

    if payload is None:
        start = candidate.find("[")
        end = candidate.rfind("]")
        if start == -1 or end == -1 or end <= start:
            raise ValueError("Response did not contain a JSON array.")
        payload = json.loads(candidate[start : end + 1])

    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in _ARRAY_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
        lists = [value for value in payload.values() if isinstance(value, list)]
        if len(lists) == 1:
            return lists[0]
    raise ValueError("Response JSON did not carry a candidate array.")
