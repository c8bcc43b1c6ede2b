"""Locate and decode the JSON payload inside an LLM response."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_DECODER = json.JSONDecoder()


def extract_json(text: str | None) -> dict | list | None:
    """Return the first JSON object or array found in *text*, or ``None``.

    Models wrap answers in markdown fences or lead with prose; fenced blocks
    are tried first, then the whole text, then every ``{``/``[`` position.
    """
    if not text or not text.strip():
        return None

    candidates = [m.group(1).strip() for m in _FENCE_RE.finditer(text)]
    candidates.append(text.strip())

    for candidate in candidates:
        found = _scan(candidate)
        if found is not None:
            return found
    return None


def _scan(text: str) -> dict | list | None:
    try:
        value = json.loads(text)
    except ValueError:
        value = None
    if isinstance(value, (dict, list)):
        return value

    for start, ch in enumerate(text):
        if ch not in "{[":
            continue
        try:
            value, _ = _DECODER.raw_decode(text, start)
        except ValueError:
            continue
        if isinstance(value, (dict, list)):
            return value
    return None
