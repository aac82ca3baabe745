"""Tolerant decoding of language-model JSON answers.

Syntax repair (fences, unquoted keys, single quotes, comments, trailing
commas, truncated brackets) is delegated to ``json_repair``. Shapes are never
coerced here; schema validation happens afterwards.
"""

from __future__ import annotations

from typing import Any

from json_repair import repair_json

from shoespecs.core.errors import ResolverResponseError


def _decode(text: str) -> Any:
    return repair_json(text, return_objects=True)


def loads_tolerant(text: str) -> Any:
    """Decode a model answer into a JSON object or array.

    A JSON string whose content is itself JSON is unwrapped once.

    Raises ResolverResponseError when no object or array can be recovered.
    """
    raw = (text or "").strip()
    try:
        parsed = _decode(raw)
        if isinstance(parsed, str) and parsed.strip():
            parsed = _decode(parsed.strip())
    except (ValueError, RecursionError) as exc:
        raise ResolverResponseError(f"Invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict | list) or not parsed:
        raise ResolverResponseError(f"Invalid JSON: no object found in {raw[:80]!r}")
    return parsed
