"""
Variable interpolation for node text.

Placeholders are ``{{name}}`` (surrounding whitespace inside the braces is
ignored). Unknown or unset variables render as an empty string. A literal
``{{`` is written as ``\\{{`` and is emitted verbatim without being
treated as a placeholder.
"""
from __future__ import annotations

import json
from typing import Any

_OPEN = "{{"
_CLOSE = "}}"
_ESCAPE = "\\"


def format_value(value: Any) -> str:
    """Render a bound value as text. None and empty values become ""."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def interpolate(text: str, variables: dict[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders in `text` from `variables`."""
    if not text or _OPEN not in text:
        return text or ""

    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        if text.startswith(_ESCAPE + _OPEN, i):
            out.append(_OPEN)
            i += len(_ESCAPE) + len(_OPEN)
            continue

        if text.startswith(_OPEN, i):
            end = text.find(_CLOSE, i + len(_OPEN))
            if end == -1:
                # unterminated: keep the rest as-is
                out.append(text[i:])
                break
            name = text[i + len(_OPEN):end].strip()
            out.append(format_value(variables.get(name)) if name else "")
            i = end + len(_CLOSE)
            continue

        out.append(text[i])
        i += 1
    return "".join(out)


def interpolate_mapping(mapping: dict[str, str], variables: dict[str, Any]) -> dict[str, str]:
    """Interpolate every value of a string mapping (contact fields, headers)."""
    return {k: interpolate(v, variables) if isinstance(v, str) else v for k, v in mapping.items()}
