"""
Capture parsing for `input` nodes.

Replies that cannot be converted are kept as the raw text (permissive);
callers get a `valid` flag so the Execution Log can record the miss.
"""
from __future__ import annotations

import re
from typing import Any

from models.schemas import ExpectedType

AFFIRMATIVE = ("sim", "yes", "ok", "pode", "s", "claro", "positivo")
NEGATIVE = ("não", "nao", "no", "n", "nunca", "negativo")

_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _parse_number(text: str) -> tuple[Any, bool]:
    digits = re.sub(r"\D", "", text)
    if not digits:
        return text, False
    return int(digits), True


def _parse_currency(text: str) -> tuple[Any, bool]:
    """'500 mil' → 500000, 'R$ 1.200.000' → 1200000, '2 milhões' → 2000000."""
    lowered = text.lower()
    number = re.search(r"\d[\d.,]*", lowered)
    if not number:
        return text, False

    raw = number.group(0)
    if "," in raw:
        # pt-BR: "." groups thousands and "," is the decimal mark
        raw = raw.replace(".", "").replace(",", ".")
    elif raw.count(".") > 1 or re.search(r"\.\d{3}$", raw):
        raw = raw.replace(".", "")
    try:
        value = float(raw.rstrip("."))
    except ValueError:
        return text, False

    if "milh" in lowered:
        value *= 1_000_000
    elif "mil" in lowered:
        value *= 1_000
    return value, True


def _parse_yes_no(text: str) -> tuple[Any, bool]:
    words = set(_WORD_RE.findall(text.lower()))
    if words & set(NEGATIVE):
        return False, True
    if words & set(AFFIRMATIVE):
        return True, True
    return text, False


def _parse_email(text: str) -> tuple[Any, bool]:
    match = _EMAIL_RE.search(text)
    return (match.group(0), True) if match else (text, False)


def _parse_phone(text: str) -> tuple[Any, bool]:
    digits = re.sub(r"\D", "", text)
    return (digits, True) if digits else (text, False)


_PARSERS = {
    ExpectedType.NUMBER: _parse_number,
    ExpectedType.CURRENCY: _parse_currency,
    ExpectedType.YES_NO: _parse_yes_no,
    ExpectedType.EMAIL: _parse_email,
    ExpectedType.PHONE: _parse_phone,
}


def parse_capture(expected_type: ExpectedType, text: str) -> tuple[Any, bool]:
    """Convert a reply into the expected type. Returns (value, valid)."""
    text = (text or "").strip()
    parser = _PARSERS.get(expected_type)
    if parser is None:
        return text, True
    return parser(text)
