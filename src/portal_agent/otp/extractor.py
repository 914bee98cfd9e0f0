"""Best-effort extraction of one-time codes from email text.

Keyword-qualified patterns are tried before bare digit runs. The bare 6- and
4-digit fallbacks can match unrelated numbers such as order ids or amounts
that appear in the body; that is accepted behavior of the heuristic.
"""

from __future__ import annotations

import re

CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"verification code[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"security code[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"confirmation code[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"your code[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"code[:\s]+(\d{4,8})", re.IGNORECASE),
    re.compile(r"\b(\d{6})\b"),
    re.compile(r"\b(\d{4})\b"),
)


def extract_code(body: str | None, subject: str | None = None) -> str | None:
    """Return the first code found in ``body``, then in ``subject``."""
    for text in (body, subject):
        if not text:
            continue
        code = _search(text)
        if code is not None:
            return code
    return None


def _search(text: str) -> str | None:
    for pattern in CODE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None
