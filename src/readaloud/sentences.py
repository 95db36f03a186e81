"""
Sentence splitting for speech playback.

Periods that must not end a sentence (ellipses, decimals, abbreviations,
initials) are marked in a side array aligned with the text instead of being
rewritten, so no character is reserved as a placeholder.
"""

from __future__ import annotations

import re

ABBREVIATIONS = (
    "Mr", "Mrs", "Ms", "Dr", "Prof", "Sr", "Jr", "Rev", "Gen",
    "Sgt", "Cpl", "Pvt", "St", "vs", "etc", "Inc", "Ltd", "Corp",
    "Co", "Vol", "No", "Dept", "approx", "est", "min", "max", "fig",
    "Jan", "Feb", "Mar", "Apr", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
    "Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun",
)

_ELLIPSIS_RE = re.compile(r"\.{2,}")
_DECIMAL_RE = re.compile(r"(?<=\d)\.(?=\d)")
_ABBREV_RE = re.compile(r"\b(?:" + "|".join(ABBREVIATIONS) + r")(\.)", re.IGNORECASE)
_INITIAL_RE = re.compile(r"\b[A-Z](\.)(?=\s*[A-Z]|$)")
_BOUNDARY_RE = re.compile(r"[.?!][”’\"']?(\s+)(?=[A-Z“‘\"'(])")


def _protected_periods(text: str) -> list[bool]:
    protected = [False] * len(text)
    for match in _ELLIPSIS_RE.finditer(text):
        for pos in range(match.start(), match.end()):
            protected[pos] = True
    for match in _DECIMAL_RE.finditer(text):
        protected[match.start()] = True
    for pattern in (_ABBREV_RE, _INITIAL_RE):
        for match in pattern.finditer(text):
            protected[match.start(1)] = True
    return protected


def tokenize_sentences(text: str) -> list[str]:
    """Split a paragraph into trimmed sentences, punctuation kept on the left."""
    text = " ".join(text.split())
    if not text:
        return []
    protected = _protected_periods(text)
    pieces: list[str] = []
    start = 0
    for match in _BOUNDARY_RE.finditer(text):
        if protected[match.start()]:
            continue
        pieces.append(text[start : match.start(1)])
        start = match.end(1)
    pieces.append(text[start:])
    return [piece.strip() for piece in pieces if len(piece.strip()) > 1]
