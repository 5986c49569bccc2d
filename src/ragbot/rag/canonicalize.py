"""Canonical text form used for every hash, chunk and offset downstream."""

from __future__ import annotations

import re

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_LIGATURES = {
    "ﬀ": "ff",
    "ﬁ": "fi",
    "ﬂ": "fl",
    "ﬃ": "ffi",
    "ﬄ": "ffl",
}
# letter, hyphen, newline, letter (digits and underscores excluded)
_WRAPPED_HYPHEN = re.compile(r"(?<=[^\W\d_])-\n(?=[^\W\d_])")
_HORIZONTAL_WS = re.compile(r"[ \t]+")
_TRAILING_WS = re.compile(r"[ \t]+$", flags=re.MULTILINE)
_BLANK_RUNS = re.compile(r"\n{3,}")


def canonicalize(raw: str) -> str:
    """Return the canonical form of ``raw``.

    Line endings become ``\\n``, control characters are dropped, NBSP and tabs
    become spaces, OCR ligatures are expanded, words hyphenated across a line
    break are rejoined, horizontal whitespace is collapsed, trailing whitespace
    per line is stripped, 3+ newlines collapse to one blank line and the whole
    document is trimmed. The function is pure and idempotent.
    """

    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\u00a0", " ").replace("\t", " ")
    text = _CONTROL_CHARS.sub("", text)
    for ligature, replacement in _LIGATURES.items():
        text = text.replace(ligature, replacement)
    text = _HORIZONTAL_WS.sub(" ", text)
    # trailing blanks must be gone before hyphenated line breaks are rejoined
    text = _TRAILING_WS.sub("", text)
    text = _WRAPPED_HYPHEN.sub("", text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()
