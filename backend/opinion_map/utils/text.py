"""Text normalisation and tokenisation helpers shared by embedding and labeling."""

from __future__ import annotations

import re
from typing import Iterable

_WHITESPACE = tuple("\u0009\u000a\u000b\u000c\u000d\u0020\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a\u202f\u205f\u3000")

_NON_WORD = re.compile(r"[^\w\s#@]")
_DIGITS = re.compile(r"^\d+$")

# English plus a minimal high-signal French list.
STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
        "being", "have", "has", "had", "do", "does", "did", "will", "would",
        "could", "should", "may", "might", "must", "can", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they", "rt",
        "https", "http", "com", "www",
        "le", "la", "les", "un", "une", "des", "du", "de", "d", "et", "ou", "mais",
        "en", "dans", "sur", "au", "aux", "pour", "par", "avec", "sans", "ce", "cet",
        "cette", "ces", "je", "tu", "il", "elle", "nous", "vous", "ils", "elles",
        "est", "sont", "été", "etre", "être", "as", "ai", "ont", "avoir", "fait",
        "plus", "moins", "très", "tres", "ici", "là", "pas", "ne",
    }
)


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""

    parts: list[str] = []
    current: list[str] = []
    for char in text:
        if char in _WHITESPACE:
            if current:
                parts.append("".join(current))
                current.clear()
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return " ".join(parts)


def keyword_tokens(text: str) -> list[str]:
    """Lower-cased tokens longer than two characters, minus stop words and bare numbers."""

    words = _NON_WORD.sub(" ", (text or "").lower()).split()
    return [
        word
        for word in words
        if len(word) > 2 and word not in STOP_WORDS and not _DIGITS.match(word)
    ]


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def join_nonempty(parts: Iterable[str | None], sep: str = "\n") -> str:
    return sep.join(part for part in parts if part).strip()
