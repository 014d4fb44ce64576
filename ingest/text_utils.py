"""Text normalization helpers: slugs, prices, whitespace, boilerplate stripping."""

import re
from typing import List, Optional, Pattern, Tuple

from slugify import slugify as _slugify

from ingest.config import DESCRIPTION_SENTENCES

__all__ = [
    "slugify",
    "parse_price",
    "collapse_ws",
    "limit_sentences",
    "DROP_PATTERNS",
    "strip_boilerplate",
    "sanitize_text",
    "sanitize_description",
    "normalize_case",
    "title_key",
    "title_sort_key",
]

WS_RE = re.compile(r"[\s ]+")
SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
DIGITS_RE = re.compile(r"\d+")

# Marketplace boilerplate: everything from the marker to the end is dropped
DROP_PATTERNS: List[Pattern[str]] = [
    re.compile(r"Найти\s+похож[иы]е", re.IGNORECASE),
    re.compile(r"Сообщить\s+о\s+неточности.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Магазин\s+и\s+адрес.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Режим\s+работы.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Телефон.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Доступность.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Склад.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Комплекс-?Бар.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Под\s+заказ.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"По\s+вашему\s+запросу.*", re.IGNORECASE | re.DOTALL),
    re.compile(r"Двигайте\s+карту.*", re.IGNORECASE | re.DOTALL),
]

# Abbreviations restored after title-casing an ALL CAPS value
KEEP_UPPER: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"\bсвч\b", re.IGNORECASE), "СВЧ"),
    (re.compile(r"\bпмм\b", re.IGNORECASE), "ПММ"),
]


def slugify(title: str) -> str:
    """Deterministic, lowercase, ASCII, hyphen-separated slug for a title.

    Cyrillic is transliterated, e.g. ``"Тарелка 27 см"`` -> ``"tarelka-27-sm"``.
    """
    if not title:
        return ""
    return _slugify(title, lowercase=True)


def parse_price(text: Optional[str]) -> Optional[int]:
    """Parse a price out of noisy currency text.

    Whitespace (including NBSP thousands separators) is removed and the first
    run of digits is taken. Returns None when there are no digits or the
    amount is zero; an unknown price is never reported as 0.

        >>> parse_price("12 500 ₸")
        12500
        >>> parse_price("Цена по запросу") is None
        True
    """
    if not text:
        return None
    match = DIGITS_RE.search(WS_RE.sub("", str(text)))
    if not match:
        return None
    value = int(match.group(0))
    return value or None


def collapse_ws(text: Optional[str]) -> str:
    return WS_RE.sub(" ", str(text or "")).strip()


def limit_sentences(text: str, max_sentences: int = DESCRIPTION_SENTENCES) -> str:
    """Keep at most ``max_sentences`` sentences, joined by single spaces."""
    parts = [p for p in SENTENCE_SPLIT_RE.split(collapse_ws(text)) if p]
    return " ".join(parts[:max_sentences])


def strip_boilerplate(text: str) -> str:
    """Remove marketplace boilerplate until nothing more matches."""
    out = collapse_ws(text)
    while True:
        cleaned = out
        for pattern in DROP_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        cleaned = collapse_ws(cleaned)
        if cleaned == out:
            return out
        out = cleaned


def normalize_case(text: str) -> str:
    """Title-case ALL CAPS text, keeping known abbreviations upper case."""
    t = collapse_ws(text)
    if not t:
        return t
    if t == t.upper() and t != t.lower():
        words = t.lower().split(" ")
        out = " ".join(w[:1].upper() + w[1:] for w in words)
        for pattern, repl in KEEP_UPPER:
            out = pattern.sub(repl, out)
        return out
    return t


def sanitize_text(text: Optional[str]) -> str:
    """Collapse whitespace, strip boilerplate and normalize casing of a value."""
    return normalize_case(strip_boilerplate(text or ""))


def sanitize_description(text: Optional[str], max_sentences: int = DESCRIPTION_SENTENCES) -> str:
    """Sanitize a description and cap its sentence count.

    Idempotent: ``sanitize_description(sanitize_description(x)) == sanitize_description(x)``.
    """
    return limit_sentences(strip_boilerplate(text or ""), max_sentences)


def title_key(title: Optional[str]) -> str:
    """Normalized title used for duplicate detection."""
    return collapse_ws(title).casefold().replace("ё", "е")


def title_sort_key(title: Optional[str], slug: str = "") -> Tuple[str, str]:
    """Deterministic sort key: casefolded title with ``ё`` folded to ``е``, then slug."""
    return (title_key(title), slug or "")
