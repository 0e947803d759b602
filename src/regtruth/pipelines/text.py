from __future__ import annotations

import re
import unicodedata

from bs4 import BeautifulSoup

_QUOTE_MAP = str.maketrans(
    {
        "‘": "'",
        "’": "'",
        "‚": "'",
        "“": '"',
        "”": '"',
        "„": '"',
        "«": '"',
        "»": '"',
        "–": "-",
        "—": "-",
        " ": " ",
        "­": None,
    }
)


def html_to_text(html: str | bytes) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript"]):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    return normalize_whitespace(root.get_text(" ", strip=True))


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_match(text: str) -> str:
    """Fold the differences that do not change meaning: width, quotes, soft hyphens, spacing."""
    folded = unicodedata.normalize("NFKC", text).translate(_QUOTE_MAP)
    return normalize_whitespace(folded).lower()


def quote_in_text(quote: str, text: str) -> bool:
    if not quote.strip():
        return False
    if quote in text:
        return True
    return normalize_for_match(quote) in normalize_for_match(text)


def printable_ratio(text: str) -> float:
    if not text:
        return 0.0
    printable = sum(1 for char in text if char.isprintable() or char in "\n\t")
    return printable / len(text)
