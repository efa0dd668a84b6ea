import unicodedata
from typing import Any


def strip_accents(value: Any) -> str:
    decomposed = unicodedata.normalize("NFKD", str(value or ""))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def fold(text: Any) -> str:
    """Lower-case, accent-free text with runs of whitespace collapsed."""
    return " ".join(strip_accents(text).lower().split())
