from __future__ import annotations

import re
import unicodedata
from typing import Optional, Union

LEADING_ARTICLES = ["de la", "de los", "de las", "del", "de", "la", "los", "las", "el"]

STREET_TYPE_ALIASES: dict[str, list[str]] = {
    "calle": ["c", "cl", "calle"],
    "avenida": ["av", "avd", "avda", "avenida"],
    "plaza": ["pl", "plz", "pz", "plaza"],
    "paseo": ["ps", "pso", "paseo"],
    "glorieta": ["gta", "glta", "glorieta"],
    "ronda": ["rda", "ronda"],
    "carretera": ["ctra", "carr", "carretera"],
    "travesia": ["trva", "travesia"],
}

DISTRICT_PATTERNS = [
    re.compile(r"^(\d+)\.\s*"),
    re.compile(r"^(\d+)\s*-\s*"),
    re.compile(r"^(\d+)\s+"),
    re.compile(r"^(\d+)$"),
    re.compile(r"distrito\s*(\d+)", re.IGNORECASE),
    re.compile(r"^(\d+)"),
]
MIN_DISTRICT = 1
MAX_DISTRICT = 21

LOWERCASE_PARTICLES = {
    "de", "del", "la", "las", "los", "el", "y", "e", "o", "u",
    "en", "con", "por", "para", "sin", "al", "a",
}

_PUNCTUATION = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def normalize(text: Optional[str]) -> str:
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFD", str(text).lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _PUNCTUATION.sub("", stripped)
    return _SPACES.sub(" ", stripped).strip()


def normalize_street_name(text: Optional[str]) -> str:
    normalized = normalize(text)
    for article in LEADING_ARTICLES:
        if normalized.startswith(article + " "):
            normalized = normalized[len(article) + 1:]
            break
    return normalized.strip()


def _build_reverse_aliases() -> dict[str, str]:
    reverse: dict[str, str] = {}
    for canonical, variants in STREET_TYPE_ALIASES.items():
        for variant in variants:
            reverse[variant] = canonical
    return reverse


_TYPE_LOOKUP = _build_reverse_aliases()


def canonical_street_type(text: Optional[str]) -> str:
    """Devuelve la clase de vía canónica (``"avda"`` -> ``"avenida"``)."""
    key = normalize(text)
    return _TYPE_LOOKUP.get(key, key)


def street_types_equivalent(first: Optional[str], second: Optional[str]) -> bool:
    a = normalize(first)
    b = normalize(second)
    if a == b:
        return True
    for variants in STREET_TYPE_ALIASES.values():
        if a in variants and b in variants:
            return True
    return False


def extract_district_number(value: Union[int, str, None]) -> int:
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if MIN_DISTRICT <= value <= MAX_DISTRICT else 0
    text = str(value).strip()
    if not text:
        return 0
    for pattern in DISTRICT_PATTERNS:
        match = pattern.search(text)
        if match:
            number = int(match.group(1))
            if MIN_DISTRICT <= number <= MAX_DISTRICT:
                return number
    return 0


class AddressNormalizer:
    """Presentación de nombres oficiales y detección de nombres de vía poco fiables."""

    def display_name(self, text: Optional[str]) -> str:
        if not text:
            return ""
        words = _SPACES.sub(" ", str(text).strip()).lower().split(" ")
        result = []
        for idx, word in enumerate(words):
            if idx > 0 and word in LOWERCASE_PARTICLES:
                result.append(word)
            else:
                result.append(word[:1].upper() + word[1:])
        return " ".join(result)

    def needs_manual_review(self, original: str, normalized: str) -> bool:
        if len(normalized) < 3:
            return True
        digits = sum(1 for ch in normalized if ch.isdigit())
        if digits > len(normalized) * 0.5:
            return True
        return abs(len(original) - len(normalized)) > len(original) * 0.3
