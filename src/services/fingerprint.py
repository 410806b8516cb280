# src/services/fingerprint.py
"""
Content fingerprints and approximate similarity used for deduplication.

Fingerprints are lowercase hex SHA-256 digests so they can be stored in a
text column and compared with a plain equality lookup.
"""
from __future__ import annotations

import hashlib
import re
from typing import Iterable

from src.services.normalizer import normalize_query, strip_diacritics

INGREDIENTS_HASH_DELIMITER = "|"

# Many-to-one: no value appears as a key, so applying the table twice is a no-op.
INGREDIENT_SYNONYMS = {
    "chile": "chili",
    "chilli": "chili",
    "cilantro": "coriander",
    "eggplant": "aubergine",
    "bell pepper": "capsicum",
    "garbanzo beans": "chickpeas",
    "garbanzo bean": "chickpea",
    "garbanzo": "chickpea",
    "yoghurt": "yogurt",
    "extra virgin olive oil": "olive oil",
    "scallion": "spring onion",
    "green onion": "spring onion",
    "courgette": "zucchini",
    "prawn": "shrimp",
    "maize": "corn",
}

_NON_WORD_RE = re.compile(r"[^\w]")
_UNITS = (
    r"cups?|tbsps?|tablespoons?|tsps?|teaspoons?|oz|ounces?|g|grams?|kg|lbs?|pounds?"
    r"|ml|l|liters?|litres?|pinch(?:es)?|handfuls?|cloves?|cans?"
)
_QUANTITY_UNIT_RE = re.compile(
    rf"^[\d½¼¾⅓⅔⅛]+(?:[.,/]\d+)?\s*(?:{_UNITS})\b\.?\s*(?:of\s+)?",
    re.IGNORECASE,
)
_LEADING_NUMBER_RE = re.compile(r"^[\d½¼¾⅓⅔⅛.,/\-\s]+")
_SYNONYM_RE = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in sorted(INGREDIENT_SYNONYMS, key=len, reverse=True)) + r")\b"
)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _fold(item: str) -> str:
    return _NON_WORD_RE.sub("", item.strip().lower())


def compute_fingerprint(title: str) -> str:
    """SHA-256 over the canonical form of a dish name."""
    return _sha256_hex(normalize_query(title).canonical_form)


def compute_ingredients_hash(ingredients: Iterable[str]) -> str:
    """Order-independent digest of an ingredient list."""
    normalized = sorted(
        folded
        for folded in (_fold(strip_diacritics(item.lower())) for item in ingredients)
        if folded
    )
    return _sha256_hex(INGREDIENTS_HASH_DELIMITER.join(normalized))


def levenshtein_distance(a: str, b: str) -> int:
    rows = len(a) + 1
    cols = len(b) + 1
    matrix = [[0] * cols for _ in range(rows)]

    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,
                matrix[i][j - 1] + 1,
                matrix[i - 1][j - 1] + cost,
            )

    return matrix[-1][-1]


def ingredients_similarity(first: Iterable[str], second: Iterable[str]) -> float:
    """Jaccard similarity of two ingredient lists, 0.0 when both are empty."""
    set_a = {_fold(item) for item in first}
    set_b = {_fold(item) for item in second}
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def calculate_dedupe_score(
    title_distance: int,
    ingredient_similarity: float,
    *,
    distance_cap: int = 10,
    name_weight: float = 0.4,
    ingredient_weight: float = 0.6,
) -> float:
    name_similarity = max(0.0, 1 - (title_distance / distance_cap))
    return name_similarity * name_weight + ingredient_similarity * ingredient_weight


def _canonical_synonym(match: re.Match[str]) -> str:
    return INGREDIENT_SYNONYMS[match.group(1)]


def normalize_ingredient(ingredient: str) -> str:
    normalized = ingredient.strip().lower()
    normalized = _QUANTITY_UNIT_RE.sub("", normalized)
    normalized = _LEADING_NUMBER_RE.sub("", normalized).strip()
    return _SYNONYM_RE.sub(_canonical_synonym, normalized)


def normalize_ingredients_list(ingredients: Iterable[str]) -> list[str]:
    """Strip quantities/units, collapse synonyms and drop empty entries."""
    return [item for item in (normalize_ingredient(ing) for ing in ingredients) if item]
