# src/services/normalizer.py
"""Query normalization: lowercase, strip diacritics, tokenize, detect entities."""
from __future__ import annotations

import re
import unicodedata

from src.app.domain.models import NormalizedQuery, StructuredQuery

# Curated country/region names, as they appear in user queries.
KNOWN_COUNTRIES = (
    "india", "indian", "italy", "italian", "china", "chinese", "japan", "japanese",
    "mexico", "mexican", "france", "french", "thai", "thailand", "spain", "spanish",
    "korea", "korean", "greece", "greek", "middle eastern", "middle east", "persian",
    "iran", "turkish", "turkey", "egypt", "egyptian", "vietnamese", "vietnam",
    "portugal", "portuguese", "german", "germany", "swiss", "switzerland", "nordic",
    "swedish", "norwegian", "danish", "finnish", "morocco", "moroccan", "lebanon",
    "lebanese", "syrian", "israeli", "palestinian", "indonesian", "indonesia",
    "malaysian", "malaysia", "singapore", "philippine", "filipino", "bengali",
    "punjabi", "south african", "ethiopia", "ethiopian", "nigerian", "ghanaian",
    "brazil", "brazilian", "caribbean", "jamaican", "cuban", "colombian", "peruvian",
    "peru", "argentinian", "argentina", "chilean", "polish", "hungarian", "russian",
    "ukrainian",
)

COMMON_INGREDIENTS = (
    "pasta", "rice", "chicken", "beef", "pork", "lamb", "fish", "seafood", "shrimp",
    "vegetable", "bean", "lentil", "chickpea", "garlic", "onion", "pepper", "tomato",
    "potato", "cheese", "herb", "spice", "oil", "bread", "noodle", "meat", "tofu",
    "vegetarian", "vegan", "gluten", "dairy", "egg", "mushroom", "coconut",
)

HEDGING_WORDS = frozenset({
    "soft", "easy", "simple", "something", "maybe", "kind", "sort", "whatever",
})

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")
# Whole-word matches only, so glued tokens such as "italianstyle" or "perusal"
# detect no country even though they contain a known name.
_COUNTRY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(c) for c in sorted(set(KNOWN_COUNTRIES), key=len, reverse=True)) + r")\b"
)


def strip_diacritics(text: str) -> str:
    """Remove combining marks after NFD decomposition (é -> e, ñ -> n)."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def tokenize(text: str) -> list[str]:
    clean = strip_diacritics(text.strip().lower())
    clean = _PUNCTUATION_RE.sub(" ", clean)
    return [token for token in _WHITESPACE_RE.split(clean) if token]


def detect_country(search_terms: str) -> str | None:
    # Earliest phrase in the query wins; longest alternative first at the same position.
    match = _COUNTRY_RE.search(search_terms)
    return match.group(0) if match else None


def detect_ingredients(tokens: list[str]) -> list[str]:
    found: list[str] = []
    for token in tokens:
        if token in found:
            continue
        if any(ingredient in token for ingredient in COMMON_INGREDIENTS):
            found.append(token)
    return found


def normalize_query(raw_text: str) -> NormalizedQuery:
    """
    Turn raw user text into its canonical, tokenized form.

    Empty or whitespace-only input yields no tokens and an empty canonical
    form; callers are expected to reject such queries before queuing.
    """
    tokens = tokenize(raw_text)
    search_terms = " ".join(tokens)

    return NormalizedQuery(
        original_text=raw_text.strip(),
        canonical_form="_".join(tokens),
        search_terms=search_terms,
        tokens=tuple(tokens),
        detected_country=detect_country(search_terms),
        detected_ingredients=tuple(detect_ingredients(tokens)),
    )


def structure_query(query: NormalizedQuery) -> StructuredQuery:
    is_vague = len(query.tokens) <= 2 or any(token in HEDGING_WORDS for token in query.tokens)

    return StructuredQuery(
        dish_name=query.search_terms,
        country=query.detected_country,
        ingredients=query.detected_ingredients,
        is_vague=is_vague,
    )
