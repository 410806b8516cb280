# src/app/services/dedupe_service.py
"""
Duplicate detection for generated recipes.

An exact name-fingerprint lookup runs first; failing that, a bounded set of
existing recipes is scored with title edit distance and ingredient overlap.
"""
from __future__ import annotations

import logging
from typing import Optional

from src.app.config import PipelineSettings
from src.app.domain.errors import DedupeCheckError
from src.app.domain.models import DedupeMatch, GeneratedRecipe, MatchType, RecipeCandidate
from src.app.infra.db.base import RecipeStore
from src.services.fingerprint import (
    calculate_dedupe_score,
    compute_fingerprint,
    ingredients_similarity,
    levenshtein_distance,
    normalize_ingredients_list,
)

logger = logging.getLogger(__name__)


def _fold_title(title: str) -> str:
    return " ".join(title.casefold().split())


def _ingredient_set(ingredients: list[str]) -> set[str]:
    return {item.casefold() for item in normalize_ingredients_list(ingredients)}


def classify_match(
    generated: GeneratedRecipe,
    candidate: RecipeCandidate,
) -> MatchType:
    """Describe which signal made a candidate a duplicate."""
    if _fold_title(generated.title) == _fold_title(candidate.title):
        return MatchType.NAME
    generated_set = _ingredient_set(generated.ingredients)
    if generated_set and generated_set == _ingredient_set(candidate.ingredients):
        return MatchType.INGREDIENTS
    return MatchType.COMBINED


class DedupeService:
    def __init__(self, recipe_store: RecipeStore, settings: PipelineSettings) -> None:
        self.recipe_store = recipe_store
        self.settings = settings

    def score_candidate(self, generated: GeneratedRecipe, candidate: RecipeCandidate) -> float:
        distance = levenshtein_distance(_fold_title(generated.title), _fold_title(candidate.title))
        similarity = ingredients_similarity(
            normalize_ingredients_list(generated.ingredients),
            normalize_ingredients_list(candidate.ingredients),
        )
        return calculate_dedupe_score(
            distance,
            similarity,
            distance_cap=self.settings.dedupe_title_distance_cap,
            name_weight=self.settings.dedupe_name_weight,
            ingredient_weight=self.settings.dedupe_ingredient_weight,
        )

    def find_duplicate(self, generated: GeneratedRecipe) -> Optional[DedupeMatch]:
        """
        Look for an existing recipe that the generated one duplicates.

        Args:
            generated: The validated recipe draft

        Returns:
            The match, or None when the recipe is novel

        Raises:
            DedupeCheckError: If the check fails and fail-open is disabled
        """
        try:
            return self._find_duplicate(generated)
        except Exception as exc:
            if not self.settings.dedupe_fail_open:
                raise DedupeCheckError(f"Deduplication check failed: {exc}") from exc
            logger.warning(
                "Dedupe check failed, treating recipe as novel: title=%r, error=%s",
                generated.title,
                exc,
            )
            return None

    def _find_duplicate(self, generated: GeneratedRecipe) -> Optional[DedupeMatch]:
        fingerprint = compute_fingerprint(generated.title)
        existing_id = self.recipe_store.find_by_fingerprint(fingerprint)
        if existing_id:
            logger.info("Exact fingerprint match: title=%r, recipe=%s", generated.title, existing_id)
            return DedupeMatch(
                matched_recipe_id=existing_id,
                similarity_score=1.0,
                match_type=MatchType.EXACT,
            )

        candidates = self.recipe_store.list_dedupe_candidates(
            statuses=list(self.settings.dedupe_candidate_statuses),
            limit=self.settings.dedupe_candidate_limit,
        )

        best: Optional[tuple[float, RecipeCandidate]] = None
        for candidate in candidates[: self.settings.dedupe_candidate_limit]:
            score = self.score_candidate(generated, candidate)
            if score < self.settings.dedupe_threshold:
                continue
            if self.settings.dedupe_strategy == "first":
                best = (score, candidate)
                break
            if best is None or score > best[0]:
                best = (score, candidate)

        if best is None:
            logger.debug("No duplicate among %d candidates: title=%r", len(candidates), generated.title)
            return None

        score, candidate = best
        logger.info(
            "Near-duplicate found: title=%r, recipe=%s, score=%.3f",
            generated.title,
            candidate.id,
            score,
        )
        return DedupeMatch(
            matched_recipe_id=candidate.id,
            similarity_score=min(1.0, score),
            match_type=classify_match(generated, candidate),
        )
