# src/services/validation.py
from __future__ import annotations

from typing import Any, Mapping, Union

from src.app.domain.models import Difficulty, GeneratedRecipe, ValidationResult
from src.services.normalizer import normalize_query

MAX_TITLE_LENGTH = 255
MAX_LIST_ENTRIES = 100
MIN_COOKING_TIME = 1
MAX_COOKING_TIME = 1440
MAX_HISTORY_LENGTH = 10_000
MAX_IMAGE_URL_LENGTH = 500
ALLOWED_DIFFICULTIES = tuple(d.value for d in Difficulty)


def _validate_title(title: Any, errors: list[str]) -> None:
    if not isinstance(title, str) or not title.strip():
        errors.append("Title is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"Title exceeds {MAX_TITLE_LENGTH} characters")
    elif not normalize_query(title).canonical_form:
        # Such a title would fingerprint to the digest of an empty string.
        errors.append("Title must contain at least one letter or digit")


def _validate_list(value: Any, singular: str, plural: str, errors: list[str]) -> None:
    if not value:
        errors.append(f"At least one {singular} is required")
    elif not isinstance(value, (list, tuple)):
        errors.append(f"{plural.capitalize()} must be a list")
    elif len(value) > MAX_LIST_ENTRIES:
        errors.append(f"Too many {plural}")


def _validate_cooking_time(value: Any, errors: list[str]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append("Cooking time must be a number of minutes")
    elif not MIN_COOKING_TIME <= value <= MAX_COOKING_TIME:
        errors.append(f"Cooking time must be between {MIN_COOKING_TIME} and {MAX_COOKING_TIME} minutes")


def validate_recipe_data(candidate: Union[Mapping[str, Any], GeneratedRecipe]) -> ValidationResult:
    """
    Check a recipe before insertion.

    Every defect is collected so the caller sees the full list at once.
    """
    data = candidate.to_validation_payload() if isinstance(candidate, GeneratedRecipe) else candidate
    errors: list[str] = []

    _validate_title(data.get("title"), errors)
    _validate_list(data.get("ingredients"), "ingredient", "ingredients", errors)
    _validate_list(data.get("steps"), "step", "steps", errors)
    _validate_cooking_time(data.get("cooking_time"), errors)

    difficulty = data.get("difficulty")
    if difficulty and difficulty not in ALLOWED_DIFFICULTIES:
        errors.append("Difficulty must be Easy, Medium, or Hard")

    history = data.get("history")
    if history is not None and not isinstance(history, str):
        errors.append("History must be text")
    elif history and len(history) > MAX_HISTORY_LENGTH:
        errors.append("History exceeds character limit")

    image = data.get("image")
    if image is not None and not isinstance(image, str):
        errors.append("Image URL must be text")
    elif image and len(image) > MAX_IMAGE_URL_LENGTH:
        errors.append(f"Image URL exceeds {MAX_IMAGE_URL_LENGTH} characters")

    return ValidationResult(is_valid=not errors, errors=errors)
