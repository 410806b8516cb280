from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

from src.app.config import PipelineSettings
from src.app.domain.errors import GenerationParseError, RateLimitedError
from src.app.domain.models import (
    AIMetadata,
    Difficulty,
    FetchedSource,
    GeneratedRecipe,
    NormalizedQuery,
    SourceCitation,
    StructuredQuery,
)
from src.app.infra.providers.base import GenerationProvider

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = Path(__file__).parent / "prompts" / "autofind_system_prompt.txt"

CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$")
DEFAULT_COOKING_TIME = 30
DEFAULT_CONFIDENCE = 0.7
DEFAULT_PLATING_STYLE = "Traditional"
SAFETY_FLAGGED_WORDS = (
    "poison", "toxic", "disease", "harmful", "deadly",
    "racial", "ethnic slur", "stereotype", "offensive",
)


class ContentClient(Protocol):
    model_name: str

    def generate_content(self, user_prompt: str, system_prompt_path: Path) -> str:
        ...


def _truncate(value: object, limit: int) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped[:limit] if stripped else None


def _coerce_text_list(value: object, field_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise GenerationParseError(f"AI response field '{field_name}' must be a list")
    return [str(item).strip() for item in value if str(item).strip()]


def _coerce_cooking_time(value: object) -> int:
    try:
        minutes = int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_COOKING_TIME
    return max(1, min(1440, minutes))


def _coerce_difficulty(value: object) -> str:
    if isinstance(value, str):
        for difficulty in Difficulty:
            if value.strip().lower() == difficulty.value.lower():
                return difficulty.value
    return Difficulty.MEDIUM.value


def _coerce_confidence(value: object) -> float:
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, confidence))


def _coerce_servings(value: object) -> int | None:
    try:
        servings = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return servings if servings > 0 else None


def _rank_sources(sources: list[FetchedSource]) -> list[FetchedSource]:
    return sorted(sources, key=lambda source: source.trust_score, reverse=True)


def build_prompt(
    structured: StructuredQuery,
    sources: list[FetchedSource],
    normalized: NormalizedQuery,
) -> str:
    blocks = []
    for index, source in enumerate(_rank_sources(sources), start=1):
        lines = [
            f"Source {index}: {source.title} ({source.domain})",
            f"Trust Score: {source.trust_score}",
            f"Snippet: {source.excerpt_text}",
        ]
        if source.ingredients:
            lines.append(f"Ingredients: {', '.join(source.ingredients)}")
        if source.snapshot_text:
            lines.append(f"Extract: {source.snapshot_text[:2000]}")
        lines.append(f"URL: {source.url}")
        blocks.append("\n".join(lines))

    header = [f"Query: {structured.dish_name}"]
    if structured.country:
        header.append(f"Region: {structured.country}")
    if normalized.detected_ingredients:
        header.append(f"Mentioned ingredients: {', '.join(normalized.detected_ingredients)}")

    return (
        "Generate a recipe based on the following information:\n\n"
        + "\n".join(header)
        + "\n\nSOURCES:\n"
        + "\n---\n".join(blocks)
        + "\n\nPrefer higher-trust sources when choosing what to cite. Output JSON only."
    )


def _extract_json_object(content: str) -> dict[str, Any]:
    text = CODE_FENCE_PATTERN.sub("", content.strip()).strip()
    if not text:
        raise GenerationParseError("Model response did not include text content")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as error:
        raise GenerationParseError(f"Failed to parse AI response: {error}") from error

    if not isinstance(parsed, dict):
        raise GenerationParseError("Failed to parse AI response: expected a JSON object")
    return parsed


def _select_citations(parsed: dict[str, Any], sources: list[FetchedSource]) -> list[SourceCitation]:
    ranked = _rank_sources(sources)
    cited_urls = parsed.get("source_citations")
    if isinstance(cited_urls, list):
        cited = [source for source in ranked if source.url in cited_urls]
        if cited:
            return [SourceCitation.from_source(source) for source in cited]
    return [SourceCitation.from_source(source) for source in ranked]


def parse_ai_response(
    content: str,
    sources: list[FetchedSource],
    normalized: NormalizedQuery,
    model_version: str,
) -> GeneratedRecipe:
    """Map the model's JSON answer onto a GeneratedRecipe."""
    parsed = _extract_json_object(content)

    title = _truncate(parsed.get("title"), 255)
    if not title:
        raise GenerationParseError("AI generation failed to produce a recipe title")

    metadata = AIMetadata(
        model_version=model_version,
        generated_at=datetime.now(timezone.utc).isoformat(),
        confidence=_coerce_confidence(parsed.get("confidence")),
        sources=_select_citations(parsed, sources),
        normalization_details={
            "query_tokens": list(normalized.tokens),
            "detected_country": normalized.detected_country,
            "detected_ingredients": list(normalized.detected_ingredients),
        },
        extraction_notes=_truncate(parsed.get("extraction_notes"), 2000) or "",
    )

    return GeneratedRecipe(
        title=title,
        ingredients=_coerce_text_list(parsed.get("ingredients"), "ingredients"),
        steps=_coerce_text_list(parsed.get("steps"), "steps"),
        cooking_time_minutes=_coerce_cooking_time(parsed.get("cooking_time")),
        difficulty=_coerce_difficulty(parsed.get("difficulty")),
        history_text=_truncate(parsed.get("history"), 10_000) or "No history provided",
        servings=_coerce_servings(parsed.get("servings")),
        plating_style=_truncate(parsed.get("plating_style"), 255) or DEFAULT_PLATING_STYLE,
        image_url=_truncate(parsed.get("image"), 500),
        origin_country=_truncate(parsed.get("origin_country"), 100),
        origin_region=_truncate(parsed.get("origin_region"), 255),
        ai_metadata=metadata,
    )


def run_safety_checks(recipe: GeneratedRecipe) -> list[str]:
    """Collect warnings for moderators. Warnings never fail the job."""
    warnings: list[str] = []

    if len(recipe.title) < 3 or len(recipe.title) > 255:
        warnings.append("Recipe title is invalid length")

    if not recipe.ingredients:
        warnings.append("No ingredients provided")
    elif len(recipe.ingredients) > 100:
        warnings.append("Too many ingredients")

    if not recipe.steps:
        warnings.append("No cooking steps provided")
    elif len(recipe.steps) > 100:
        warnings.append("Too many steps")

    full_text = f"{recipe.title} {recipe.history_text} {' '.join(recipe.ingredients)}".lower()
    for word in SAFETY_FLAGGED_WORDS:
        if word in full_text:
            warnings.append(f'Potentially offensive content detected: "{word}"')

    if recipe.ai_metadata.confidence < 0.5:
        warnings.append("Low confidence score (<0.5) - should be marked for mandatory review")

    return warnings


class GeminiRecipeGenerator(GenerationProvider):
    def __init__(
        self,
        client: ContentClient,
        settings: PipelineSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self._sleep = sleep

    def generate(
        self,
        structured: StructuredQuery,
        sources: list[FetchedSource],
        normalized: NormalizedQuery,
    ) -> GeneratedRecipe:
        prompt = build_prompt(structured, sources, normalized)
        content = self._generate_with_retry(prompt)
        recipe = parse_ai_response(content, sources, normalized, model_version=self.client.model_name)
        recipe.ai_metadata.safety_warnings = run_safety_checks(recipe)

        if recipe.ai_metadata.safety_warnings:
            logger.warning(
                "Generated recipe has safety warnings: title=%r, warnings=%s",
                recipe.title,
                recipe.ai_metadata.safety_warnings,
            )
        return recipe

    def _generate_with_retry(self, prompt: str) -> str:
        max_attempts = self.settings.generation_max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                return self.client.generate_content(user_prompt=prompt, system_prompt_path=SYSTEM_PROMPT)
            except RateLimitedError as error:
                if attempt >= max_attempts:
                    raise RateLimitedError(str(error), attempts=attempt) from error
                delay = self.settings.generation_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Generation rate limited, retrying in %.1fs (attempt=%d/%d)",
                    delay,
                    attempt,
                    max_attempts,
                )
                self._sleep(delay)

        raise RateLimitedError(attempts=max_attempts)
