# src/app/infra/providers/base.py
"""
Abstract interfaces for the pipeline's external boundaries.
Retry and timeout behaviour lives behind these interfaces, never in the orchestrator.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from src.app.domain.models import (
    FetchedSource,
    GeneratedRecipe,
    NormalizedQuery,
    QueryClassification,
    StructuredQuery,
)


class SourceProvider(ABC):
    """
    Retrieves reference material from trusted public sources.

    Implementations:
    - TrustedSourceFetcher: whitelisted public APIs over httpx
    """

    @abstractmethod
    def fetch_trusted_sources(
        self,
        structured: StructuredQuery,
        classification: QueryClassification,
    ) -> list[FetchedSource]:
        """
        Fetch candidate sources for a structured query.

        Args:
            structured: The structured user query
            classification: Known recipe or vague description

        Returns:
            Sources ordered by trust score (highest first); empty on total failure
        """
        pass


class GenerationProvider(ABC):
    """
    Synthesizes a structured recipe from a query and its sources.

    Implementations:
    - GeminiRecipeGenerator: Google Gemini via google-genai
    """

    @abstractmethod
    def generate(
        self,
        structured: StructuredQuery,
        sources: list[FetchedSource],
        normalized: NormalizedQuery,
    ) -> GeneratedRecipe:
        """
        Generate a recipe draft.

        Raises:
            GenerationError: If the model call fails or returns unusable output
        """
        pass
