# src/app/domain/models.py
"""
Domain models for the auto-find recipe pipeline.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class JobStatus(str, Enum):
    """Status enum for auto-find queue jobs."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobStage(str, Enum):
    """Pipeline stages, in the order a job moves through them."""
    QUEUED = "queued"
    NORMALIZING = "normalizing"
    FETCHING_SOURCES = "fetching_sources"
    GENERATING = "generating"
    VALIDATING = "validating"
    DEDUPING = "deduping"
    DUPLICATE_RESOLVED = "duplicate_resolved"
    PERSISTING = "persisting"
    PROVENANCE_WRITTEN = "provenance_written"
    REVIEW_TASK_CREATED = "review_task_created"
    REVISION_LOGGED = "revision_logged"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueryClassification(str, Enum):
    KNOWN_RECIPE = "known_recipe"
    VAGUE_DESCRIPTION = "vague_description"


class Difficulty(str, Enum):
    EASY = "Easy"
    MEDIUM = "Medium"
    HARD = "Hard"


class MatchType(str, Enum):
    EXACT = "exact"
    NAME = "name"
    INGREDIENTS = "ingredients"
    COMBINED = "combined"


AUTHENTICITY_AI_PENDING = "ai_pending"
REVIEW_STATUS_PENDING = "pending"
REVIEW_TYPE_CULTURAL = "cultural_authenticity"
REVISION_ACTION_AI_GENERATED = "ai_generated"


@dataclass(frozen=True)
class NormalizedQuery:
    """Canonical, diacritic-free view of a raw user query."""
    original_text: str
    canonical_form: str
    search_terms: str
    tokens: tuple[str, ...]
    detected_country: Optional[str] = None
    detected_ingredients: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.tokens


@dataclass(frozen=True)
class StructuredQuery:
    dish_name: str
    country: Optional[str]
    ingredients: tuple[str, ...]
    is_vague: bool


@dataclass
class FetchedSource:
    """Reference material retrieved from a trusted source."""
    url: str
    title: str
    domain: str
    excerpt_text: str
    trust_score: float
    snapshot_text: Optional[str] = None
    source_name: str = ""
    license: str = ""
    attribution_required: bool = True
    ingredients: list[str] = field(default_factory=list)


@dataclass
class SourceCitation:
    url: str
    title: str
    domain: str
    excerpt: str
    trust_score: float

    @classmethod
    def from_source(cls, source: FetchedSource) -> "SourceCitation":
        return cls(
            url=source.url,
            title=source.title,
            domain=source.domain,
            excerpt=source.excerpt_text,
            trust_score=source.trust_score,
        )


@dataclass
class AIMetadata:
    model_version: str
    generated_at: str
    confidence: float
    sources: list[SourceCitation] = field(default_factory=list)
    normalization_details: dict[str, Any] = field(default_factory=dict)
    extraction_notes: str = ""
    safety_warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GeneratedRecipe:
    """Structured recipe draft produced by the generation provider."""
    title: str
    ingredients: list[str]
    steps: list[str]
    cooking_time_minutes: Optional[int]
    difficulty: Optional[str]
    history_text: str
    ai_metadata: AIMetadata
    servings: Optional[int] = None
    plating_style: Optional[str] = None
    image_url: Optional[str] = None
    origin_country: Optional[str] = None
    origin_region: Optional[str] = None

    def to_validation_payload(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "ingredients": self.ingredients,
            "steps": self.steps,
            "cooking_time": self.cooking_time_minutes,
            "difficulty": self.difficulty,
            "history": self.history_text,
            "image": self.image_url,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DedupeMatch:
    matched_recipe_id: str
    similarity_score: float
    match_type: MatchType


@dataclass
class RecipeCandidate:
    """Existing recipe considered during near-duplicate scoring."""
    id: str
    title: str
    ingredients: list[str]


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class AutoFindJobPayload:
    """Input enqueued by the API for one auto-find request."""
    user_query: str
    normalized_query: str
    search_terms: str
    client_ip: str
    timestamp: str

    def to_dict(self) -> dict[str, str]:
        return {
            "userQuery": self.user_query,
            "normalizedQuery": self.normalized_query,
            "searchTerms": self.search_terms,
            "clientIp": self.client_ip,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoFindJobPayload":
        return cls(
            user_query=str(data.get("userQuery") or ""),
            normalized_query=str(data.get("normalizedQuery") or ""),
            search_terms=str(data.get("searchTerms") or ""),
            client_ip=str(data.get("clientIp") or ""),
            timestamp=str(data.get("timestamp") or ""),
        )


@dataclass
class AutoFindJob:
    """
    Represents an auto-find job in the queue.
    This is the core domain model for async recipe discovery.
    """
    id: UUID
    payload: AutoFindJobPayload
    status: JobStatus

    # Progress reporting
    stage: Optional[str] = None
    progress: Optional[float] = None

    # Queue management
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    # Retry handling
    attempt_count: int = 0
    max_attempts: int = 3
    next_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None

    # Timestamps
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Result (populated when DONE)
    recipe_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None

    @property
    def is_complete(self) -> bool:
        """Check if job has finished processing (successfully or not)."""
        return self.status in (JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def can_retry(self) -> bool:
        """Check if job can be retried."""
        return self.attempt_count < self.max_attempts


@dataclass
class AutoFindResult:
    """Output of a successful auto-find job (novel recipe or duplicate)."""
    recipe_id: Optional[str]
    success: bool = True
    title: Optional[str] = None
    confidence: Optional[float] = None
    sources_count: Optional[int] = None
    is_duplicate: bool = False
    reason: Optional[str] = None
    similarity_score: Optional[float] = None
    match_type: Optional[MatchType] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "recipeId": self.recipe_id}
        if self.is_duplicate:
            data["reason"] = self.reason
            data["isDuplicate"] = True
            if self.similarity_score is not None:
                data["similarityScore"] = self.similarity_score
            if self.match_type is not None:
                data["matchType"] = self.match_type.value
            return data

        if self.title is not None:
            data["title"] = self.title
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.sources_count is not None:
            data["sourcesCount"] = self.sources_count
        return data
