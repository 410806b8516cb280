# src/app/services/autofind_pipeline.py
"""
Job orchestrator for auto-find.

Runs one job through normalize, classify, fetch, generate, validate, dedupe
and persist, reporting stage and progress along the way. Errors are logged to
the execution log and re-raised so the queue decides whether to retry.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import UUID

from src.app.domain.errors import (
    DuplicateRecipeError,
    EmptyQueryError,
    JobRepositoryError,
    NoTrustedSourcesError,
    RecipeValidationError,
)
from src.app.domain.models import (
    AUTHENTICITY_AI_PENDING,
    REVIEW_STATUS_PENDING,
    REVIEW_TYPE_CULTURAL,
    REVISION_ACTION_AI_GENERATED,
    AutoFindJob,
    AutoFindJobPayload,
    AutoFindResult,
    DedupeMatch,
    ExecutionStatus,
    FetchedSource,
    GeneratedRecipe,
    JobStage,
    MatchType,
)
from src.app.infra.db.base import AutoFindJobRepository, RecipeStore
from src.app.infra.providers.base import GenerationProvider, SourceProvider
from src.app.services.dedupe_service import DedupeService
from src.services.classifier import classify_query
from src.services.fingerprint import (
    compute_fingerprint,
    compute_ingredients_hash,
    normalize_ingredients_list,
)
from src.services.normalizer import normalize_query, structure_query
from src.services.validation import validate_recipe_data

logger = logging.getLogger(__name__)

DUPLICATE_REASON = "Existing recipe found"
REVISION_ACTOR_ROLE = "system"
REVISION_REASON = "Auto-generated from user query"

STAGE_PROGRESS = {
    JobStage.NORMALIZING: 10.0,
    JobStage.FETCHING_SOURCES: 20.0,
    JobStage.GENERATING: 40.0,
    JobStage.VALIDATING: 60.0,
    JobStage.DEDUPING: 70.0,
    JobStage.DUPLICATE_RESOLVED: 75.0,
    JobStage.PERSISTING: 80.0,
    JobStage.PROVENANCE_WRITTEN: 85.0,
    JobStage.REVIEW_TASK_CREATED: 90.0,
    JobStage.REVISION_LOGGED: 95.0,
    JobStage.COMPLETED: 100.0,
}


class ProgressReporter:
    """Pushes stage changes to the job row. Progress never goes backwards."""

    def __init__(self, job_id: UUID, job_repo: AutoFindJobRepository) -> None:
        self.job_id = job_id
        self.job_repo = job_repo
        self.stage: Optional[JobStage] = None
        self.progress = 0.0
        self.history: list[tuple[JobStage, float]] = []

    def advance(self, stage: JobStage) -> None:
        target = STAGE_PROGRESS.get(stage)
        if target is not None and target > self.progress:
            self.progress = target
        self.stage = stage
        self.history.append((stage, self.progress))

        self.job_repo.update_job_progress(
            job_id=self.job_id,
            stage=stage.value,
            progress=self.progress,
        )

    def fail(self) -> None:
        self.stage = JobStage.FAILED
        self.history.append((JobStage.FAILED, self.progress))
        self.job_repo.update_job_progress(job_id=self.job_id, stage=JobStage.FAILED.value)


def build_recipe_row(generated: GeneratedRecipe) -> dict[str, Any]:
    """Map a generated recipe onto the columns of the recipes table."""
    return {
        "title": generated.title,
        "canonical_name": normalize_query(generated.title).canonical_form,
        "name_fingerprint": compute_fingerprint(generated.title),
        "ingredients_hash": compute_ingredients_hash(normalize_ingredients_list(generated.ingredients)),
        "ingredients_text": "\n".join(generated.ingredients),
        "steps_text": "\n".join(generated.steps),
        "cooking_time_minutes": generated.cooking_time_minutes,
        "difficulty": generated.difficulty,
        "servings": generated.servings,
        "history_text": generated.history_text,
        "plating_style": generated.plating_style,
        "origin_country": generated.origin_country,
        "origin_region": generated.origin_region,
        "image_url": generated.image_url,
        "authenticity_status": AUTHENTICITY_AI_PENDING,
        "ai_metadata": generated.ai_metadata.to_dict(),
        "review_requested": True,
    }


class AutoFindPipeline:
    def __init__(
        self,
        job_repository: AutoFindJobRepository,
        recipe_store: RecipeStore,
        source_provider: SourceProvider,
        generation_provider: GenerationProvider,
        dedupe_service: DedupeService,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.job_repo = job_repository
        self.recipe_store = recipe_store
        self.source_provider = source_provider
        self.generator = generation_provider
        self.dedupe = dedupe_service
        self._clock = clock

    def process(self, job: AutoFindJob) -> AutoFindResult:
        """
        Run a locked job to a terminal state.

        Args:
            job: The job returned by fetch_and_lock_next_job

        Returns:
            The result for a new recipe or a resolved duplicate

        Raises:
            AutoFindError: Any stage failure, after the execution log is closed as failed
        """
        started = self._clock()
        attempt = max(job.attempt_count, 1)
        reporter = ProgressReporter(job.id, self.job_repo)
        self._open_log(job.id, attempt)

        try:
            result = self._run(job.payload, reporter)
        except Exception as exc:
            elapsed_ms = self._elapsed_ms(started)
            logger.error(
                "Auto-find failed: job=%s, stage=%s, elapsed_ms=%d, error=%s",
                job.id,
                reporter.stage.value if reporter.stage else None,
                elapsed_ms,
                exc,
            )
            reporter.fail()
            self._close_log(job.id, attempt, ExecutionStatus.FAILED, None, str(exc), elapsed_ms)
            raise

        elapsed_ms = self._elapsed_ms(started)
        self._close_log(job.id, attempt, ExecutionStatus.COMPLETED, result.recipe_id, None, elapsed_ms)
        logger.info(
            "Auto-find completed: job=%s, recipe=%s, duplicate=%s, elapsed_ms=%d",
            job.id,
            result.recipe_id,
            result.is_duplicate,
            elapsed_ms,
        )
        return result

    def _run(self, payload: AutoFindJobPayload, reporter: ProgressReporter) -> AutoFindResult:
        reporter.advance(JobStage.NORMALIZING)
        normalized = normalize_query(payload.user_query)
        if normalized.is_empty:
            raise EmptyQueryError()
        structured = structure_query(normalized)
        classification = classify_query(structured)
        logger.info(
            "Query classified: query=%r, classification=%s, country=%s",
            normalized.search_terms,
            classification.value,
            structured.country,
        )

        reporter.advance(JobStage.FETCHING_SOURCES)
        sources = self.source_provider.fetch_trusted_sources(structured, classification)
        if not sources:
            raise NoTrustedSourcesError(payload.user_query)

        reporter.advance(JobStage.GENERATING)
        generated = self.generator.generate(structured, sources, normalized)

        reporter.advance(JobStage.VALIDATING)
        validation = validate_recipe_data(generated)
        if not validation.is_valid:
            raise RecipeValidationError(validation.errors)

        reporter.advance(JobStage.DEDUPING)
        match = self.dedupe.find_duplicate(generated)
        if match is not None:
            return self._resolve_duplicate(match, reporter)

        reporter.advance(JobStage.PERSISTING)
        try:
            recipe_id = self._persist(generated, sources, payload)
        except DuplicateRecipeError as exc:
            logger.info("Fingerprint conflict on insert, resolving as duplicate: recipe=%s", exc.existing_recipe_id)
            match = DedupeMatch(
                matched_recipe_id=exc.existing_recipe_id,
                similarity_score=1.0,
                match_type=MatchType.EXACT,
            )
            return self._resolve_duplicate(match, reporter)

        reporter.advance(JobStage.PROVENANCE_WRITTEN)
        reporter.advance(JobStage.REVIEW_TASK_CREATED)
        reporter.advance(JobStage.REVISION_LOGGED)
        reporter.advance(JobStage.COMPLETED)

        return AutoFindResult(
            recipe_id=recipe_id,
            title=generated.title,
            confidence=generated.ai_metadata.confidence,
            sources_count=len(sources),
        )

    def _resolve_duplicate(self, match: DedupeMatch, reporter: ProgressReporter) -> AutoFindResult:
        reporter.advance(JobStage.DUPLICATE_RESOLVED)
        reporter.advance(JobStage.COMPLETED)
        return AutoFindResult(
            recipe_id=match.matched_recipe_id,
            is_duplicate=True,
            reason=DUPLICATE_REASON,
            similarity_score=match.similarity_score,
            match_type=match.match_type,
        )

    def _persist(
        self,
        generated: GeneratedRecipe,
        sources: list[FetchedSource],
        payload: AutoFindJobPayload,
    ) -> str:
        with self.recipe_store.unit_of_work() as uow:
            recipe_id = uow.add_recipe(build_recipe_row(generated))
            for source in sources:
                if source.snapshot_text:
                    uow.add_source_snapshot(recipe_id, source)
            uow.add_review_task(recipe_id, REVIEW_TYPE_CULTURAL, REVIEW_STATUS_PENDING)
            uow.add_revision(
                recipe_id,
                action=REVISION_ACTION_AI_GENERATED,
                payload={
                    "generation": generated.to_dict(),
                    "query": payload.user_query,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                actor_role=REVISION_ACTOR_ROLE,
                reason_notes=REVISION_REASON,
            )
        return recipe_id

    def _open_log(self, job_id: UUID, attempt: int) -> None:
        try:
            opened = self.job_repo.open_execution_log(job_id, attempt)
        except JobRepositoryError as exc:
            logger.warning("Failed to open execution log: job=%s, error=%s", job_id, exc)
            return
        if not opened:
            logger.warning("Failed to open execution log: job=%s", job_id)

    def _close_log(
        self,
        job_id: UUID,
        attempt: int,
        status: ExecutionStatus,
        recipe_id: Optional[str],
        error_message: Optional[str],
        elapsed_ms: int,
    ) -> None:
        try:
            closed = self.job_repo.close_execution_log(
                job_id=job_id,
                attempt=attempt,
                status=status,
                recipe_id=recipe_id,
                error_message=error_message,
                execution_time_ms=elapsed_ms,
            )
        except JobRepositoryError as exc:
            logger.warning("Failed to close execution log: job=%s, error=%s", job_id, exc)
            return
        if not closed:
            logger.warning("Failed to close execution log: job=%s, status=%s", job_id, status.value)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)
