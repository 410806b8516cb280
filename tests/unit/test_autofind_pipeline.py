from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest

from src.app.config import PipelineSettings
from src.app.domain.errors import (
    DuplicateRecipeError,
    EmptyQueryError,
    GenerationError,
    NoTrustedSourcesError,
    PersistenceError,
    RecipeValidationError,
)
from src.app.domain.models import (
    AIMetadata,
    AutoFindJob,
    AutoFindJobPayload,
    ExecutionStatus,
    FetchedSource,
    GeneratedRecipe,
    JobStatus,
    MatchType,
    NormalizedQuery,
    QueryClassification,
    RecipeCandidate,
    StructuredQuery,
)
from src.app.infra.db.base import (
    AutoFindJobRepository,
    PendingRecipeWrites,
    RecipeStore,
    RecipeUnitOfWork,
)
from src.app.infra.providers.base import GenerationProvider, SourceProvider
from src.app.services.autofind_pipeline import AutoFindPipeline, build_recipe_row
from src.app.services.dedupe_service import DedupeService
from src.services.fingerprint import compute_fingerprint


class JobRepositoryStub(AutoFindJobRepository):
    def __init__(self) -> None:
        self.progress_updates: list[tuple[UUID, Optional[str], Optional[float]]] = []
        self.opened_logs: list[tuple[UUID, int]] = []
        self.closed_logs: list[dict[str, Any]] = []
        self.fail_log_writes = False

    def enqueue_auto_find_job(self, payload: AutoFindJobPayload, priority: int = 0) -> AutoFindJob:
        raise NotImplementedError

    def fetch_and_lock_next_job(self, worker_id: str, now_ts: datetime | None = None) -> AutoFindJob | None:
        return None

    def update_job_progress(self, job_id: UUID, stage: str | None = None, progress: float | None = None) -> bool:
        self.progress_updates.append((job_id, stage, progress))
        return True

    def mark_done(self, job_id: UUID, result: dict[str, Any], recipe_id: str | None = None) -> bool:
        return True

    def mark_failed(
        self,
        job_id: UUID,
        error_message: str,
        retry_at: datetime | None = None,
        permanent: bool = False,
    ) -> bool:
        return True

    def release_stale_locks(self, lock_ttl_minutes: int = 30) -> int:
        return 0

    def get_job_by_id(self, job_id: UUID) -> AutoFindJob | None:
        return None

    def cancel_job(self, job_id: UUID) -> bool:
        return False

    def open_execution_log(self, job_id: UUID, attempt: int) -> bool:
        self.opened_logs.append((job_id, attempt))
        return not self.fail_log_writes

    def close_execution_log(
        self,
        job_id: UUID,
        attempt: int,
        status: ExecutionStatus,
        recipe_id: str | None,
        error_message: str | None,
        execution_time_ms: int,
    ) -> bool:
        self.closed_logs.append({
            "job_id": job_id,
            "attempt": attempt,
            "status": status,
            "recipe_id": recipe_id,
            "error_message": error_message,
            "execution_time_ms": execution_time_ms,
        })
        return not self.fail_log_writes

    @property
    def stages(self) -> list[str]:
        return [stage for _, stage, _ in self.progress_updates if stage]

    @property
    def progress_values(self) -> list[float]:
        return [progress for _, _, progress in self.progress_updates if progress is not None]


class InMemoryUnitOfWork(RecipeUnitOfWork):
    def __init__(self, store: "InMemoryRecipeStore") -> None:
        super().__init__()
        self._store = store

    def new_recipe_id(self) -> str:
        return f"recipe-{len(self._store.recipes) + 1}"

    def add_review_task(self, recipe_id: str, review_type: str, status: str) -> None:
        if self._store.fail_while_staging:
            raise PersistenceError("review_task", "simulated failure")
        super().add_review_task(recipe_id, review_type, status)

    def _flush(self, pending: PendingRecipeWrites) -> None:
        if self._store.fail_on_commit:
            raise PersistenceError("persist_ai_recipe", "connection reset")
        recipe = pending.recipe or {}
        existing = self._store.fingerprints.get(recipe["name_fingerprint"])
        if existing:
            raise DuplicateRecipeError(existing)
        self._store.recipes.append(recipe)
        self._store.source_snapshots.extend(pending.source_snapshots)
        self._store.review_tasks.extend(pending.review_tasks)
        self._store.revisions.extend(pending.revisions)


class InMemoryRecipeStore(RecipeStore):
    def __init__(self) -> None:
        self.fingerprints: dict[str, str] = {}
        self.candidates: list[RecipeCandidate] = []
        self.recipes: list[dict[str, Any]] = []
        self.source_snapshots: list[dict[str, Any]] = []
        self.review_tasks: list[dict[str, Any]] = []
        self.revisions: list[dict[str, Any]] = []
        self.fail_on_commit = False
        self.fail_while_staging = False
        # Fingerprints that only appear once the insert races another job.
        self.hidden_fingerprints: dict[str, str] = {}

    def find_by_fingerprint(self, name_fingerprint: str) -> str | None:
        return self.fingerprints.get(name_fingerprint)

    def list_dedupe_candidates(self, statuses: list[str], limit: int = 50) -> list[RecipeCandidate]:
        self.fingerprints.update(self.hidden_fingerprints)
        return self.candidates[:limit]

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)


class SourceProviderStub(SourceProvider):
    def __init__(self, sources: list[FetchedSource]) -> None:
        self.sources = sources
        self.calls: list[tuple[StructuredQuery, QueryClassification]] = []

    def fetch_trusted_sources(
        self,
        structured: StructuredQuery,
        classification: QueryClassification,
    ) -> list[FetchedSource]:
        self.calls.append((structured, classification))
        return list(self.sources)


class GenerationProviderStub(GenerationProvider):
    def __init__(self, recipe: GeneratedRecipe | None = None, error: Exception | None = None) -> None:
        self.recipe = recipe
        self.error = error
        self.calls = 0

    def generate(
        self,
        structured: StructuredQuery,
        sources: list[FetchedSource],
        normalized: NormalizedQuery,
    ) -> GeneratedRecipe:
        self.calls += 1
        if self.error:
            raise self.error
        assert self.recipe is not None
        return self.recipe


class ClockStub:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        self.now += 0.25
        return self.now


def make_sources() -> list[FetchedSource]:
    return [
        FetchedSource(
            url="https://en.wikipedia.org/wiki/Injera",
            title="Injera",
            domain="wikipedia.org",
            excerpt_text="Injera is a sourdough flatbread",
            trust_score=0.95,
            snapshot_text="Injera is a sour fermented flatbread made from teff.",
        ),
        FetchedSource(
            url="https://www.gutenberg.org/ebooks/123",
            title="Ethiopian Cookery",
            domain="gutenberg.org",
            excerpt_text="Cooking, Ethiopian",
            trust_score=0.9,
        ),
    ]


def make_recipe(title: str = "Ethiopian Injera", ingredients: list[str] | None = None) -> GeneratedRecipe:
    return GeneratedRecipe(
        title=title,
        ingredients=ingredients or ["3 cups teff flour", "4 cups water", "1 tsp salt"],
        steps=["Mix the batter", "Ferment for three days", "Cook on a hot mitad"],
        cooking_time_minutes=45,
        difficulty="Medium",
        history_text="Staple flatbread of Ethiopia and Eritrea.",
        ai_metadata=AIMetadata(
            model_version="gemini-test",
            generated_at="2026-01-01T00:00:00+00:00",
            confidence=0.9,
        ),
    )


def make_job(query: str = "Ethiopian Injera") -> AutoFindJob:
    return AutoFindJob(
        id=uuid4(),
        payload=AutoFindJobPayload(
            user_query=query,
            normalized_query=query.lower().replace(" ", "_"),
            search_terms=query.lower(),
            client_ip="127.0.0.1",
            timestamp=datetime.now(timezone.utc).isoformat(),
        ),
        status=JobStatus.RUNNING,
        attempt_count=1,
    )


class PipelineHarness:
    def __init__(
        self,
        sources: list[FetchedSource] | None = None,
        recipe: GeneratedRecipe | None = None,
        generation_error: Exception | None = None,
        **settings: object,
    ) -> None:
        self.job_repo = JobRepositoryStub()
        self.store = InMemoryRecipeStore()
        self.source_provider = SourceProviderStub(make_sources() if sources is None else sources)
        self.generator = GenerationProviderStub(recipe or make_recipe(), generation_error)
        self.pipeline = AutoFindPipeline(
            job_repository=self.job_repo,
            recipe_store=self.store,
            source_provider=self.source_provider,
            generation_provider=self.generator,
            dedupe_service=DedupeService(self.store, PipelineSettings(**settings)),
            clock=ClockStub(),
        )


class TestNovelRecipe:
    def test_persists_recipe_with_provenance(self) -> None:
        harness = PipelineHarness()
        job = make_job()

        result = harness.pipeline.process(job)

        assert result.is_duplicate is False
        assert result.recipe_id == "recipe-1"
        assert result.sources_count == 2
        assert result.to_dict()["title"] == "Ethiopian Injera"

        assert len(harness.store.recipes) == 1
        recipe = harness.store.recipes[0]
        assert recipe["authenticity_status"] == "ai_pending"
        assert recipe["review_requested"] is True
        assert recipe["name_fingerprint"] == compute_fingerprint("Ethiopian Injera")

        assert harness.store.review_tasks == [{
            "recipe_id": "recipe-1",
            "review_type": "cultural_authenticity",
            "status": "pending",
        }]
        assert len(harness.store.revisions) == 1
        revision = harness.store.revisions[0]
        assert revision["action"] == "ai_generated"
        assert revision["actor_role"] == "system"
        assert revision["reason_notes"] == "Auto-generated from user query"
        assert revision["payload"]["query"] == "Ethiopian Injera"

        # Only the source carrying snapshot text is kept.
        assert [s["source_url"] for s in harness.store.source_snapshots] == ["https://en.wikipedia.org/wiki/Injera"]

    def test_execution_log_closed_completed(self) -> None:
        harness = PipelineHarness()
        job = make_job()

        harness.pipeline.process(job)

        assert harness.job_repo.opened_logs == [(job.id, 1)]
        assert len(harness.job_repo.closed_logs) == 1
        log = harness.job_repo.closed_logs[0]
        assert log["status"] == ExecutionStatus.COMPLETED
        assert log["recipe_id"] == "recipe-1"
        assert log["error_message"] is None
        assert log["execution_time_ms"] > 0

    def test_stages_in_order_with_monotonic_progress(self) -> None:
        harness = PipelineHarness()

        harness.pipeline.process(make_job())

        assert harness.job_repo.stages == [
            "normalizing",
            "fetching_sources",
            "generating",
            "validating",
            "deduping",
            "persisting",
            "provenance_written",
            "review_task_created",
            "revision_logged",
            "completed",
        ]
        progress = harness.job_repo.progress_values
        assert progress == sorted(progress)
        assert progress[-1] == 100.0

    def test_row_stores_raw_ingredients_and_normalized_hash(self) -> None:
        row = build_recipe_row(make_recipe(ingredients=["2 cups rice", "1 onion"]))
        same_ingredients = build_recipe_row(make_recipe(ingredients=["onion", "rice"]))

        assert row["ingredients_text"] == "2 cups rice\n1 onion"
        assert row["ingredients_hash"] == same_ingredients["ingredients_hash"]
        assert row["canonical_name"] == "ethiopian_injera"


class TestDuplicateResolution:
    def test_exact_duplicate_skips_persistence(self) -> None:
        harness = PipelineHarness(recipe=make_recipe("Chicken Biryani"))
        harness.store.fingerprints[compute_fingerprint("chicken biryani")] = "existing-biryani"

        result = harness.pipeline.process(make_job("Chicken Biryani"))

        assert result.is_duplicate is True
        assert result.recipe_id == "existing-biryani"
        assert result.match_type == MatchType.EXACT
        assert result.to_dict()["isDuplicate"] is True
        assert result.to_dict()["reason"] == "Existing recipe found"
        assert harness.store.recipes == []
        assert harness.store.review_tasks == []
        assert "persisting" not in harness.job_repo.stages
        assert harness.job_repo.stages[-2:] == ["duplicate_resolved", "completed"]
        assert harness.job_repo.closed_logs[0]["status"] == ExecutionStatus.COMPLETED
        assert harness.job_repo.closed_logs[0]["recipe_id"] == "existing-biryani"

    def test_near_duplicate_via_ingredients(self) -> None:
        ingredients = [
            "lamb", "onion", "garlic", "ginger", "cumin",
            "cinnamon", "apricots", "almonds", "saffron", "honey",
        ]
        harness = PipelineHarness(recipe=make_recipe("Lamb Tagine", ingredients))
        harness.store.candidates = [
            RecipeCandidate(id="tagine-1", title="Lamb Tajines", ingredients=ingredients[:9]),
        ]

        result = harness.pipeline.process(make_job("Lamb Tagine"))

        assert result.is_duplicate is True
        assert result.recipe_id == "tagine-1"
        assert result.similarity_score is not None and result.similarity_score >= 0.75
        assert harness.store.recipes == []

    def test_fingerprint_conflict_on_insert_resolves_as_duplicate(self) -> None:
        harness = PipelineHarness()
        harness.store.hidden_fingerprints[compute_fingerprint("Ethiopian Injera")] = "raced-recipe"

        result = harness.pipeline.process(make_job())

        assert result.is_duplicate is True
        assert result.recipe_id == "raced-recipe"
        assert harness.store.recipes == []
        progress = harness.job_repo.progress_values
        assert progress == sorted(progress)


class TestFailures:
    def test_no_sources_fails_job(self) -> None:
        harness = PipelineHarness(sources=[])
        job = make_job()

        with pytest.raises(NoTrustedSourcesError) as exc_info:
            harness.pipeline.process(job)

        assert "Unable to fetch trusted sources" in str(exc_info.value)
        assert harness.generator.calls == 0
        assert harness.store.recipes == []
        log = harness.job_repo.closed_logs[0]
        assert log["status"] == ExecutionStatus.FAILED
        assert log["error_message"] == str(exc_info.value)
        assert log["recipe_id"] is None
        assert harness.job_repo.stages[-1] == "failed"

    def test_empty_query_fails_before_fetching(self) -> None:
        harness = PipelineHarness()

        with pytest.raises(EmptyQueryError):
            harness.pipeline.process(make_job("   "))

        assert harness.source_provider.calls == []

    def test_generation_error_is_reraised(self) -> None:
        harness = PipelineHarness(generation_error=GenerationError("AI generation failed: boom"))

        with pytest.raises(GenerationError):
            harness.pipeline.process(make_job())

        assert harness.job_repo.closed_logs[0]["error_message"] == "AI generation failed: boom"

    def test_validation_failure_reports_every_error(self) -> None:
        recipe = make_recipe()
        recipe.steps = []
        recipe.cooking_time_minutes = 0
        harness = PipelineHarness(recipe=recipe)

        with pytest.raises(RecipeValidationError) as exc_info:
            harness.pipeline.process(make_job())

        assert exc_info.value.errors == [
            "At least one step is required",
            "Cooking time must be between 1 and 1440 minutes",
        ]
        assert harness.store.recipes == []

    def test_punctuation_only_title_never_persisted(self) -> None:
        harness = PipelineHarness(recipe=make_recipe(title="???"))

        with pytest.raises(RecipeValidationError) as exc_info:
            harness.pipeline.process(make_job())

        assert exc_info.value.errors == ["Title must contain at least one letter or digit"]
        assert harness.store.recipes == []

    def test_commit_failure_leaves_no_rows(self) -> None:
        harness = PipelineHarness()
        harness.store.fail_on_commit = True

        with pytest.raises(PersistenceError):
            harness.pipeline.process(make_job())

        assert harness.store.recipes == []
        assert harness.store.source_snapshots == []
        assert harness.store.review_tasks == []
        assert harness.store.revisions == []
        assert harness.job_repo.closed_logs[0]["status"] == ExecutionStatus.FAILED

    def test_failure_while_staging_leaves_no_rows(self) -> None:
        harness = PipelineHarness()
        harness.store.fail_while_staging = True

        with pytest.raises(PersistenceError):
            harness.pipeline.process(make_job())

        assert harness.store.recipes == []
        assert harness.store.source_snapshots == []

    def test_log_write_failure_does_not_mask_result(self) -> None:
        harness = PipelineHarness()
        harness.job_repo.fail_log_writes = True

        result = harness.pipeline.process(make_job())

        assert result.recipe_id == "recipe-1"
