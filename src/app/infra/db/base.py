# src/app/infra/db/base.py
"""
Abstract base classes for the job queue and the recipe store.
These interfaces allow easy swapping between different backends.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from types import TracebackType
from typing import Any, Optional
from uuid import UUID

from src.app.domain.models import (
    AutoFindJob,
    AutoFindJobPayload,
    ExecutionStatus,
    FetchedSource,
    RecipeCandidate,
)


class AutoFindJobRepository(ABC):
    """
    Abstract interface for job queue and execution-log operations.

    Implementations:
    - SupabaseAutoFindJobRepository: Postgres-based queue using Supabase
    """

    @abstractmethod
    def enqueue_auto_find_job(
        self,
        payload: AutoFindJobPayload,
        priority: int = 0,
    ) -> AutoFindJob:
        """
        Create a new auto-find job in QUEUED status.

        Args:
            payload: The user query and request metadata
            priority: Job priority (higher = processed first)

        Returns:
            The created AutoFindJob
        """
        pass

    @abstractmethod
    def fetch_and_lock_next_job(
        self,
        worker_id: str,
        now_ts: Optional[datetime] = None,
    ) -> Optional[AutoFindJob]:
        """
        Atomically fetch and lock the next available job.
        Uses FOR UPDATE SKIP LOCKED pattern for safe concurrency.

        Returns:
            The locked job, or None if no jobs available
        """
        pass

    @abstractmethod
    def update_job_progress(
        self,
        job_id: UUID,
        stage: Optional[str] = None,
        progress: Optional[float] = None,
    ) -> bool:
        """Record the current stage and progress percentage of a job."""
        pass

    @abstractmethod
    def mark_done(
        self,
        job_id: UUID,
        result: dict[str, Any],
        recipe_id: Optional[str] = None,
    ) -> bool:
        """
        Mark a job as DONE with its result payload.

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def mark_failed(
        self,
        job_id: UUID,
        error_message: str,
        retry_at: Optional[datetime] = None,
        permanent: bool = False,
    ) -> bool:
        """
        Mark a job as FAILED, potentially scheduling a retry.

        Args:
            job_id: The job to update
            error_message: Error description
            retry_at: When to retry (None = backoff from attempt count)
            permanent: If True, mark as permanently failed

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def release_stale_locks(
        self,
        lock_ttl_minutes: int = 30,
    ) -> int:
        """
        Release locks on jobs that have been locked too long (crashed workers).

        Returns:
            Number of jobs released
        """
        pass

    @abstractmethod
    def get_job_by_id(self, job_id: UUID) -> Optional[AutoFindJob]:
        pass

    @abstractmethod
    def cancel_job(self, job_id: UUID) -> bool:
        """Cancel a job if it's still QUEUED."""
        pass

    @abstractmethod
    def open_execution_log(self, job_id: UUID, attempt: int) -> bool:
        """Create the execution-log row for a job attempt in 'running' state."""
        pass

    @abstractmethod
    def close_execution_log(
        self,
        job_id: UUID,
        attempt: int,
        status: ExecutionStatus,
        recipe_id: Optional[str],
        error_message: Optional[str],
        execution_time_ms: int,
    ) -> bool:
        """Record the terminal outcome of a job attempt. Called exactly once per attempt."""
        pass


@dataclass
class PendingRecipeWrites:
    """Rows staged by a unit of work, written together on commit."""
    recipe: Optional[dict[str, Any]] = None
    source_snapshots: list[dict[str, Any]] = field(default_factory=list)
    review_tasks: list[dict[str, Any]] = field(default_factory=list)
    revisions: list[dict[str, Any]] = field(default_factory=list)


class RecipeUnitOfWork(ABC):
    """
    Stages the recipe row and its provenance rows, then writes them atomically.

    Nothing reaches the store unless the `with` block exits without an exception.
    """

    def __init__(self) -> None:
        self.pending = PendingRecipeWrites()
        self.committed = False

    def __enter__(self) -> "RecipeUnitOfWork":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @abstractmethod
    def new_recipe_id(self) -> str:
        pass

    def add_recipe(self, row: dict[str, Any]) -> str:
        recipe_id = self.new_recipe_id()
        self.pending.recipe = {"id": recipe_id, **row}
        return recipe_id

    def add_source_snapshot(self, recipe_id: str, source: FetchedSource) -> None:
        self.pending.source_snapshots.append({
            "recipe_id": recipe_id,
            "source_url": source.url,
            "source_title": source.title,
            "source_domain": source.domain,
            "snapshot_text": source.snapshot_text,
            "trust_score": source.trust_score,
        })

    def add_review_task(self, recipe_id: str, review_type: str, status: str) -> None:
        self.pending.review_tasks.append({
            "recipe_id": recipe_id,
            "review_type": review_type,
            "status": status,
        })

    def add_revision(
        self,
        recipe_id: str,
        action: str,
        payload: dict[str, Any],
        actor_role: str,
        reason_notes: str,
    ) -> None:
        self.pending.revisions.append({
            "recipe_id": recipe_id,
            "action": action,
            "payload": payload,
            "actor_role": actor_role,
            "reason_notes": reason_notes,
        })

    def commit(self) -> None:
        if self.pending.recipe is None:
            return
        self._flush(self.pending)
        self.committed = True

    def rollback(self) -> None:
        self.pending = PendingRecipeWrites()

    @abstractmethod
    def _flush(self, pending: PendingRecipeWrites) -> None:
        """
        Write every staged row in a single transaction.

        Raises:
            DuplicateRecipeError: If a recipe with the same name fingerprint exists
            PersistenceError: If the write fails; no row may remain
        """
        pass


class RecipeStore(ABC):
    """
    Abstract interface for the relational recipe store.

    Implementations:
    - SupabaseRecipeStore: recipes tables + persist_ai_recipe RPC
    """

    @abstractmethod
    def find_by_fingerprint(self, name_fingerprint: str) -> Optional[str]:
        """Return the id of the recipe with this name fingerprint, if any."""
        pass

    @abstractmethod
    def list_dedupe_candidates(
        self,
        statuses: list[str],
        limit: int = 50,
    ) -> list[RecipeCandidate]:
        """Return a bounded set of existing recipes to score against."""
        pass

    @abstractmethod
    def unit_of_work(self) -> RecipeUnitOfWork:
        pass
