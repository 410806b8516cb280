from __future__ import annotations

import logging
import signal
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable
from uuid import UUID

from dotenv import find_dotenv, load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

# WorkerConfig reads the environment when it is imported.
load_dotenv(find_dotenv(usecwd=True))

from src.app.domain.errors import AutoFindError, WorkerConfigurationError
from src.app.domain.models import AutoFindJob, AutoFindResult
from src.app.infra.db.base import AutoFindJobRepository
from src.app.services.autofind_pipeline import AutoFindPipeline
from src.services.source_fetcher import TrustedSourceFetcher
from workers.autofind.config import WorkerConfig, get_config

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("autofind-worker")

POLL_BACKOFF_FACTOR = 1.5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StaleLockSweeper:
    """Periodically hands jobs of crashed workers back to the queue."""

    def __init__(
        self,
        job_repo: AutoFindJobRepository,
        every: timedelta,
        lock_ttl_minutes: int,
    ) -> None:
        self.job_repo = job_repo
        self.every = every
        self.lock_ttl_minutes = lock_ttl_minutes
        self.last_sweep: datetime | None = None

    def sweep_if_due(self, now: datetime) -> int:
        # The first call only arms the timer so a fresh worker does not sweep on boot.
        if self.last_sweep is None:
            self.last_sweep = now
            return 0
        if now - self.last_sweep < self.every:
            return 0

        self.last_sweep = now
        return self.job_repo.release_stale_locks(lock_ttl_minutes=self.lock_ttl_minutes)


class AutoFindWorker:
    def __init__(
        self,
        config: WorkerConfig,
        job_repository: AutoFindJobRepository,
        pipeline: AutoFindPipeline,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.job_repo = job_repository
        self.pipeline = pipeline
        self._sleep = sleep
        self._now = clock
        self.sweeper = StaleLockSweeper(
            job_repository,
            every=timedelta(minutes=config.stale_lock_check_interval_minutes),
            lock_ttl_minutes=config.lock_ttl_minutes,
        )
        self.running = False
        self.current_job_id: UUID | None = None
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.last_job_time: datetime | None = None

    def start(self) -> None:
        errors = self.config.validate()
        if errors:
            raise WorkerConfigurationError(errors)

        signal.signal(signal.SIGTERM, self._request_stop)
        signal.signal(signal.SIGINT, self._request_stop)

        logger.info(
            "autofind.worker_start worker=%s poll=%ds max_poll=%ds max_jobs=%d",
            self.config.worker_id,
            self.config.poll_interval_seconds,
            self.config.max_poll_interval_seconds,
            self.config.max_jobs_per_run,
        )
        self.running = True
        try:
            self.poll()
        finally:
            logger.info(
                "autofind.worker_stop worker=%s processed=%d failed=%d",
                self.config.worker_id,
                self.jobs_processed,
                self.jobs_failed,
            )

    def poll(self) -> None:
        """Take jobs one at a time until stopped, the job budget is spent or the queue stays idle."""
        interval = float(self.config.poll_interval_seconds)

        while self.running:
            released = self.sweeper.sweep_if_due(self._now())
            if released:
                logger.info("Released %d stale locks", released)

            job = self.job_repo.fetch_and_lock_next_job(worker_id=self.config.worker_id)
            if job is None:
                interval = self.next_poll_interval(interval)
                if self.idle_limit_reached():
                    break
                logger.debug("Queue empty, next poll in %.1fs", interval)
            else:
                interval = float(self.config.poll_interval_seconds)
                self.run_job(job)
                if self.job_budget_spent():
                    logger.info("Job budget of %d spent, stopping", self.config.max_jobs_per_run)
                    break

            self._sleep(interval)

    def next_poll_interval(self, current: float) -> float:
        return min(current * POLL_BACKOFF_FACTOR, float(self.config.max_poll_interval_seconds))

    def job_budget_spent(self) -> bool:
        budget = self.config.max_jobs_per_run
        return budget > 0 and self.jobs_processed + self.jobs_failed >= budget

    def idle_limit_reached(self) -> bool:
        # Only a worker that has handled at least one job may retire for idleness.
        if not self.config.shutdown_on_empty or self.last_job_time is None:
            return False

        idle_for = self._now() - self.last_job_time
        if idle_for <= timedelta(minutes=self.config.empty_queue_shutdown_minutes):
            return False

        logger.info("Idle for more than %d minutes, stopping", self.config.empty_queue_shutdown_minutes)
        return True

    def run_job(self, job: AutoFindJob) -> None:
        """Run one locked job and record its terminal state on the queue row."""
        self.current_job_id = job.id
        self.last_job_time = self._now()
        logger.info(
            "autofind.job_start job=%s query=%r attempt=%d/%d",
            job.id,
            job.payload.normalized_query or job.payload.user_query,
            job.attempt_count,
            job.max_attempts,
        )

        try:
            result = self.pipeline.process(job)
        except AutoFindError as error:
            self._record_failure(job.id, str(error), permanent=not error.retryable)
        except Exception as error:
            logger.exception("Unexpected error processing job: id=%s", job.id)
            self._record_failure(job.id, str(error), permanent=False)
        else:
            self._record_success(job.id, result)
        finally:
            self.current_job_id = None

    def _record_success(self, job_id: UUID, result: AutoFindResult) -> None:
        if not self.job_repo.mark_done(job_id=job_id, result=result.to_dict(), recipe_id=result.recipe_id):
            # The lock lapses and the stale-lock sweep requeues the job.
            logger.error("Failed to save job result: id=%s", job_id)
            return

        self.jobs_processed += 1
        logger.info(
            "autofind.job_done job=%s recipe=%s duplicate=%s",
            job_id,
            result.recipe_id,
            result.is_duplicate,
        )

    def _record_failure(self, job_id: UUID, error_message: str, permanent: bool) -> None:
        self.jobs_failed += 1
        log = logger.error if permanent else logger.warning
        log(
            "autofind.job_failed job=%s permanent=%s error=%s",
            job_id,
            str(permanent).lower(),
            error_message,
        )
        self.job_repo.mark_failed(job_id=job_id, error_message=error_message, permanent=permanent)

    def _request_stop(self, signum: int, frame: object) -> None:
        logger.info("Received signal %d, finishing current job before stopping", signum)
        self.running = False


def create_default_dependencies(config: WorkerConfig) -> tuple[
    AutoFindJobRepository,
    AutoFindPipeline,
    TrustedSourceFetcher,
]:
    from src.app.config import get_pipeline_settings
    from src.app.infra.db.supabase_client import create_supabase_client
    from src.app.infra.db.supabase_jobs_repo import SupabaseAutoFindJobRepository
    from src.app.infra.db.supabase_recipe_store import SupabaseRecipeStore
    from src.app.services.dedupe_service import DedupeService
    from src.services.gemini_client import GeminiClient
    from src.services.recipe_generator import GeminiRecipeGenerator

    settings = get_pipeline_settings()
    client = create_supabase_client()

    job_repository = SupabaseAutoFindJobRepository(client)
    recipe_store = SupabaseRecipeStore(client)
    source_fetcher = TrustedSourceFetcher(settings)
    gemini = GeminiClient(
        api_key=config.gemini_api_key or settings.gemini_api_key,
        model_name=settings.gemini_model,
    )

    pipeline = AutoFindPipeline(
        job_repository=job_repository,
        recipe_store=recipe_store,
        source_provider=source_fetcher,
        generation_provider=GeminiRecipeGenerator(gemini, settings),
        dedupe_service=DedupeService(recipe_store, settings),
    )

    return job_repository, pipeline, source_fetcher


def main() -> None:
    config = get_config()
    errors = config.validate()
    if errors:
        raise WorkerConfigurationError(errors)

    job_repo, pipeline, source_fetcher = create_default_dependencies(config)
    worker = AutoFindWorker(config=config, job_repository=job_repo, pipeline=pipeline)

    try:
        worker.start()
    finally:
        source_fetcher.close()


if __name__ == "__main__":
    main()
