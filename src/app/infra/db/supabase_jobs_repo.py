from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from supabase import Client

from src.app.domain.errors import JobRepositoryError
from src.app.domain.models import (
    AutoFindJob,
    AutoFindJobPayload,
    ExecutionStatus,
    JobStage,
    JobStatus,
)
from src.app.infra.db.base import AutoFindJobRepository
from src.app.infra.db.supabase_client import (
    SUPABASE_ERRORS,
    create_supabase_client,
    now_utc,
    parse_datetime,
    safe_int,
    safe_str,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def _row_to_job(row: dict[str, Any]) -> AutoFindJob:
    payload = row.get("payload")
    result = row.get("result")
    return AutoFindJob(
        id=UUID(str(row["id"])),
        payload=AutoFindJobPayload.from_dict(payload if isinstance(payload, dict) else {}),
        status=JobStatus(str(row["status"])),
        stage=safe_str(row.get("stage")),
        progress=float(row["progress"]) if row.get("progress") is not None else None,
        locked_at=parse_datetime(row.get("locked_at")),
        locked_by=safe_str(row.get("locked_by")),
        attempt_count=safe_int(row.get("attempt_count")),
        max_attempts=safe_int(row.get("max_attempts"), DEFAULT_MAX_ATTEMPTS),
        next_attempt_at=parse_datetime(row.get("next_attempt_at")),
        error_message=safe_str(row.get("error_message")),
        created_at=parse_datetime(row.get("created_at")),
        started_at=parse_datetime(row.get("started_at")),
        finished_at=parse_datetime(row.get("finished_at")),
        recipe_id=safe_str(row.get("recipe_id")),
        result=result if isinstance(result, dict) else None,
    )


def _calculate_backoff_minutes(attempt_count: int) -> int:
    return 2 ** attempt_count


def _rpc_scalar(data: Any) -> int:
    # Scalar RPCs come back bare or wrapped in a one-row list depending on the client version.
    if isinstance(data, list):
        data = data[0] if data else 0
    if isinstance(data, dict):
        data = next(iter(data.values()), 0)
    return safe_int(data)


class SupabaseAutoFindJobRepository(AutoFindJobRepository):
    TABLE_NAME = "auto_find_jobs"
    LOG_TABLE_NAME = "ai_jobs_log"

    def __init__(self, client: Client | None = None):
        self._client = client or create_supabase_client()
        logger.info("SupabaseAutoFindJobRepository initialized")

    def enqueue_auto_find_job(
        self,
        payload: AutoFindJobPayload,
        priority: int = 0,
    ) -> AutoFindJob:
        job_data = {
            "id": str(uuid4()),
            "payload": payload.to_dict(),
            "status": JobStatus.QUEUED.value,
            "stage": JobStage.QUEUED.value,
            "progress": 0,
            "priority": priority,
            "attempt_count": 0,
            "max_attempts": DEFAULT_MAX_ATTEMPTS,
            "created_at": now_utc().isoformat(),
        }

        try:
            result = self._client.table(self.TABLE_NAME).insert(job_data).execute()
        except SUPABASE_ERRORS as error:
            logger.error("Error enqueueing auto-find job: %s", error)
            raise JobRepositoryError("enqueue", str(error)) from error

        if not result.data:
            raise JobRepositoryError("enqueue", "insert returned no rows")

        job = _row_to_job(result.data[0])
        logger.info("Created auto-find job: id=%s, query=%r", job.id, payload.normalized_query)
        return job

    def fetch_and_lock_next_job(
        self,
        worker_id: str,
        now_ts: datetime | None = None,
    ) -> AutoFindJob | None:
        now = now_ts or now_utc()

        try:
            result = self._client.rpc(
                "fetch_and_lock_auto_find_job",
                {"p_worker_id": worker_id, "p_now": now.isoformat()}
            ).execute()
        except SUPABASE_ERRORS as error:
            logger.error("Network error fetching job: %s", error)
            return None

        if not result.data:
            logger.debug("No jobs available for worker %s", worker_id)
            return None

        job = _row_to_job(result.data[0])
        logger.info("Locked job: id=%s, worker=%s, attempt=%d", job.id, worker_id, job.attempt_count)
        return job

    def update_job_progress(
        self,
        job_id: UUID,
        stage: str | None = None,
        progress: float | None = None,
    ) -> bool:
        update_data: dict[str, str | float] = {}

        if stage is not None:
            update_data["stage"] = stage

        if progress is not None:
            update_data["progress"] = progress

        if not update_data:
            return True

        update_data["last_heartbeat_at"] = now_utc().isoformat()

        try:
            result = self._client.table(self.TABLE_NAME).update(update_data).eq("id", str(job_id)).execute()
            return bool(result.data)
        except SUPABASE_ERRORS as error:
            logger.error("Network error updating job progress: %s", error)
            return False

    def mark_done(
        self,
        job_id: UUID,
        result: dict[str, Any],
        recipe_id: str | None = None,
    ) -> bool:
        now = now_utc()
        update_data = {
            "status": JobStatus.DONE.value,
            "stage": JobStage.COMPLETED.value,
            "progress": 100,
            "finished_at": now.isoformat(),
            "last_heartbeat_at": now.isoformat(),
            "result": result,
            "recipe_id": recipe_id,
            "locked_at": None,
            "locked_by": None,
            "error_message": None,
        }

        try:
            response = self._client.table(self.TABLE_NAME).update(update_data).eq("id", str(job_id)).execute()
        except SUPABASE_ERRORS as error:
            logger.error("Network error marking job done: %s", error)
            return False

        if response.data:
            logger.info("Job completed: id=%s, recipe=%s", job_id, recipe_id)
            return True
        return False

    def mark_failed(
        self,
        job_id: UUID,
        error_message: str,
        retry_at: datetime | None = None,
        permanent: bool = False,
    ) -> bool:
        try:
            job_info = self._get_job_retry_info(job_id)
            if not job_info:
                return False

            should_retry = not permanent and job_info["attempt_count"] < job_info["max_attempts"]
            update_data = self._build_failure_update(error_message, should_retry, job_info, retry_at)

            self._log_failure(job_id, should_retry, job_info, error_message)

            result = self._client.table(self.TABLE_NAME).update(update_data).eq("id", str(job_id)).execute()
            return bool(result.data)

        except SUPABASE_ERRORS as error:
            logger.error("Network error marking job failed: %s", error)
            return False

    def _get_job_retry_info(self, job_id: UUID) -> dict[str, int] | None:
        result = (
            self._client.table(self.TABLE_NAME)
            .select("attempt_count, max_attempts")
            .eq("id", str(job_id))
            .limit(1)
            .execute()
        )

        if not result.data:
            return None

        row = result.data[0]
        return {
            "attempt_count": safe_int(row.get("attempt_count")),
            "max_attempts": safe_int(row.get("max_attempts"), DEFAULT_MAX_ATTEMPTS),
        }

    def _build_failure_update(
        self,
        error_message: str,
        should_retry: bool,
        job_info: dict[str, int],
        retry_at: datetime | None,
    ) -> dict[str, str | int | None]:
        base_data: dict[str, str | int | None] = {
            "error_message": error_message,
            "locked_at": None,
            "locked_by": None,
            "last_heartbeat_at": now_utc().isoformat(),
        }

        if should_retry:
            backoff = timedelta(minutes=_calculate_backoff_minutes(job_info["attempt_count"]))
            calculated_retry = retry_at or (now_utc() + backoff)
            base_data["status"] = JobStatus.QUEUED.value
            base_data["next_attempt_at"] = calculated_retry.isoformat()
            base_data["stage"] = JobStage.QUEUED.value
            base_data["progress"] = 0
        else:
            base_data["status"] = JobStatus.FAILED.value
            base_data["finished_at"] = now_utc().isoformat()
            base_data["stage"] = JobStage.FAILED.value

        return base_data

    def _log_failure(
        self,
        job_id: UUID,
        should_retry: bool,
        job_info: dict[str, int],
        error_message: str,
    ) -> None:
        if should_retry:
            logger.warning(
                "Job failed, will retry: id=%s, attempt=%d/%d, error=%s",
                job_id, job_info["attempt_count"], job_info["max_attempts"], error_message,
            )
        else:
            logger.error(
                "Job permanently failed: id=%s, attempts=%d, error=%s",
                job_id, job_info["attempt_count"], error_message,
            )

    def release_stale_locks(self, lock_ttl_minutes: int = 30) -> int:
        """Requeue or fail RUNNING jobs whose heartbeat is older than the TTL."""
        now = now_utc()
        cutoff = now - timedelta(minutes=lock_ttl_minutes)

        try:
            result = self._client.rpc(
                "release_stale_auto_find_locks",
                {"p_cutoff": cutoff.isoformat(), "p_now": now.isoformat()},
            ).execute()
        except SUPABASE_ERRORS as error:
            logger.error("Network error releasing stale locks: %s", error)
            return 0

        released = _rpc_scalar(result.data)
        if released:
            logger.warning("Released stale locks: count=%d, ttl_minutes=%d", released, lock_ttl_minutes)
        return released

    def get_job_by_id(self, job_id: UUID) -> AutoFindJob | None:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .select("*")
                .eq("id", str(job_id))
                .limit(1)
                .execute()
            )
        except SUPABASE_ERRORS as error:
            logger.error("Network error getting job: %s", error)
            return None

        return _row_to_job(result.data[0]) if result.data else None

    def cancel_job(self, job_id: UUID) -> bool:
        try:
            result = (
                self._client.table(self.TABLE_NAME)
                .update({
                    "status": JobStatus.CANCELLED.value,
                    "finished_at": now_utc().isoformat(),
                })
                .eq("id", str(job_id))
                .eq("status", JobStatus.QUEUED.value)
                .execute()
            )
        except SUPABASE_ERRORS as error:
            logger.error("Network error cancelling job: %s", error)
            return False

        if result.data:
            logger.info("Job cancelled: id=%s", job_id)
            return True
        return False

    def open_execution_log(self, job_id: UUID, attempt: int) -> bool:
        row = {
            "job_id": str(job_id),
            "attempt": attempt,
            "status": ExecutionStatus.RUNNING.value,
            "started_at": now_utc().isoformat(),
        }

        try:
            result = self._client.table(self.LOG_TABLE_NAME).insert(row).execute()
            return bool(result.data)
        except SUPABASE_ERRORS as error:
            logger.error("Network error opening execution log: %s", error)
            return False

    def close_execution_log(
        self,
        job_id: UUID,
        attempt: int,
        status: ExecutionStatus,
        recipe_id: str | None,
        error_message: str | None,
        execution_time_ms: int,
    ) -> bool:
        update_data = {
            "status": status.value,
            "recipe_id": recipe_id,
            "error_message": error_message,
            "execution_time_ms": execution_time_ms,
            "completed_at": now_utc().isoformat(),
        }

        try:
            result = (
                self._client.table(self.LOG_TABLE_NAME)
                .update(update_data)
                .eq("job_id", str(job_id))
                .eq("attempt", attempt)
                .eq("status", ExecutionStatus.RUNNING.value)
                .execute()
            )
            return bool(result.data)
        except SUPABASE_ERRORS as error:
            logger.error("Network error closing execution log: %s", error)
            return False
