# src/app/routers/autofind.py
"""
Auto-find job routes: enqueue a query, poll its status, cancel it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.app.deps import get_job_repository
from src.app.domain.errors import EmptyQueryError, JobRepositoryError
from src.app.domain.models import AutoFindJob, AutoFindJobPayload
from src.app.infra.db.base import AutoFindJobRepository
from src.app.schemas.autofind import AutoFindAccepted, AutoFindJobResponse, AutoFindRequest
from src.services.normalizer import normalize_query

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auto-find", tags=["Auto-find"])


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid job ID format",
        )


def _job_to_response(job: AutoFindJob) -> AutoFindJobResponse:
    return AutoFindJobResponse(
        jobId=str(job.id),
        status=job.status.value,
        stage=job.stage,
        progress=job.progress,
        query=job.payload.user_query,
        attemptCount=job.attempt_count,
        recipeId=job.recipe_id,
        result=job.result,
        error=job.error_message,
        createdAt=job.created_at,
        startedAt=job.started_at,
        finishedAt=job.finished_at,
    )


def build_payload(raw_query: str, client_ip: str) -> AutoFindJobPayload:
    """Normalize the query up front so empty input never reaches the queue."""
    normalized = normalize_query(raw_query)
    if normalized.is_empty:
        raise EmptyQueryError()

    return AutoFindJobPayload(
        user_query=raw_query.strip(),
        normalized_query=normalized.canonical_form,
        search_terms=normalized.search_terms,
        client_ip=client_ip,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.post("", response_model=AutoFindAccepted, status_code=status.HTTP_202_ACCEPTED)
def create_auto_find_job(
    body: AutoFindRequest,
    request: Request,
    job_repo: AutoFindJobRepository = Depends(get_job_repository),
):
    """
    Queue a recipe discovery job.

    Poll GET /v1/auto-find/{job_id} until status is DONE or FAILED.
    """
    client_ip = request.client.host if request.client else "unknown"

    try:
        payload = build_payload(body.query, client_ip)
    except EmptyQueryError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        job = job_repo.enqueue_auto_find_job(payload)
    except JobRepositoryError as e:
        logger.error("Failed to create auto-find job: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to queue auto-find job",
        )

    return AutoFindAccepted(jobId=str(job.id), status=job.status.value, stage=job.stage)


@router.get("/{job_id}", response_model=AutoFindJobResponse)
def get_auto_find_job(
    job_id: str,
    job_repo: AutoFindJobRepository = Depends(get_job_repository),
):
    job = job_repo.get_job_by_id(_parse_job_id(job_id))
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return _job_to_response(job)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def cancel_auto_find_job(
    job_id: str,
    job_repo: AutoFindJobRepository = Depends(get_job_repository),
):
    """Only QUEUED jobs can be cancelled. RUNNING jobs run to completion."""
    if not job_repo.cancel_job(_parse_job_id(job_id)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Job cannot be cancelled (not found or already processing)",
        )
    logger.info("Auto-find job cancelled: id=%s", job_id)
