from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class AutoFindRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=500, description="Free-text dish name or description")


class AutoFindAccepted(BaseModel):
    jobId: str
    status: str
    stage: Optional[str] = None


class AutoFindJobResponse(BaseModel):
    jobId: str
    status: str
    stage: Optional[str] = None
    progress: Optional[float] = None
    query: str
    attemptCount: int = 0
    recipeId: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    createdAt: Optional[datetime] = None
    startedAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None
