# src/app/deps.py (singletons exposed as FastAPI dependencies)
from __future__ import annotations

from supabase import Client, create_client

from src.app.config import get_settings
from src.app.infra.db.base import AutoFindJobRepository
from src.app.infra.db.supabase_jobs_repo import SupabaseAutoFindJobRepository

_client: Client | None = None


def get_supabase() -> Client:
    global _client
    if _client is None:
        settings = get_settings()
        _client = create_client(str(settings.SUPABASE_URL), settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


def get_job_repository() -> AutoFindJobRepository:
    return SupabaseAutoFindJobRepository(get_supabase())
