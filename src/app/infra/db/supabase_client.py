from __future__ import annotations

import os
from datetime import datetime, timezone

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

# Errors a Supabase round trip can raise; repositories log these and degrade.
SUPABASE_ERRORS = (ConnectionError, TimeoutError, httpx.HTTPError, APIError)


def create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default  # type: ignore[call-overload]


def safe_str(value: object) -> str | None:
    return str(value) if value else None
