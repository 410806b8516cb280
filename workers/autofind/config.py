# workers/autofind/config.py
"""
Configuration for the auto-find worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class WorkerConfig:
    """Configuration for the auto-find worker."""

    # Worker identification
    worker_id: str = os.getenv("WORKER_ID", f"autofind-{os.getpid()}")

    # Polling configuration
    poll_interval_seconds: int = int(os.getenv("WORKER_POLL_INTERVAL", "5"))
    max_poll_interval_seconds: int = int(os.getenv("WORKER_MAX_POLL_INTERVAL", "30"))

    # Processing configuration
    max_jobs_per_run: int = int(os.getenv("WORKER_MAX_JOBS_PER_RUN", "0"))  # 0 = infinite
    shutdown_on_empty: bool = os.getenv("WORKER_SHUTDOWN_ON_EMPTY", "false").lower() == "true"
    empty_queue_shutdown_minutes: int = int(os.getenv("WORKER_EMPTY_SHUTDOWN_MINUTES", "10"))

    # Lock management
    lock_ttl_minutes: int = int(os.getenv("WORKER_LOCK_TTL_MINUTES", "30"))
    stale_lock_check_interval_minutes: int = int(os.getenv("WORKER_STALE_CHECK_MINUTES", "5"))

    # Supabase (inherited from env)
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # Generation
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not self.supabase_url:
            errors.append("SUPABASE_URL is required")
        if not self.supabase_key:
            errors.append("SUPABASE_SERVICE_ROLE_KEY is required")
        if not self.gemini_api_key:
            errors.append("GEMINI_API_KEY is required")
        if self.poll_interval_seconds <= 0:
            errors.append("WORKER_POLL_INTERVAL must be positive")
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("WORKER_MAX_POLL_INTERVAL must not be lower than WORKER_POLL_INTERVAL")

        return errors


def get_config() -> WorkerConfig:
    """Get worker configuration from environment."""
    return WorkerConfig()
