from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import Client

from src.app.domain.errors import DuplicateRecipeError, PersistenceError
from src.app.domain.models import RecipeCandidate
from src.app.infra.db.base import PendingRecipeWrites, RecipeStore, RecipeUnitOfWork
from src.app.infra.db.supabase_client import SUPABASE_ERRORS, create_supabase_client

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _split_lines(value: object) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in value if str(item).strip()]
    if not isinstance(value, str):
        return []
    return [line.strip() for line in value.splitlines() if line.strip()]


def _first_row(data: Any) -> dict[str, Any]:
    if isinstance(data, list):
        return data[0] if data else {}
    return data if isinstance(data, dict) else {}


class SupabaseRecipeUnitOfWork(RecipeUnitOfWork):
    """Commits every staged row through the persist_ai_recipe RPC (one transaction)."""

    def __init__(self, store: "SupabaseRecipeStore") -> None:
        super().__init__()
        self._store = store

    def new_recipe_id(self) -> str:
        return str(uuid4())

    def _flush(self, pending: PendingRecipeWrites) -> None:
        recipe = pending.recipe or {}
        params = {
            "p_recipe": recipe,
            "p_source_snapshots": pending.source_snapshots,
            "p_review_tasks": pending.review_tasks,
            "p_revisions": pending.revisions,
        }

        try:
            response = self._store.client.rpc("persist_ai_recipe", params).execute()
        except APIError as error:
            if error.code == UNIQUE_VIOLATION:
                existing_id = self._store.find_by_fingerprint(str(recipe.get("name_fingerprint", "")))
                if existing_id:
                    raise DuplicateRecipeError(existing_id) from error
            logger.error("Recipe persistence rejected: %s", error)
            raise PersistenceError("persist_ai_recipe", str(error)) from error
        except SUPABASE_ERRORS as error:
            logger.error("Network error persisting recipe: %s", error)
            raise PersistenceError("persist_ai_recipe", str(error)) from error

        row = _first_row(response.data)
        if not row.get("recipe_id"):
            raise PersistenceError("persist_ai_recipe", "RPC returned no recipe id")

        if not row.get("created", True):
            raise DuplicateRecipeError(str(row["recipe_id"]))

        logger.info(
            "Persisted AI recipe: id=%s, snapshots=%d",
            row["recipe_id"],
            len(pending.source_snapshots),
        )


class SupabaseRecipeStore(RecipeStore):
    TABLE_NAME = "recipes"

    def __init__(self, client: Client | None = None):
        self.client = client or create_supabase_client()

    def find_by_fingerprint(self, name_fingerprint: str) -> Optional[str]:
        if not name_fingerprint:
            return None

        result = (
            self.client.table(self.TABLE_NAME)
            .select("id")
            .eq("name_fingerprint", name_fingerprint)
            .limit(1)
            .execute()
        )
        row = _first_row(result.data)
        return str(row["id"]) if row.get("id") else None

    def list_dedupe_candidates(
        self,
        statuses: list[str],
        limit: int = 50,
    ) -> list[RecipeCandidate]:
        result = (
            self.client.table(self.TABLE_NAME)
            .select("id, title, ingredients_text")
            .in_("authenticity_status", statuses)
            .limit(limit)
            .execute()
        )

        return [
            RecipeCandidate(
                id=str(row["id"]),
                title=str(row.get("title") or ""),
                ingredients=_split_lines(row.get("ingredients_text")),
            )
            for row in (result.data or [])
        ]

    def unit_of_work(self) -> SupabaseRecipeUnitOfWork:
        return SupabaseRecipeUnitOfWork(self)
