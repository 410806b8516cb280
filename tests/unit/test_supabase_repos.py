from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import httpx
import pytest
from postgrest.exceptions import APIError

from src.app.domain.errors import DuplicateRecipeError, JobRepositoryError, PersistenceError
from src.app.domain.models import (
    AutoFindJobPayload,
    ExecutionStatus,
    FetchedSource,
    JobStatus,
)
from src.app.infra.db.supabase_jobs_repo import (
    SupabaseAutoFindJobRepository,
    _calculate_backoff_minutes,
    _row_to_job,
)
from src.app.infra.db.supabase_recipe_store import SupabaseRecipeStore


def _response(data: object) -> SimpleNamespace:
    return SimpleNamespace(data=data)


def _payload() -> AutoFindJobPayload:
    return AutoFindJobPayload(
        user_query="Ethiopian Injera",
        normalized_query="ethiopian_injera",
        search_terms="ethiopian injera",
        client_ip="127.0.0.1",
        timestamp="2026-01-01T00:00:00+00:00",
    )


def _job_row(**overrides: object) -> dict[str, object]:
    row: dict[str, object] = {
        "id": str(uuid4()),
        "payload": _payload().to_dict(),
        "status": "RUNNING",
        "stage": "generating",
        "progress": 40,
        "attempt_count": 1,
        "max_attempts": 3,
        "created_at": "2026-01-01T00:00:00Z",
        "locked_at": "2026-01-01T00:00:05Z",
        "locked_by": "worker-1",
    }
    row.update(overrides)
    return row


def _stage_recipe(store: SupabaseRecipeStore) -> None:
    with store.unit_of_work() as uow:
        recipe_id = uow.add_recipe({"title": "Ethiopian Injera", "name_fingerprint": "abc"})
        uow.add_source_snapshot(
            recipe_id,
            FetchedSource(
                url="https://en.wikipedia.org/wiki/Injera",
                title="Injera",
                domain="wikipedia.org",
                excerpt_text="",
                trust_score=0.95,
                snapshot_text="Injera is a flatbread",
            ),
        )
        uow.add_review_task(recipe_id, "cultural_authenticity", "pending")


class TestRowToJob:
    def test_maps_columns(self) -> None:
        row = _job_row(result={"success": True}, recipe_id="r1")

        job = _row_to_job(row)

        assert str(job.id) == row["id"]
        assert job.status == JobStatus.RUNNING
        assert job.payload.user_query == "Ethiopian Injera"
        assert job.progress == 40.0
        assert job.locked_by == "worker-1"
        assert job.created_at is not None and job.created_at.tzinfo is not None
        assert job.result == {"success": True}
        assert job.recipe_id == "r1"

    def test_missing_optional_columns(self) -> None:
        job = _row_to_job({"id": str(uuid4()), "status": "QUEUED", "payload": None})

        assert job.payload.user_query == ""
        assert job.progress is None
        assert job.max_attempts == 3
        assert job.result is None


class TestJobRepository:
    def test_enqueue_inserts_queued_job(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        table.insert.return_value.execute.return_value = _response([_job_row(status="QUEUED", stage="queued")])
        repo = SupabaseAutoFindJobRepository(client)

        job = repo.enqueue_auto_find_job(_payload())

        inserted = table.insert.call_args.args[0]
        assert inserted["status"] == "QUEUED"
        assert inserted["payload"]["userQuery"] == "Ethiopian Injera"
        assert job.status == JobStatus.QUEUED

    def test_enqueue_network_error(self) -> None:
        client = MagicMock()
        client.table.return_value.insert.return_value.execute.side_effect = httpx.ConnectError("refused")
        repo = SupabaseAutoFindJobRepository(client)

        with pytest.raises(JobRepositoryError):
            repo.enqueue_auto_find_job(_payload())

    def test_fetch_and_lock_uses_rpc(self) -> None:
        client = MagicMock()
        row = _job_row()
        client.rpc.return_value.execute.return_value = _response([row])
        repo = SupabaseAutoFindJobRepository(client)

        job = repo.fetch_and_lock_next_job("worker-1")

        assert job is not None and str(job.id) == row["id"]
        name, params = client.rpc.call_args.args
        assert name == "fetch_and_lock_auto_find_job"
        assert params["p_worker_id"] == "worker-1"

    def test_fetch_and_lock_empty_queue(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.return_value = _response([])
        repo = SupabaseAutoFindJobRepository(client)

        assert repo.fetch_and_lock_next_job("worker-1") is None

    def test_mark_failed_requeues_with_backoff(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value = _response(
            [{"attempt_count": 1, "max_attempts": 3}]
        )
        table.update.return_value.eq.return_value.execute.return_value = _response([{"id": "x"}])
        repo = SupabaseAutoFindJobRepository(client)

        assert repo.mark_failed(uuid4(), "Unable to fetch trusted sources") is True

        update = table.update.call_args.args[0]
        assert update["status"] == "QUEUED"
        assert update["stage"] == "queued"
        assert update["progress"] == 0
        assert "next_attempt_at" in update
        assert update["locked_by"] is None

    def test_mark_failed_exhausted_attempts(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value = _response(
            [{"attempt_count": 3, "max_attempts": 3}]
        )
        table.update.return_value.eq.return_value.execute.return_value = _response([{"id": "x"}])
        repo = SupabaseAutoFindJobRepository(client)

        repo.mark_failed(uuid4(), "AI generation failed")

        update = table.update.call_args.args[0]
        assert update["status"] == "FAILED"
        assert update["stage"] == "failed"
        assert "finished_at" in update

    def test_mark_failed_permanent(self) -> None:
        client = MagicMock()
        table = client.table.return_value
        table.select.return_value.eq.return_value.limit.return_value.execute.return_value = _response(
            [{"attempt_count": 1, "max_attempts": 3}]
        )
        table.update.return_value.eq.return_value.execute.return_value = _response([{"id": "x"}])
        repo = SupabaseAutoFindJobRepository(client)

        repo.mark_failed(uuid4(), "Query must contain at least one word", permanent=True)

        assert table.update.call_args.args[0]["status"] == "FAILED"

    def test_close_execution_log(self) -> None:
        client = MagicMock()
        chain = client.table.return_value.update.return_value.eq.return_value.eq.return_value.eq.return_value
        chain.execute.return_value = _response([{"job_id": "x"}])
        repo = SupabaseAutoFindJobRepository(client)

        closed = repo.close_execution_log(uuid4(), 1, ExecutionStatus.FAILED, None, "boom", 120)

        assert closed is True
        client.table.assert_called_with("ai_jobs_log")
        update = client.table.return_value.update.call_args.args[0]
        assert update["status"] == "failed"
        assert update["error_message"] == "boom"
        assert update["execution_time_ms"] == 120

    @pytest.mark.parametrize("data, expected", [(2, 2), ([2], 2), ([{"release_stale_auto_find_locks": 3}], 3), (None, 0)])
    def test_release_stale_locks_reads_rpc_count(self, data: object, expected: int) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.return_value = _response(data)
        repo = SupabaseAutoFindJobRepository(client)

        assert repo.release_stale_locks(lock_ttl_minutes=15) == expected
        name, params = client.rpc.call_args.args
        assert name == "release_stale_auto_find_locks"
        assert params["p_cutoff"] < params["p_now"]

    def test_release_stale_locks_network_error(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.side_effect = httpx.ConnectError("refused")
        repo = SupabaseAutoFindJobRepository(client)

        assert repo.release_stale_locks() == 0

    def test_backoff_doubles_per_attempt(self) -> None:
        assert [_calculate_backoff_minutes(n) for n in (0, 1, 2, 3)] == [1, 2, 4, 8]


class TestRecipeStore:
    def test_commit_calls_persist_rpc(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.return_value = _response([{"recipe_id": "r1", "created": True}])
        store = SupabaseRecipeStore(client)

        _stage_recipe(store)

        name, params = client.rpc.call_args.args
        assert name == "persist_ai_recipe"
        assert params["p_recipe"]["title"] == "Ethiopian Injera"
        assert params["p_recipe"]["id"] == params["p_review_tasks"][0]["recipe_id"]
        assert params["p_source_snapshots"][0]["source_domain"] == "wikipedia.org"
        assert params["p_revisions"] == []

    def test_existing_recipe_reported_as_duplicate(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.return_value = _response([{"recipe_id": "existing", "created": False}])
        store = SupabaseRecipeStore(client)

        with pytest.raises(DuplicateRecipeError) as exc_info:
            _stage_recipe(store)

        assert exc_info.value.existing_recipe_id == "existing"

    def test_unique_violation_reported_as_duplicate(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.side_effect = APIError({"message": "duplicate key", "code": "23505"})
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = _response([{"id": "existing"}])
        store = SupabaseRecipeStore(client)

        with pytest.raises(DuplicateRecipeError):
            _stage_recipe(store)

    def test_network_error_raises_persistence_error(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.side_effect = httpx.ReadTimeout("timed out")
        store = SupabaseRecipeStore(client)

        with pytest.raises(PersistenceError):
            _stage_recipe(store)

    def test_missing_recipe_id_raises_persistence_error(self) -> None:
        client = MagicMock()
        client.rpc.return_value.execute.return_value = _response([])
        store = SupabaseRecipeStore(client)

        with pytest.raises(PersistenceError):
            _stage_recipe(store)

    def test_exception_inside_block_skips_rpc(self) -> None:
        client = MagicMock()
        store = SupabaseRecipeStore(client)

        with pytest.raises(RuntimeError):
            with store.unit_of_work() as uow:
                uow.add_recipe({"title": "Pad Thai", "name_fingerprint": "def"})
                raise RuntimeError("staging failed")

        client.rpc.assert_not_called()

    def test_dedupe_candidates_split_ingredient_lines(self) -> None:
        client = MagicMock()
        query = client.table.return_value.select.return_value.in_.return_value.limit.return_value
        query.execute.return_value = _response([
            {"id": 7, "title": "Lamb Tagine", "ingredients_text": "lamb\n\napricots\n honey "},
        ])
        store = SupabaseRecipeStore(client)

        candidates = store.list_dedupe_candidates(["verified", "community"], limit=10)

        assert len(candidates) == 1
        assert candidates[0].id == "7"
        assert candidates[0].ingredients == ["lamb", "apricots", "honey"]
        client.table.return_value.select.return_value.in_.assert_called_with(
            "authenticity_status", ["verified", "community"]
        )

    def test_find_by_fingerprint(self) -> None:
        client = MagicMock()
        lookup = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        lookup.execute.return_value = _response([{"id": "abc-123"}])
        store = SupabaseRecipeStore(client)

        assert store.find_by_fingerprint("f" * 64) == "abc-123"
        assert store.find_by_fingerprint("") is None
