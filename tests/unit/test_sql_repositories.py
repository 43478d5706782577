from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from imageflow.domain.entities.pipeline import VersionEntity
from imageflow.domain.errors import NotFoundError, UnauthorizedError
from imageflow.infrastructure.database.repositories.postgres_pipeline_repository import (
    PostgresPipelineRepository,
)
from imageflow.infrastructure.database.repositories.supabase_pipeline_repository import (
    SupabasePipelineRepository,
)

PIPELINE_ROW = {
    "id": "img-1",
    "user_id": "alice",
    "original_name": "cat.png",
    "storage_name": "alice/img-1_cat.png",
    "mime_type": "image/png",
    "byte_size": 10,
    "uploaded_at": "2024-05-01T10:00:00+00:00",
    "tags": ["cat"],
}


def version(vid="v1"):
    return VersionEntity(
        id=vid,
        operation="nano-banana-edit",
        ai_model="nano-banana",
        parameters={"angle": 90},
        storage_name=f"alice/img-1/{vid}_cat.jpg",
        url="http://files/v",
        byte_size=5,
        created_at=datetime(2024, 5, 1, tzinfo=UTC),
        processing_time_ms=1200,
        source_image_id="img-1",
    )


def pg_with_cursor(owner):
    cursor = MagicMock()
    cursor.fetchone.return_value = {"user_id": owner} if owner else None
    pg = MagicMock()
    pg.transaction.return_value.__enter__.return_value = cursor
    pg.transaction.return_value.__exit__.return_value = False
    return pg, cursor


def executed_sql(cursor):
    return [call.args[0] for call in cursor.execute.call_args_list]


def test_postgres_append_increments_in_sql():
    pg, cursor = pg_with_cursor("alice")
    PostgresPipelineRepository(pg).append_version("alice", "img-1", version())

    statements = executed_sql(cursor)
    assert statements[0].startswith("SELECT user_id FROM pipelines")
    assert "INSERT INTO pipeline_versions" in statements[1]
    # lineage pointer that is unset is not written
    assert "source_processed_version_id" not in statements[1]
    assert "processed_version_count + 1" in statements[2]


def test_postgres_append_checks_owner():
    pg, cursor = pg_with_cursor("bob")
    with pytest.raises(UnauthorizedError):
        PostgresPipelineRepository(pg).append_version("alice", "img-1", version())
    assert len(executed_sql(cursor)) == 1

    pg, _ = pg_with_cursor(None)
    with pytest.raises(NotFoundError):
        PostgresPipelineRepository(pg).append_version("alice", "img-1", version())


def test_postgres_get_hides_foreign_pipelines():
    pg = MagicMock()
    pg.execute_one.return_value = dict(PIPELINE_ROW)
    pg.execute_many.return_value = []
    repo = PostgresPipelineRepository(pg)
    assert repo.get("bob", "img-1") is None
    pipeline = repo.get("alice", "img-1")
    assert pipeline.tags == ["cat"]
    assert pipeline.uploaded_at == datetime(2024, 5, 1, 10, tzinfo=UTC)


def supabase_client(rows):
    client = MagicMock()
    query = client.table.return_value.select.return_value
    query.eq.return_value.limit.return_value.execute.return_value.data = rows
    query.in_.return_value.order.return_value.execute.return_value.data = []
    return client


def test_supabase_append_uses_atomic_rpc():
    client = supabase_client([dict(PIPELINE_ROW)])
    SupabasePipelineRepository(client).append_version("alice", "img-1", version())

    inserted = client.table.return_value.insert.call_args.args[0]
    assert inserted["pipeline_id"] == "img-1"
    assert inserted["source_image_id"] == "img-1"
    client.rpc.assert_called_once_with(
        "increment_processed_version_count", {"pipeline_id": "img-1", "delta": 1}
    )


def test_supabase_append_rejects_other_users():
    client = supabase_client([dict(PIPELINE_ROW)])
    with pytest.raises(UnauthorizedError):
        SupabasePipelineRepository(client).append_version("mallory", "img-1", version())
    client.rpc.assert_not_called()


def test_supabase_list_falls_back_without_index():
    client = supabase_client([])
    older = dict(PIPELINE_ROW, id="old", uploaded_at="2024-01-01T00:00:00+00:00")
    newer = dict(PIPELINE_ROW, id="new", uploaded_at="2024-06-01T00:00:00+00:00")
    by_user = client.table.return_value.select.return_value.eq.return_value
    by_user.order.side_effect = Exception("The query requires an index")
    by_user.execute.return_value.data = [older, newer]

    pipelines = SupabasePipelineRepository(client).list_all("alice")

    assert [p.id for p in pipelines] == ["new", "old"]


def test_supabase_list_propagates_other_errors():
    client = supabase_client([])
    by_user = client.table.return_value.select.return_value.eq.return_value
    by_user.order.side_effect = RuntimeError("connection reset")
    with pytest.raises(RuntimeError):
        SupabasePipelineRepository(client).list_all("alice")


def test_supabase_delete_version_decrements():
    client = supabase_client([dict(PIPELINE_ROW)])
    deleted = client.table.return_value.delete.return_value.eq.return_value.eq.return_value
    deleted.execute.return_value.data = [{"id": "v1"}]

    SupabasePipelineRepository(client).delete_version("alice", "img-1", "v1")

    client.rpc.assert_called_once_with(
        "increment_processed_version_count", {"pipeline_id": "img-1", "delta": -1}
    )
