from __future__ import annotations

import asyncio
import socket
from pathlib import Path

import pytest

from lingualearn.core.settings import settings
from lingualearn.storage.store import (
    BatchAction,
    BatchOperation,
    FileDocumentStore,
    InMemoryDocumentStore,
    MongoDocumentStore,
    QueryFilter,
    build_document_store,
    get_store_runtime_status,
)


def _mongo_reachable() -> bool:
    try:
        with socket.create_connection(("localhost", 27017), timeout=0.5):
            return True
    except OSError:
        return False


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryDocumentStore()
    return FileDocumentStore(tmp_path)


@pytest.mark.asyncio
async def test_crud_roundtrip(store):
    assert (await store.set_document("words", "w1", {"text": "hola", "level": 1})).success

    fetched = await store.get_document("words", "w1")
    assert fetched.success and fetched.value == {"text": "hola", "level": 1}

    assert (await store.update_fields("words", "w1", {"level": 2})).success
    assert (await store.get_document("words", "w1")).value["level"] == 2

    deleted = await store.delete_document("words", "w1")
    assert deleted.success and deleted.value is True
    missing = await store.get_document("words", "w1")
    assert not missing.success and missing.not_found
    assert "not found" in missing.error


@pytest.mark.asyncio
async def test_update_missing_document_is_a_failure_not_an_exception(store):
    result = await store.update_fields("words", "nope", {"level": 2})
    assert not result.success
    assert result.not_found


@pytest.mark.asyncio
async def test_query_with_equality_and_range(store):
    for i, day in enumerate(["2025-01-01", "2025-01-05", "2025-01-09"]):
        await store.set_document("events", f"e{i}", {"learner_id": "ana", "day": day})
    await store.set_document("events", "other", {"learner_id": "luis", "day": "2025-01-05"})

    result = await store.query_collection(
        "events", QueryFilter(equals={"learner_id": "ana"}, range_field="day", ge="2025-01-04")
    )
    assert sorted(doc["day"] for doc in result.value) == ["2025-01-05", "2025-01-09"]
    assert len((await store.get_collection("events")).value) == 4


@pytest.mark.asyncio
async def test_range_on_timestamps_orders_by_instant(store):
    await store.set_document("events", "whole", {"at": "2025-01-01T00:00:00Z"})
    await store.set_document("events", "half", {"at": "2025-01-01T00:00:00.500000Z"})
    await store.set_document("events", "before", {"at": "2024-12-31T23:59:59.900000Z"})

    after = await store.query_collection("events", QueryFilter(range_field="at", ge="2025-01-01T00:00:00Z"))
    assert sorted(doc["at"] for doc in after.value) == ["2025-01-01T00:00:00.500000Z", "2025-01-01T00:00:00Z"]

    until = await store.query_collection("events", QueryFilter(range_field="at", le="2025-01-01T00:00:00.250000Z"))
    assert sorted(doc["at"] for doc in until.value) == ["2024-12-31T23:59:59.900000Z", "2025-01-01T00:00:00Z"]


@pytest.mark.asyncio
async def test_add_document_generates_id(store):
    added = await store.add_document("notes", {"body": "repasar verbos"})
    assert added.success and added.value
    assert (await store.get_document("notes", added.value)).value["id"] == added.value


@pytest.mark.asyncio
async def test_batch_write_is_all_or_nothing(store):
    await store.set_document("progress", "p1", {"xp": 10})
    operations = [
        BatchOperation("progress", "p1", BatchAction.DELETE),
        BatchOperation("progress", "p2", BatchAction.SET, {"xp": 5}),
        BatchOperation("progress", "ghost", BatchAction.UPDATE, {"xp": 1}),
    ]
    result = await store.batch_write(operations)
    assert not result.success
    assert (await store.get_document("progress", "p1")).success
    assert (await store.get_document("progress", "p2")).not_found

    ok = await store.batch_write(operations[:2])
    assert ok.success
    assert (await store.get_document("progress", "p1")).not_found
    assert (await store.get_document("progress", "p2")).value == {"xp": 5}


@pytest.mark.asyncio
async def test_cancelled_write_applies_nothing(store):
    cancel = asyncio.Event()
    cancel.set()
    result = await store.set_document("words", "w1", {"text": "hola"}, cancel=cancel)
    assert not result.success and result.cancelled

    batch = await store.batch_write([BatchOperation("words", "w2", BatchAction.SET, {"text": "adiós"})], cancel=cancel)
    assert batch.cancelled
    assert (await store.get_collection("words")).value == []


@pytest.mark.asyncio
async def test_invalid_arguments_raise(store):
    with pytest.raises(ValueError):
        await store.get_document("", "id")
    with pytest.raises(ValueError):
        await store.set_document("words", " ", {})
    with pytest.raises(ValueError):
        await store.batch_write([BatchOperation("words", "w1", BatchAction.SET)])


@pytest.mark.asyncio
async def test_file_store_persists_across_instances(tmp_path: Path):
    await FileDocumentStore(tmp_path).set_document("quizzes", "quiz-1", {"title": "Saludos"})
    reopened = FileDocumentStore(tmp_path)
    assert (await reopened.get_document("quizzes", "quiz-1")).value == {"title": "Saludos"}


@pytest.mark.asyncio
async def test_build_document_store_follows_settings(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(settings, "document_store_backend", "file")
    monkeypatch.setattr(settings, "runtime_data_dir", str(tmp_path))
    store = build_document_store()
    assert isinstance(store, FileDocumentStore)
    status = await get_store_runtime_status(store)
    assert status == {"configured_backend": "file", "active_backend": "file", "connected": True, "error": None}

    monkeypatch.setattr(settings, "document_store_backend", "carrier-pigeon")
    assert isinstance(build_document_store(), InMemoryDocumentStore)


@pytest.mark.asyncio
@pytest.mark.skipif(not _mongo_reachable(), reason="no MongoDB server on localhost")
async def test_mongo_store_roundtrip():
    store = MongoDocumentStore(settings.mongodb_url, "lingualearn_test")
    try:
        assert (await store.set_document("words", "w1", {"text": "hola"})).success
        assert (await store.get_document("words", "w1")).value == {"text": "hola"}
        assert (await store.delete_document("words", "w1")).value is True
        assert (await store.get_document("words", "w1")).not_found
    finally:
        await store.close()
