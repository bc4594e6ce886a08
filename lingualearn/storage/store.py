from __future__ import annotations

import asyncio
import copy
import json
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

from lingualearn.core.errors import PersistenceError
from lingualearn.core.logging import DOMAIN_STORAGE, get_domain_logger
from lingualearn.core.resilience import retry_with_backoff
from lingualearn.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_STORAGE)

T = TypeVar("T")


class BatchAction(str, Enum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BatchOperation:
    collection: str
    document_id: str
    action: BatchAction
    document: dict | None = None


@dataclass(frozen=True)
class QueryFilter:
    """Field equality match plus an optional inclusive range on one field."""

    equals: dict[str, Any] = field(default_factory=dict)
    range_field: str | None = None
    ge: Any = None
    le: Any = None

    def matches(self, document: dict) -> bool:
        for key, expected in self.equals.items():
            if document.get(key) != expected:
                return False
        if self.range_field is not None:
            value = document.get(self.range_field)
            if value is None:
                return False
            if self.ge is not None and _less(value, self.ge):
                return False
            if self.le is not None and _less(self.le, value):
                return False
        return True


_ISO_DATETIME = re.compile(r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}.*)?$")


def _ordered(value: Any) -> Any:
    if isinstance(value, str) and _ISO_DATETIME.match(value):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _less(left: Any, right: Any) -> bool:
    # ISO timestamps order by instant, not by text: "...:00.5Z" is after "...:00Z".
    try:
        return _ordered(left) < _ordered(right)
    except TypeError:
        return left < right


@dataclass(frozen=True)
class StoreResult(Generic[T]):
    success: bool
    value: T | None = None
    error: str | None = None
    cause: BaseException | None = None
    not_found: bool = False
    cancelled: bool = False

    @classmethod
    def ok(cls, value: T) -> "StoreResult[T]":
        return cls(success=True, value=value)

    @classmethod
    def failure(cls, error: str, cause: BaseException | None = None) -> "StoreResult[T]":
        return cls(success=False, error=error, cause=cause)

    @classmethod
    def missing(cls, collection: str, document_id: str) -> "StoreResult[T]":
        return cls(success=False, error=f"document {collection}/{document_id} not found", not_found=True)

    @classmethod
    def aborted(cls, op_name: str) -> "StoreResult[T]":
        return cls(success=False, error=f"{op_name} cancelled", cancelled=True)

    def to_error(self) -> PersistenceError:
        return PersistenceError(self.error or "document store operation failed", cause=self.cause)

    def unwrap(self) -> T:
        if not self.success:
            raise self.to_error()
        return self.value  # type: ignore[return-value]


def _is_cancelled(cancel: asyncio.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _check_key(collection: str, document_id: str | None = None) -> None:
    if not collection or not collection.strip():
        raise ValueError("collection name is required")
    if document_id is not None and not str(document_id).strip():
        raise ValueError("document id is required")


def _check_operations(operations: list[BatchOperation]) -> None:
    for op in operations:
        _check_key(op.collection, op.document_id)
        if not isinstance(op.action, BatchAction):
            raise ValueError(f"Unsupported batch action: {op.action!r}")
        if op.action in {BatchAction.SET, BatchAction.UPDATE} and op.document is None:
            raise ValueError(f"{op.action.value} operation on {op.collection}/{op.document_id} needs a document")


class DocumentStore(ABC):
    """Async CRUD + batch document database keyed by collection and document id.

    Expected failures (missing document, backend unreachable, cancellation) come back
    as a failed ``StoreResult``; only invalid arguments raise ``ValueError``. Every
    operation takes an optional ``cancel`` event which, once set before the operation
    commits, turns it into a cancelled failure with nothing applied.
    """

    backend_name = "abstract"

    @abstractmethod
    async def get_document(self, collection: str, document_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[dict]:
        raise NotImplementedError

    @abstractmethod
    async def get_collection(self, collection: str, *, cancel: asyncio.Event | None = None) -> StoreResult[list[dict]]:
        raise NotImplementedError

    @abstractmethod
    async def query_collection(
        self, collection: str, query: QueryFilter, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[list[dict]]:
        raise NotImplementedError

    @abstractmethod
    async def set_document(
        self, collection: str, document_id: str, document: dict, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[bool]:
        raise NotImplementedError

    @abstractmethod
    async def update_fields(
        self, collection: str, document_id: str, fields: dict, *, cancel: asyncio.Event | None = None
    ) -> StoreResult[bool]:
        raise NotImplementedError

    @abstractmethod
    async def delete_document(self, collection: str, document_id: str, *, cancel: asyncio.Event | None = None) -> StoreResult[bool]:
        raise NotImplementedError

    @abstractmethod
    async def batch_write(self, operations: list[BatchOperation], *, cancel: asyncio.Event | None = None) -> StoreResult[bool]:
        raise NotImplementedError

    async def add_document(self, collection: str, document: dict, *, cancel: asyncio.Event | None = None) -> StoreResult[str]:
        _check_key(collection)
        document_id = str(document.get("id") or uuid.uuid4())
        result = await self.set_document(collection, document_id, {**document, "id": document_id}, cancel=cancel)
        if not result.success:
            return StoreResult(success=False, error=result.error, cause=result.cause, cancelled=result.cancelled)
        return StoreResult.ok(document_id)

    async def ping(self) -> tuple[bool, str | None]:
        return True, None

    async def close(self) -> None:
        return None


def _apply_operations(collections: dict[str, dict[str, dict]], operations: list[BatchOperation]) -> str | None:
    """Apply ``operations`` to ``collections`` in place; return an error instead of applying a bad one."""
    for op in operations:
        docs = collections.setdefault(op.collection, {})
        if op.action == BatchAction.SET:
            docs[op.document_id] = copy.deepcopy(op.document)
        elif op.action == BatchAction.UPDATE:
            if op.document_id not in docs:
                return f"document {op.collection}/{op.document_id} not found"
            docs[op.document_id].update(copy.deepcopy(op.document))
        else:
            docs.pop(op.document_id, None)
    return None


class InMemoryDocumentStore(DocumentStore):
    backend_name = "memory"

    def __init__(self):
        self._collections: dict[str, dict[str, dict]] = {}

    async def get_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("get_document")
        doc = self._collections.get(collection, {}).get(document_id)
        if doc is None:
            return StoreResult.missing(collection, document_id)
        return StoreResult.ok(copy.deepcopy(doc))

    async def get_collection(self, collection, *, cancel=None):
        _check_key(collection)
        if _is_cancelled(cancel):
            return StoreResult.aborted("get_collection")
        return StoreResult.ok([copy.deepcopy(doc) for doc in self._collections.get(collection, {}).values()])

    async def query_collection(self, collection, query, *, cancel=None):
        _check_key(collection)
        if _is_cancelled(cancel):
            return StoreResult.aborted("query_collection")
        docs = self._collections.get(collection, {}).values()
        return StoreResult.ok([copy.deepcopy(doc) for doc in docs if query.matches(doc)])

    async def set_document(self, collection, document_id, document, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("set_document")
        self._collections.setdefault(collection, {})[document_id] = copy.deepcopy(document)
        return StoreResult.ok(True)

    async def update_fields(self, collection, document_id, fields, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("update_fields")
        doc = self._collections.get(collection, {}).get(document_id)
        if doc is None:
            return StoreResult.missing(collection, document_id)
        doc.update(copy.deepcopy(fields))
        return StoreResult.ok(True)

    async def delete_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("delete_document")
        existed = self._collections.get(collection, {}).pop(document_id, None) is not None
        return StoreResult.ok(existed)

    async def batch_write(self, operations, *, cancel=None):
        _check_operations(operations)
        if _is_cancelled(cancel):
            return StoreResult.aborted("batch_write")
        # Stage on a copy of the touched collections; swap in only if every operation applied.
        touched = {op.collection for op in operations}
        staged = {name: copy.deepcopy(self._collections.get(name, {})) for name in touched}
        error = _apply_operations(staged, operations)
        if error:
            return StoreResult.failure(error)
        self._collections.update(staged)
        return StoreResult.ok(True)


class FileDocumentStore(DocumentStore):
    """One JSON file per collection under ``<base_dir>/documents``."""

    backend_name = "file"

    def __init__(self, base_dir: Path):
        self.base = base_dir / "documents"
        self.base.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "__", collection)
        return self.base / f"{safe}.json"

    def _read(self, collection: str) -> dict[str, dict]:
        path = self._path(collection)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, collection: str, docs: dict[str, dict]) -> None:
        self._path(collection).write_text(json.dumps(docs, indent=2, default=str), encoding="utf-8")

    async def get_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("get_document")
        try:
            doc = self._read(collection).get(document_id)
        except (OSError, ValueError) as exc:
            return StoreResult.failure(f"failed to read {collection}: {exc}", exc)
        if doc is None:
            return StoreResult.missing(collection, document_id)
        return StoreResult.ok(doc)

    async def get_collection(self, collection, *, cancel=None):
        _check_key(collection)
        if _is_cancelled(cancel):
            return StoreResult.aborted("get_collection")
        try:
            return StoreResult.ok(list(self._read(collection).values()))
        except (OSError, ValueError) as exc:
            return StoreResult.failure(f"failed to read {collection}: {exc}", exc)

    async def query_collection(self, collection, query, *, cancel=None):
        result = await self.get_collection(collection, cancel=cancel)
        if not result.success:
            return result
        return StoreResult.ok([doc for doc in result.value or [] if query.matches(doc)])

    async def set_document(self, collection, document_id, document, *, cancel=None):
        return await self.batch_write(
            [BatchOperation(collection, document_id, BatchAction.SET, document)], cancel=cancel
        )

    async def update_fields(self, collection, document_id, fields, *, cancel=None):
        _check_key(collection, document_id)
        result = await self.batch_write(
            [BatchOperation(collection, document_id, BatchAction.UPDATE, fields)], cancel=cancel
        )
        if not result.success and result.error and result.error.endswith("not found"):
            return StoreResult.missing(collection, document_id)
        return result

    async def delete_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)
        if _is_cancelled(cancel):
            return StoreResult.aborted("delete_document")
        try:
            docs = self._read(collection)
            existed = docs.pop(document_id, None) is not None
            if existed:
                self._write(collection, docs)
        except (OSError, ValueError) as exc:
            return StoreResult.failure(f"failed to delete {collection}/{document_id}: {exc}", exc)
        return StoreResult.ok(existed)

    async def batch_write(self, operations, *, cancel=None):
        _check_operations(operations)
        if _is_cancelled(cancel):
            return StoreResult.aborted("batch_write")
        try:
            staged = {op.collection: self._read(op.collection) for op in operations}
            error = _apply_operations(staged, operations)
            if error:
                return StoreResult.failure(error)
            for collection, docs in staged.items():
                self._write(collection, docs)
        except (OSError, ValueError) as exc:
            return StoreResult.failure(f"batch write failed: {exc}", exc)
        return StoreResult.ok(True)


def _sanitize_mongo_error(raw: str) -> str:
    if not raw:
        return raw
    # Hide credentials embedded in connection URLs.
    return re.sub(r"(mongodb(?:\+srv)?://)([^/@\s]+)@", r"\1***:***@", raw)


class _BatchAborted(Exception):
    pass


class MongoDocumentStore(DocumentStore):
    backend_name = "mongo"

    def __init__(self, mongodb_url: str, db_name: str, *, use_transactions: bool = False):
        from pymongo import AsyncMongoClient
        from pymongo.errors import AutoReconnect, NetworkTimeout, PyMongoError

        self._client = AsyncMongoClient(mongodb_url, serverSelectionTimeoutMS=3000)
        self._db = self._client[db_name]
        self._use_transactions = use_transactions
        self._retryable = (AutoReconnect, NetworkTimeout)
        self._PyMongoError = PyMongoError

    def _collection(self, name: str):
        return self._db[name.replace("/", ".")]

    @staticmethod
    def _from_mongo(doc: dict) -> dict:
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    async def _run(self, op_name: str, call, cancel: asyncio.Event | None):
        if _is_cancelled(cancel):
            return StoreResult.aborted(op_name)

        def _log_retry(attempt: int, exc: Exception) -> None:
            logger.warning("Mongo %s retry attempt=%s error=%s", op_name, attempt, _sanitize_mongo_error(str(exc)))

        try:
            return await retry_with_backoff(
                call,
                max_retries=settings.store_max_retries,
                base_delay_seconds=settings.store_retry_base_delay_seconds,
                retryable_errors=self._retryable,
                on_retry=_log_retry,
            )
        except self._PyMongoError as exc:
            message = _sanitize_mongo_error(str(exc))
            logger.error("Mongo %s failed error=%s", op_name, message)
            return StoreResult.failure(f"{op_name} failed: {message}", exc)

    async def get_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)

        async def _call():
            doc = await self._collection(collection).find_one({"_id": document_id})
            if doc is None:
                return StoreResult.missing(collection, document_id)
            return StoreResult.ok(self._from_mongo(doc))

        return await self._run("get_document", _call, cancel)

    async def get_collection(self, collection, *, cancel=None):
        return await self.query_collection(collection, QueryFilter(), cancel=cancel)

    async def query_collection(self, collection, query, *, cancel=None):
        _check_key(collection)
        mongo_filter: dict[str, Any] = dict(query.equals)
        if query.range_field is not None:
            bounds: dict[str, Any] = {"$exists": True}
            if query.ge is not None:
                bounds["$gte"] = query.ge
            if query.le is not None:
                bounds["$lte"] = query.le
            mongo_filter[query.range_field] = bounds

        async def _call():
            docs = await self._collection(collection).find(mongo_filter).to_list()
            return StoreResult.ok([self._from_mongo(doc) for doc in docs])

        return await self._run("query_collection", _call, cancel)

    async def set_document(self, collection, document_id, document, *, cancel=None):
        _check_key(collection, document_id)

        async def _call():
            await self._collection(collection).replace_one({"_id": document_id}, {**document, "_id": document_id}, upsert=True)
            return StoreResult.ok(True)

        return await self._run("set_document", _call, cancel)

    async def update_fields(self, collection, document_id, fields, *, cancel=None):
        _check_key(collection, document_id)

        async def _call():
            outcome = await self._collection(collection).update_one({"_id": document_id}, {"$set": fields})
            if outcome.matched_count == 0:
                return StoreResult.missing(collection, document_id)
            return StoreResult.ok(True)

        return await self._run("update_fields", _call, cancel)

    async def delete_document(self, collection, document_id, *, cancel=None):
        _check_key(collection, document_id)

        async def _call():
            outcome = await self._collection(collection).delete_one({"_id": document_id})
            return StoreResult.ok(outcome.deleted_count > 0)

        return await self._run("delete_document", _call, cancel)

    async def _apply_batch(self, operations: list[BatchOperation], session=None) -> None:
        for op in operations:
            coll = self._collection(op.collection)
            if op.action == BatchAction.SET:
                await coll.replace_one({"_id": op.document_id}, {**op.document, "_id": op.document_id}, upsert=True, session=session)
            elif op.action == BatchAction.UPDATE:
                outcome = await coll.update_one({"_id": op.document_id}, {"$set": op.document}, session=session)
                if outcome.matched_count == 0:
                    raise _BatchAborted(f"document {op.collection}/{op.document_id} not found")
            else:
                await coll.delete_one({"_id": op.document_id}, session=session)

    async def batch_write(self, operations, *, cancel=None):
        _check_operations(operations)

        async def _call():
            try:
                if self._use_transactions:
                    async with self._client.start_session() as session:
                        await session.with_transaction(lambda s: self._apply_batch(operations, s))
                else:
                    await self._apply_batch(operations)
            except _BatchAborted as exc:
                return StoreResult.failure(str(exc))
            return StoreResult.ok(True)

        return await self._run("batch_write", _call, cancel)

    async def ping(self) -> tuple[bool, str | None]:
        try:
            await self._client.admin.command("ping")
            return True, None
        except Exception as exc:  # noqa: BLE001
            return False, _sanitize_mongo_error(str(exc))

    async def close(self) -> None:
        await self._client.close()


def build_document_store() -> DocumentStore:
    backend = settings.document_store_backend.strip().lower()
    if backend == "mongo":
        return MongoDocumentStore(
            settings.mongodb_url,
            settings.mongodb_db_name,
            use_transactions=settings.mongodb_use_transactions,
        )
    if backend == "file":
        return FileDocumentStore(Path(settings.runtime_data_dir))
    if backend != "memory":
        logger.warning("Unknown DOCUMENT_STORE_BACKEND=%s; falling back to in-memory store", backend)
    return InMemoryDocumentStore()


async def get_store_runtime_status(store: DocumentStore) -> dict:
    connected, error = await store.ping()
    return {
        "configured_backend": settings.document_store_backend.strip().lower(),
        "active_backend": store.backend_name,
        "connected": connected,
        "error": error,
    }
