from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from ..core.config import PersistenceSettings
from ..core.logging import get_logger
from .models import documents, metadata

logger = get_logger(name=__name__)

Document = dict[str, Any]
Batch = Mapping[str, Sequence[Mapping[str, Any]]]


def _document_id(document: Mapping[str, Any]) -> str:
    doc_id = document.get("id")
    if doc_id is None or doc_id == "":
        raise ValueError("documents must carry a non-empty 'id'")
    return str(doc_id)


def _matches(document: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(document.get(key) == value for key, value in filters.items())


class DocumentStore:
    """Keyed document persistence. Every ``write`` is atomic across all of its entities."""

    async def write(self, batch: Batch) -> None:
        raise NotImplementedError

    async def query(self, entity: str, **filters: Any) -> list[Document]:
        raise NotImplementedError

    async def delete(self, entities: Iterable[str] | None = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._entities: dict[str, dict[str, Document]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def write(self, batch: Batch) -> None:
        staged = {
            entity: {_document_id(doc): copy.deepcopy(dict(doc)) for doc in docs}
            for entity, docs in batch.items()
        }
        async with self._lock:
            for entity, docs in staged.items():
                self._entities[entity].update(docs)

    async def query(self, entity: str, **filters: Any) -> list[Document]:
        async with self._lock:
            rows = list(self._entities.get(entity, {}).values())
        return [copy.deepcopy(row) for row in rows if _matches(row, filters)]

    async def delete(self, entities: Iterable[str] | None = None) -> None:
        async with self._lock:
            if entities is None:
                self._entities.clear()
                return
            for entity in entities:
                self._entities.pop(entity, None)


class SqlDocumentStore(DocumentStore):
    """SQLAlchemy Core implementation over a single ``documents`` table.

    Blocking engine calls run in worker threads so the event loop never stalls
    on disk I/O.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = asyncio.Lock()
        metadata.create_all(engine)

    @classmethod
    def from_dsn(cls, dsn: str) -> "SqlDocumentStore":
        kwargs: dict[str, Any] = {}
        if dsn.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in dsn or dsn in {"sqlite://", "sqlite:///"}:
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(dsn, **kwargs))

    def _write_sync(self, batch: Batch) -> None:
        with self._engine.begin() as connection:
            for entity, docs in batch.items():
                if not docs:
                    continue
                payloads = {_document_id(doc): dict(doc) for doc in docs}
                connection.execute(
                    delete(documents).where(
                        documents.c.entity == entity,
                        documents.c.doc_id.in_(list(payloads)),
                    )
                )
                connection.execute(
                    documents.insert(),
                    [
                        {"entity": entity, "doc_id": doc_id, "payload": payload}
                        for doc_id, payload in payloads.items()
                    ],
                )

    def _query_sync(self, entity: str) -> list[Document]:
        with self._engine.connect() as connection:
            rows = connection.execute(
                select(documents.c.payload).where(documents.c.entity == entity).order_by(documents.c.id)
            )
            return [dict(row.payload) for row in rows]

    def _delete_sync(self, entities: Iterable[str] | None) -> None:
        with self._engine.begin() as connection:
            statement = delete(documents)
            if entities is not None:
                statement = statement.where(documents.c.entity.in_(list(entities)))
            connection.execute(statement)

    async def write(self, batch: Batch) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_sync, batch)

    async def query(self, entity: str, **filters: Any) -> list[Document]:
        async with self._lock:
            rows = await asyncio.to_thread(self._query_sync, entity)
        return [row for row in rows if _matches(row, filters)]

    async def delete(self, entities: Iterable[str] | None = None) -> None:
        async with self._lock:
            await asyncio.to_thread(self._delete_sync, None if entities is None else list(entities))

    async def close(self) -> None:
        await asyncio.to_thread(self._engine.dispose)


def build_document_store(settings: PersistenceSettings) -> DocumentStore:
    if settings.backend == "sql":
        logger.info("document_store_sql", dsn=settings.dsn.split("@")[-1])
        return SqlDocumentStore.from_dsn(settings.dsn)
    return InMemoryDocumentStore()


__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqlDocumentStore",
    "build_document_store",
]
