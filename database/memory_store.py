"""
In-memory DocumentStore.

Used for local runs (STORE_BACKEND=memory) and as the store behind the test
suite. Change fan-out mirrors a push-based document database: every write
schedules one delivery task per affected subscription, so deliveries for
back-to-back writes may overlap.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Sequence
from uuid import uuid4

from database.document_store import (
    BatchHandler,
    DocumentNotFoundError,
    ErrorHandler,
    FieldFilter,
    OrderBy,
    StoreDocument,
    matches_all,
    sort_documents,
)

logger = logging.getLogger(__name__)


@dataclass
class _Listener:
    collection: str
    filters: tuple[FieldFilter, ...]
    on_batch: BatchHandler
    on_error: ErrorHandler | None
    active: bool = True


class _MemorySubscription:
    def __init__(self, store: "InMemoryDocumentStore", listener: _Listener):
        self._store = store
        self._listener = listener

    def unsubscribe(self) -> None:
        if not self._listener.active:
            return
        self._listener.active = False
        self._store._remove_listener(self._listener)


class InMemoryDocumentStore:
    """Dict-backed implementation of the DocumentStore protocol."""

    def __init__(self, initial: dict[str, dict[str, dict[str, Any]]] | None = None):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._listeners: list[_Listener] = []
        self._pending: set[asyncio.Task] = set()

        for collection, docs in (initial or {}).items():
            self._collections[collection] = {
                doc_id: copy.deepcopy(data) for doc_id, data in docs.items()
            }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[StoreDocument]:
        docs = self._matching(collection, filters)
        docs = sort_documents(docs, order_by)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def get_by_id(self, collection: str, doc_id: str) -> StoreDocument | None:
        data = self._collections.get(collection, {}).get(doc_id)
        if data is None:
            return None
        return StoreDocument(id=doc_id, data=copy.deepcopy(data))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        doc_id = doc_id or uuid4().hex
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        self._notify(collection, None, data)
        return doc_id

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise DocumentNotFoundError(collection, doc_id)

        before = copy.deepcopy(docs[doc_id])
        docs[doc_id].update(copy.deepcopy(patch))
        self._notify(collection, before, docs[doc_id])

    async def delete(self, collection: str, doc_id: str) -> None:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise DocumentNotFoundError(collection, doc_id)

        before = docs.pop(doc_id)
        self._notify(collection, before, None)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        on_batch: BatchHandler,
        on_error: ErrorHandler | None = None,
    ) -> _MemorySubscription:
        listener = _Listener(collection, tuple(filters), on_batch, on_error)
        self._listeners.append(listener)
        self._schedule(listener)
        return _MemorySubscription(self, listener)

    async def wait_idle(self) -> None:
        """Wait until every scheduled delivery (and any it triggers) has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _remove_listener(self, listener: _Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(
        self,
        collection: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        for listener in list(self._listeners):
            if listener.collection != collection:
                continue
            touched = (before is not None and matches_all(before, listener.filters)) or (
                after is not None and matches_all(after, listener.filters)
            )
            if touched:
                self._schedule(listener)

    def _schedule(self, listener: _Listener) -> None:
        docs = self._matching(listener.collection, listener.filters)
        task = asyncio.get_running_loop().create_task(self._deliver(listener, docs))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, listener: _Listener, docs: list[StoreDocument]) -> None:
        if not listener.active:
            return
        try:
            await listener.on_batch(docs)
        except Exception as e:
            if listener.on_error is not None:
                listener.on_error(e)
            else:
                logger.error(
                    f"Unhandled error in '{listener.collection}' subscription: {e}",
                    exc_info=True,
                )

    def _matching(self, collection: str, filters: Sequence[FieldFilter]) -> list[StoreDocument]:
        return [
            StoreDocument(id=doc_id, data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
            if matches_all(data, filters)
        ]
