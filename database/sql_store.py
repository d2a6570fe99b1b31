"""
PostgreSQL-backed DocumentStore.

Documents live in the ``documents`` table as JSONB. Filters compile to JSONB
containment (``@>``) so they are served by the GIN index:

- ``field == v``              ->  data @> {"field": v}
- ``field array-contains v``  ->  data @> {"field": [v]}
- ``field in [a, b]``         ->  data @> {"field": a} OR data @> {"field": b}

Dotted paths nest the containment object. Every committed write publishes a
change event on Redis (``store_changes:{collection}``); subscriptions listen
on that channel and re-run their query per event.
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any, Callable, Sequence
from uuid import uuid4

from sqlalchemy import delete, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

from database.connection import get_async_session
from database.document_store import (
    BatchHandler,
    DocumentNotFoundError,
    ErrorHandler,
    FieldFilter,
    FilterOp,
    OrderBy,
    QueryError,
    StoreDocument,
    StoreError,
)
from database.models import Document
from shared.redis_client import change_channel, get_redis_client, publish_to_channel

logger = logging.getLogger(__name__)


def _nest(path: str, value: Any) -> dict[str, Any]:
    """Build {"a": {"b": value}} from "a.b"."""
    result: Any = value
    for part in reversed(path.split(".")):
        result = {part: result}
    return result


def _filter_clause(condition: FieldFilter):
    if condition.op == FilterOp.EQUALS:
        return Document.data.contains(_nest(condition.field, condition.value))
    if condition.op == FilterOp.ARRAY_CONTAINS:
        return Document.data.contains(_nest(condition.field, [condition.value]))
    if condition.op == FilterOp.IN:
        return or_(
            *[Document.data.contains(_nest(condition.field, v)) for v in condition.value]
        )
    raise QueryError(f"Unsupported filter operator: {condition.op}")


class _SQLSubscription:
    def __init__(self, task: asyncio.Task):
        self._task = task
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._task.cancel()


class SQLDocumentStore:
    """DocumentStore over PostgreSQL JSONB with Redis change notifications."""

    def __init__(self, session_factory: Callable = get_async_session):
        self._session_factory = session_factory

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
        stmt = select(Document).where(Document.collection == collection)
        for condition in filters:
            stmt = stmt.where(_filter_clause(condition))

        if order_by is not None:
            column = Document.data[tuple(order_by.field.split("."))]
            stmt = stmt.order_by(
                column.desc().nulls_last() if order_by.descending else column.asc().nulls_last()
            )
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            described = ", ".join(f.describe() for f in filters) or "<all>"
            raise QueryError(f"Query on '{collection}' failed ({described}): {e}") from e

        return [StoreDocument(id=row.id, data=dict(row.data)) for row in rows]

    async def get_by_id(self, collection: str, doc_id: str) -> StoreDocument | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(Document, (collection, doc_id))
        except SQLAlchemyError as e:
            raise StoreError(f"Lookup of {collection}/{doc_id} failed: {e}") from e

        if row is None:
            return None
        return StoreDocument(id=row.id, data=dict(row.data))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        doc_id = doc_id or uuid4().hex
        body = json.loads(json.dumps(data, default=str))

        try:
            async with self._session_factory() as session:
                await session.execute(
                    insert(Document)
                    .values(collection=collection, id=doc_id, data=body)
                    .on_conflict_do_update(
                        index_elements=[Document.collection, Document.id],
                        set_={"data": body, "updated_at": datetime.now(UTC)},
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Create in '{collection}' failed: {e}") from e

        await self._publish_change(collection, "create", doc_id)
        return doc_id

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        body = json.loads(json.dumps(patch, default=str))

        try:
            async with self._session_factory() as session:
                row = await session.get(Document, (collection, doc_id), with_for_update=True)
                if row is None:
                    raise DocumentNotFoundError(collection, doc_id)

                row.data = {**row.data, **body}
                row.updated_at = datetime.now(UTC)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Update of {collection}/{doc_id} failed: {e}") from e

        await self._publish_change(collection, "update", doc_id)

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(Document).where(
                        Document.collection == collection,
                        Document.id == doc_id,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Delete of {collection}/{doc_id} failed: {e}") from e

        if result.rowcount == 0:
            raise DocumentNotFoundError(collection, doc_id)

        await self._publish_change(collection, "delete", doc_id)

    async def _publish_change(self, collection: str, op: str, doc_id: str) -> None:
        # The write is already committed; a lost event only delays live views
        try:
            await publish_to_channel(change_channel(collection), {"op": op, "id": doc_id})
        except Exception as e:
            logger.warning(f"Change event for {collection}/{doc_id} not published: {e}")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        on_batch: BatchHandler,
        on_error: ErrorHandler | None = None,
    ) -> _SQLSubscription:
        task = asyncio.get_running_loop().create_task(
            self._listen(collection, tuple(filters), on_batch, on_error)
        )
        return _SQLSubscription(task)

    async def _listen(
        self,
        collection: str,
        filters: tuple[FieldFilter, ...],
        on_batch: BatchHandler,
        on_error: ErrorHandler | None,
    ) -> None:
        channel = change_channel(collection)
        pubsub = get_redis_client().pubsub()

        try:
            await pubsub.subscribe(channel)

            # Initial snapshot
            await on_batch(await self.query(collection, filters))

            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                await on_batch(await self.query(collection, filters))

        except asyncio.CancelledError:
            logger.debug(f"Subscription on '{collection}' cancelled")
            raise

        except Exception as e:
            if on_error is not None:
                on_error(e)
            else:
                logger.error(f"Subscription on '{collection}' failed: {e}", exc_info=True)

        finally:
            try:
                await pubsub.unsubscribe(channel)
                await pubsub.close()
            except Exception as e:
                logger.warning(f"Error closing pubsub for '{collection}': {e}")
