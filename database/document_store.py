"""
Document store contract.

The booking layer talks to persistence only through the DocumentStore
protocol defined here, so the resolver, mapper, live sync engine and
dispatcher can run against PostgreSQL in production and against the
in-memory store in tests.

Filters follow the document-database model the data was written for:
equality, array membership and ``in`` over (possibly dotted) field paths.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence

# Collection names
APPOINTMENTS = "appointments"
SERVICES = "services"
USERS = "users"
BRANCHES = "branches"
NOTIFICATIONS = "notifications"


class StoreError(Exception):
    """Base class for document store failures."""


class QueryError(StoreError):
    """A filtered query could not be executed (e.g. missing index)."""


class DocumentNotFoundError(StoreError):
    """Update or delete targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"Document '{doc_id}' not found in '{collection}'")
        self.collection = collection
        self.doc_id = doc_id


class FilterOp(str, Enum):
    """Supported filter operators."""

    EQUALS = "=="
    ARRAY_CONTAINS = "array-contains"
    IN = "in"


@dataclass(frozen=True)
class FieldFilter:
    """One ``field op value`` condition. ``field`` may be a dotted path."""

    field: str
    op: FilterOp
    value: Any

    def describe(self) -> str:
        return f"{self.field} {self.op.value} {self.value!r}"


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass
class StoreDocument:
    """A document id together with its body."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


BatchHandler = Callable[[list[StoreDocument]], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]


class Subscription(Protocol):
    """Handle returned by DocumentStore.subscribe."""

    def unsubscribe(self) -> None:
        """Detach the listener. Safe to call more than once."""
        ...


class DocumentStore(Protocol):
    """Contract every store backend implements."""

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[StoreDocument]:
        ...

    async def get_by_id(self, collection: str, doc_id: str) -> StoreDocument | None:
        ...

    def subscribe(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        on_batch: BatchHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """
        Start a change subscription.

        ``on_batch`` receives the full set of currently matching documents,
        first as an initial snapshot and then once per change that touches a
        matching document.
        """
        ...

    async def create(
        self, collection: str, data: dict[str, Any], doc_id: str | None = None
    ) -> str:
        ...

    async def update(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...


# ============================================================================
# Client-side evaluation helpers
# ============================================================================

_MISSING = object()


def get_field(data: dict[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted field path inside a document body."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


def matches_filter(data: dict[str, Any], condition: FieldFilter) -> bool:
    value = get_field(data, condition.field, _MISSING)
    if value is _MISSING:
        return False

    if condition.op == FilterOp.EQUALS:
        return value == condition.value
    if condition.op == FilterOp.ARRAY_CONTAINS:
        return isinstance(value, list) and condition.value in value
    if condition.op == FilterOp.IN:
        return value in condition.value
    raise QueryError(f"Unsupported filter operator: {condition.op}")


def matches_all(data: dict[str, Any], filters: Iterable[FieldFilter]) -> bool:
    return all(matches_filter(data, f) for f in filters)


def sort_documents(docs: list[StoreDocument], order_by: OrderBy | None) -> list[StoreDocument]:
    """Order documents by one field; documents lacking it sort last."""
    if order_by is None:
        return docs

    present = [d for d in docs if get_field(d.data, order_by.field) is not None]
    absent = [d for d in docs if get_field(d.data, order_by.field) is None]
    present.sort(
        key=lambda d: get_field(d.data, order_by.field),
        reverse=order_by.descending,
    )
    return present + absent
