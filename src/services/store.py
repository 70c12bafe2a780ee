"""
Base store abstraction for the curation pipeline.

Defines the interface the pipeline core consumes. Every coordination point
between worker pools (source leases, task claims, content status changes) is
a conditional update against this interface, never in-process state, so
several pipeline instances may share one store.
"""
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Type, TypeVar

T = TypeVar("T")

Filter = Dict[str, Any]


@dataclass(frozen=True)
class Increment:
    """
    Update value meaning "add amount to the current column value".
    Lets counters change without a read-modify-write race.
    """
    amount: int = 1


class Store(ABC):
    """
    Abstract base class for all store backends.

    Filters are dicts keyed by field name with optional operator suffixes:
    ``field``, ``field__ne``, ``field__lt``, ``field__lte``, ``field__gt``,
    ``field__gte``, ``field__in``, ``field__isnull``. A ``"$or"`` key takes a
    list of sub-filters. ``order_by`` entries are field names, prefixed with
    ``-`` for descending order.
    """

    @abstractmethod
    async def create(self, row: T) -> T:
        """
        Insert a new row.

        Raises:
            DuplicateRowError: if a unique constraint is violated.
        """
        raise NotImplementedError

    @abstractmethod
    async def get_by_id(self, entity: Type[T], row_id: str) -> Optional[T]:
        raise NotImplementedError

    @abstractmethod
    async def update(
        self,
        entity: Type[T],
        row_id: str,
        changes: Dict[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[T]:
        """
        Apply changes to one row, only if it also matches ``expected``.

        This is the compare-and-set primitive: "update to PROCESSING where
        status=RAW" is ``update(Content, id, {"status": PROCESSING},
        expected={"status": RAW})``.

        Returns:
            The updated row, or None when the row is missing or the
            precondition did not hold (nothing was written).
        """
        raise NotImplementedError

    @abstractmethod
    async def find_many(
        self,
        entity: Type[T],
        filter: Optional[Filter] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        raise NotImplementedError

    @abstractmethod
    async def upsert(self, entity: Type[T], key: Dict[str, Any], values: Dict[str, Any]) -> T:
        """
        Insert a row identified by ``key`` or replace ``values`` on the
        existing one. ``key`` fields must be covered by a unique constraint.
        """
        raise NotImplementedError

    @abstractmethod
    async def count(self, entity: Type[T], filter: Optional[Filter] = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def delete_where(self, entity: Type[T], filter: Filter) -> int:
        raise NotImplementedError

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Store"]:
        """
        Group several operations atomically. Backends without transactions
        run the block as-is.
        """
        yield self

    async def find_one(self, entity: Type[T], filter: Filter) -> Optional[T]:
        rows = await self.find_many(entity, filter, limit=1)
        return rows[0] if rows else None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
