from __future__ import annotations

import operator
from typing import Any, Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.src.contracts.models import DocumentRow

logger = structlog.get_logger(__name__)

_SQL_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_ARRAY_CONTAINS = "array-contains"


class DocumentStore:
    """A collection of JSON documents keyed by string id.

    Every write opens its own session and commits immediately, so callers
    persist one record at a time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        collection: str,
    ) -> None:
        self._session_factory = session_factory
        self._collection = collection

    @property
    def collection(self) -> str:
        return self._collection

    async def save(self, record: dict[str, Any], doc_id: str) -> None:
        async with self._session_factory() as session:
            existing = await session.get(DocumentRow, (self._collection, doc_id))
            if existing is not None:
                existing.data = record
            else:
                session.add(DocumentRow(collection=self._collection, id=doc_id, data=record))
            await session.commit()

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        async with self._session_factory() as session:
            row = await session.get(DocumentRow, (self._collection, doc_id))
            return dict(row.data) if row is not None else None

    async def query(self, field: str, op: str, value: Any) -> list[dict[str, Any]]:
        """Return documents whose top-level ``field`` satisfies ``op value``.

        Scalar comparisons run in SQL; ``array-contains`` is evaluated on the
        loaded documents of the collection.
        """
        if op == _ARRAY_CONTAINS:
            return [
                doc
                for doc in await self.get_all()
                if isinstance(doc.get(field), list) and value in doc[field]
            ]

        compare = _SQL_OPERATORS.get(op)
        if compare is None:
            raise ValueError(f"Unsupported query operator: {op!r}")

        element = DocumentRow.data[field]
        if isinstance(value, bool):
            column = element.as_boolean()
        elif isinstance(value, (int, float)):
            column = element.as_float()
        else:
            column = element.as_string()

        stmt = (
            select(DocumentRow)
            .where(DocumentRow.collection == self._collection)
            .where(compare(column, value))
            .order_by(DocumentRow.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [dict(row.data) for row in result.scalars().all()]

    async def get_all(self) -> list[dict[str, Any]]:
        stmt = (
            select(DocumentRow)
            .where(DocumentRow.collection == self._collection)
            .order_by(DocumentRow.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [dict(row.data) for row in result.scalars().all()]

    async def delete(self, doc_id: str) -> None:
        stmt = delete(DocumentRow).where(
            DocumentRow.collection == self._collection,
            DocumentRow.id == doc_id,
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("document_deleted", collection=self._collection, doc_id=doc_id)
