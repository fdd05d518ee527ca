"""
Conditional update: the one write primitive allowed for status changes.

    UPDATE <table> SET ... WHERE id = :id AND <predicates> RETURNING *

The check and the write are a single statement, so the database decides the
race: under PostgreSQL READ COMMITTED a second writer blocks on the row lock,
re-evaluates the WHERE clause against the committed row and matches nothing.
A `None` result therefore always means "precondition no longer holds" (or the
row does not exist), never a partial write.
"""
import logging
from typing import Any, Optional, Sequence, TypeVar

from sqlalchemy import ColumnElement, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


async def conditional_update(
    db: AsyncSession,
    model: type[ModelT],
    record_id: str,
    predicates: Sequence[ColumnElement[bool]],
    values: dict[str, Any],
) -> Optional[ModelT]:
    """
    Apply `values` to row `record_id` only if every predicate holds against
    the committed state. Returns the updated row, or None on conflict.

    Does not commit; the caller owns the transaction.
    """
    stmt = (
        update(model)
        .where(model.id == record_id, *predicates)
        .values(**values)
        .returning(model)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    result = await db.execute(stmt)
    row = result.scalar_one_or_none()
    if row is None:
        logger.info("Conditional update on %s id=%s matched no row", model.__tablename__, record_id)
    return row
