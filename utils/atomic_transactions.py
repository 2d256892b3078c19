"""
Atomic Transaction Utilities
Conditional updates, conflict-free inserts and bounded race retries
"""

import asyncio
import logging
import functools
from typing import Any, Dict, Iterable

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from services.errors import ConflictError

logger = logging.getLogger(__name__)


class ConditionalUpdateMissed(Exception):
    """A conditional update matched no row; the caller's read is stale"""


async def update_if(session: AsyncSession, model, where: Iterable[Any], values: Dict[str, Any]) -> int:
    """
    Apply ``values`` to rows of ``model`` matching every ``where`` clause in a single
    UPDATE statement and return the affected row count.

    The predicate and the write execute as one statement, so a check made here
    cannot go stale before the write lands.
    """
    stmt = (
        update(model)
        .where(*where)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount


async def insert_ignore_conflict(session: AsyncSession, model, values: Dict[str, Any], conflict_columns: Iterable[str]):
    """INSERT ... ON CONFLICT DO NOTHING for the session's dialect"""
    dialect_name = session.bind.dialect.name
    if dialect_name == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"insert_ignore_conflict unsupported on {dialect_name}")

    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    await session.execute(stmt)


def retry_on_conflict(attempts: int = 3, operation: str = None, backoff_seconds: float = 0.01):
    """
    Retry an async operation that raises ConditionalUpdateMissed, then surface ConflictError.

    The wrapped operation must open its own transaction so each attempt re-reads
    fresh state.
    """

    def decorator(func):
        op_name = operation or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_error = None
            for attempt in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except ConditionalUpdateMissed as e:
                    last_error = e
                    logger.warning(
                        f"CONDITIONAL_UPDATE_MISSED: op={op_name}, attempt={attempt}/{attempts}, reason={e}"
                    )
                    if attempt < attempts:
                        await asyncio.sleep(backoff_seconds * attempt)

            logger.error(f"❌ {op_name} lost {attempts} consecutive races: {last_error}")
            raise ConflictError(
                f"{op_name} could not be applied after {attempts} attempts due to concurrent updates",
                details={"operation": op_name, "attempts": attempts},
            )

        return wrapper

    return decorator
