"""
Insert-if-absent and atomic upsert helpers.

Both PostgreSQL and SQLite speak ``INSERT ... ON CONFLICT``; these helpers
pick the dialect's insert construct from the session's bind so callers stay
storage-agnostic.
"""
from typing import Any, Dict, Sequence, Type

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from printflow.database.models import Base

_INSERT_CONSTRUCTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: AsyncSession, model: Type[Base]) -> Any:
    """Return the dialect-specific INSERT construct for ``model``."""
    dialect = session.get_bind().dialect.name
    try:
        construct = _INSERT_CONSTRUCTS[dialect]
    except KeyError:
        raise NotImplementedError(f"ON CONFLICT is not supported for dialect {dialect!r}")
    return construct(model)


async def insert_if_absent(
    session: AsyncSession,
    model: Type[Base],
    values: Dict[str, Any],
) -> bool:
    """
    INSERT ... ON CONFLICT DO NOTHING.

    Any unique constraint (or unique partial index) on the table counts as a
    conflict. Returns True if the row was inserted, False if it already
    existed; callers read the existing row back.
    """
    stmt = dialect_insert(session, model).values(**values).on_conflict_do_nothing()
    result: CursorResult[Any] = await session.execute(stmt)  # type: ignore[assignment]
    return result.rowcount > 0


async def increment_counter(
    session: AsyncSession,
    model: Type[Base],
    values: Dict[str, Any],
    conflict_columns: Sequence[str],
    counter_column: str,
    touch: Dict[str, Any],
) -> int:
    """
    Atomic upsert that inserts ``values`` or bumps ``counter_column`` by one.

    Returns the counter value after the statement. Concurrent first writers
    converge on one row because the conflict target is a unique key.
    """
    column = getattr(model, counter_column)
    insert = dialect_insert(session, model).values(**values)
    stmt = insert.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={counter_column: column + 1, **touch},
    ).returning(column)
    result = await session.execute(stmt)
    return int(result.scalar_one())
