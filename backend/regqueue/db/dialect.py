"""
Dialect-specific statement helpers.

The queue needs ``INSERT ... ON CONFLICT`` for atomic upserts by session id.
PostgreSQL and SQLite both support it, through their own ``insert``
constructs.
"""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def insert_for(db: AsyncSession):
    """Return the ON CONFLICT capable ``insert`` for the session's database."""
    dialect = db.bind.dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError:
        raise NotImplementedError(f"Upserts are not supported on dialect '{dialect}'") from None
