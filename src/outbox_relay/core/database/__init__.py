"""
Database access layer (PostgreSQL via asyncpg).

Usage:
    from outbox_relay.core.database import get_database

    db = await get_database()

    async with db.transaction() as conn:
        await conn.execute("UPDATE budgets SET ... WHERE id = $1", budget_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseConfig,
    get_database,
    close_database,
    rows_affected,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseConfig",
    "get_database",
    "close_database",
    "rows_affected",
]
