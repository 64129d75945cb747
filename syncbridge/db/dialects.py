"""Dialect-specific SQL the engine needs: atomic upserts and auto-id counter repair."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from sqlalchemy import Table, func, select, text
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.dml import Insert

from syncbridge.core.logger import get_logger

logger = get_logger(component="Dialects")


def upsert_statement(
    dialect_name: str,
    table: Table,
    values: Mapping[str, Any],
    *,
    conflict_columns: Sequence[str],
    update_values: Mapping[str, Any],
) -> Insert:
    """Single-statement insert-or-update keyed on ``conflict_columns``."""
    if dialect_name == "postgresql":
        stmt = postgresql.insert(table).values(**values)
        return stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=dict(update_values))
    if dialect_name == "sqlite":
        stmt = sqlite.insert(table).values(**values)
        return stmt.on_conflict_do_update(index_elements=list(conflict_columns), set_=dict(update_values))
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql.insert(table).values(**values)
        return stmt.on_duplicate_key_update(**update_values)
    raise NotImplementedError(f"Upsert is not supported for dialect {dialect_name!r}")


def insert_ignore_statement(
    dialect_name: str,
    table: Table,
    values: Mapping[str, Any],
    *,
    conflict_columns: Sequence[str],
) -> Insert:
    """Insert that silently does nothing when the key already exists."""
    if dialect_name == "postgresql":
        return postgresql.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    if dialect_name == "sqlite":
        return sqlite.insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
    if dialect_name in ("mysql", "mariadb"):
        return mysql.insert(table).values(**values).prefix_with("IGNORE")
    raise NotImplementedError(f"Insert-ignore is not supported for dialect {dialect_name!r}")


def is_primary_key_collision(exc: IntegrityError, table: Table) -> bool:
    """Recognise a duplicate primary key, as opposed to other unique violations."""
    message = str(exc.orig if exc.orig is not None else exc)
    pk_columns = [column.name for column in table.primary_key.columns]
    # PostgreSQL: duplicate key value violates unique constraint "a_users_pkey"
    if "duplicate key value" in message and f"{table.name}_pkey" in message:
        return True
    # MySQL / MariaDB: Duplicate entry '12' for key 'PRIMARY' (or 'a_users.PRIMARY')
    if "Duplicate entry" in message and "PRIMARY" in message:
        return True
    # SQLite: UNIQUE constraint failed: a_users.id
    if "UNIQUE constraint failed" in message:
        failed = message.split("UNIQUE constraint failed:", 1)[1].strip()
        return failed in {f"{table.name}.{name}" for name in pk_columns}
    return False


async def _max_id(session: AsyncSession, table: Table) -> int:
    result = await session.execute(select(func.coalesce(func.max(table.c.id), 0)))
    return int(result.scalar_one())


async def _repair_postgresql(session: AsyncSession, table: Table) -> int:
    max_id = await _max_id(session, table)
    next_id = max_id + 1
    await session.execute(
        text("SELECT setval(pg_get_serial_sequence(:table_name, 'id'), :next_id, false)"),
        {"table_name": table.name, "next_id": next_id},
    )
    return next_id


async def _repair_mysql(session: AsyncSession, table: Table) -> int:
    max_id = await _max_id(session, table)
    next_id = max_id + 1
    # DDL cannot be parameterised; both parts come from the table definition and an int.
    await session.execute(text(f"ALTER TABLE `{table.name}` AUTO_INCREMENT = {int(next_id)}"))
    return next_id


async def _repair_sqlite(session: AsyncSession, table: Table) -> int:
    max_id = await _max_id(session, table)
    await session.execute(
        text("UPDATE sqlite_sequence SET seq = :max_id WHERE name = :table_name AND seq < :max_id"),
        {"table_name": table.name, "max_id": max_id},
    )
    return max_id + 1


ID_REPAIR_STRATEGIES: dict[str, Callable[[AsyncSession, Table], Awaitable[int]]] = {
    "postgresql": _repair_postgresql,
    "mysql": _repair_mysql,
    "mariadb": _repair_mysql,
    "sqlite": _repair_sqlite,
}


async def repair_id_generator(session: AsyncSession, table: Table, strategy: str) -> int:
    """Move the table's auto-id counter past ``max(id)``. Returns the next id it will hand out."""
    try:
        repair = ID_REPAIR_STRATEGIES[strategy]
    except KeyError:
        raise NotImplementedError(f"No id repair strategy named {strategy!r}") from None
    next_id = await repair(session, table)
    logger.info("Reset auto-increment counter", table=table.name, strategy=strategy, next_id=next_id)
    return next_id
