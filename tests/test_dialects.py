"""Tests for the per-dialect upsert and auto-id repair SQL."""

from __future__ import annotations

import sqlite3
from typing import Any

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, insert, text
from sqlalchemy.dialects import mysql, postgresql
from sqlalchemy.exc import IntegrityError

from syncbridge.db.dialects import is_primary_key_collision, repair_id_generator, upsert_statement
from syncbridge.db.session import SystemBSessionFactory
from syncbridge.schemas.sync_event import Provenance

users = Table("a_users", MetaData(), Column("id", Integer, primary_key=True), Column("username", String(50)))


class _Result:
    def __init__(self, value: Any) -> None:
        self.value = value

    def scalar_one(self) -> Any:
        return self.value


class RecordingSession:
    """Session double that keeps every statement and answers ``max(id)`` with a fixed value."""

    def __init__(self, max_id: int) -> None:
        self.max_id = max_id
        self.statements: list[tuple[str, dict[str, Any] | None]] = []

    async def execute(self, stmt, params=None):
        self.statements.append((str(stmt), params))
        return _Result(self.max_id)


async def test_postgresql_repair_moves_sequence_past_max_id():
    session = RecordingSession(max_id=16)

    next_id = await repair_id_generator(session, users, "postgresql")

    assert next_id == 17
    sql, params = session.statements[-1]
    assert "setval(pg_get_serial_sequence(:table_name, 'id'), :next_id, false)" in sql
    assert params == {"table_name": "a_users", "next_id": 17}


@pytest.mark.parametrize("strategy", ["mysql", "mariadb"])
async def test_mysql_repair_resets_auto_increment(strategy):
    session = RecordingSession(max_id=16)

    next_id = await repair_id_generator(session, users, strategy)

    assert next_id == 17
    assert session.statements[-1] == ("ALTER TABLE `a_users` AUTO_INCREMENT = 17", None)


async def test_empty_table_repairs_to_one():
    session = RecordingSession(max_id=0)

    assert await repair_id_generator(session, users, "postgresql") == 1


async def test_sqlite_repair_raises_lagging_counter(stores):
    b_users = stores[Provenance.B].table("users")
    async with SystemBSessionFactory() as session:
        await session.execute(
            insert(b_users).values(id=16, user_name="dave", email_address="dave@example.com", source="B")
        )
        await session.execute(text("UPDATE sqlite_sequence SET seq = 12 WHERE name = 'b_users'"))

        next_id = await repair_id_generator(session, b_users, "sqlite")
        seq = await session.scalar(text("SELECT seq FROM sqlite_sequence WHERE name = 'b_users'"))

    assert next_id == 17
    assert seq == 16


async def test_unknown_repair_strategy_is_rejected():
    with pytest.raises(NotImplementedError):
        await repair_id_generator(RecordingSession(max_id=1), users, "oracle")


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ('duplicate key value violates unique constraint "a_users_pkey"', True),
        ('duplicate key value violates unique constraint "a_users_username_key"', False),
        ("Duplicate entry '12' for key 'a_users.PRIMARY'", True),
        ("Duplicate entry 'alice' for key 'a_users.username'", False),
        ("UNIQUE constraint failed: a_users.id", True),
        ("UNIQUE constraint failed: a_users.username", False),
        ("NOT NULL constraint failed: a_users.username", False),
    ],
)
def test_primary_key_collision_is_told_apart(message, expected):
    exc = IntegrityError("INSERT", {}, sqlite3.IntegrityError(message))

    assert is_primary_key_collision(exc, users) is expected


def test_upsert_compiles_for_server_dialects():
    values = {"id": 5, "username": "alice"}

    pg = upsert_statement("postgresql", users, values, conflict_columns=["id"], update_values={"username": "alice"})
    my = upsert_statement("mysql", users, values, conflict_columns=["id"], update_values={"username": "alice"})

    assert "ON CONFLICT (id) DO UPDATE SET username" in str(pg.compile(dialect=postgresql.dialect()))
    assert "ON DUPLICATE KEY UPDATE username" in str(my.compile(dialect=mysql.dialect()))


def test_upsert_rejects_unknown_dialect():
    with pytest.raises(NotImplementedError):
        upsert_statement("oracle", users, {"id": 1}, conflict_columns=["id"], update_values={})
