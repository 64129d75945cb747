"""Application tables of the two replicated systems.

The engine does not own these tables; they are described here so that writes
can be compiled per dialect. Every table carries the ``source`` provenance column.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime


def _provenance_column(default: str) -> Column:
    return Column("source", String(20), nullable=False, server_default=default)


def _timestamps(with_updated: bool = True) -> list[Column]:
    columns = [Column("created_at", DateTime(timezone=True), server_default=func.now())]
    if with_updated:
        columns.append(Column("updated_at", DateTime(timezone=True), server_default=func.now()))
    return columns


def build_system_a_metadata(prefix: str = "a_") -> MetaData:
    metadata = MetaData()
    users, posts = f"{prefix}users", f"{prefix}posts"
    Table(
        users,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("username", String(50), nullable=False, unique=True),
        Column("email", String(100), nullable=False, unique=True),
        Column("full_name", String(100)),
        Column("phone_number", String(20)),
        Column("status", String(20), server_default="active"),
        _provenance_column("A"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    Table(
        posts,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey(f"{users}.id", ondelete="CASCADE"), nullable=False),
        Column("post_title", String(200), nullable=False),
        Column("post_content", Text),
        Column("post_status", String(20), server_default="published"),
        Column("view_count", Integer, server_default="0"),
        _provenance_column("A"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    Table(
        f"{prefix}likes",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey(f"{users}.id", ondelete="CASCADE"), nullable=False),
        Column("post_id", Integer, ForeignKey(f"{posts}.id", ondelete="CASCADE"), nullable=False),
        Column("like_type", String(20), server_default="like"),
        _provenance_column("A"),
        *_timestamps(with_updated=False),
        UniqueConstraint("user_id", "post_id", name=f"uq_{prefix}user_post_like"),
        sqlite_autoincrement=True,
    )
    return metadata


def build_system_b_metadata(prefix: str = "b_") -> MetaData:
    metadata = MetaData()
    users, posts = f"{prefix}users", f"{prefix}posts"
    Table(
        users,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_name", String(50), nullable=False, unique=True),
        Column("email_address", String(100), nullable=False, unique=True),
        Column("display_name", String(100)),
        Column("mobile", String(20)),
        Column("account_status", String(20), server_default="Active"),
        _provenance_column("B"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    Table(
        posts,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("author_id", Integer, ForeignKey(f"{users}.id", ondelete="CASCADE"), nullable=False),
        Column("title", String(200), nullable=False),
        Column("content", Text),
        Column("status", String(20), server_default="Published"),
        Column("views", Integer, server_default="0"),
        _provenance_column("B"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )
    Table(
        f"{prefix}likes",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey(f"{users}.id", ondelete="CASCADE"), nullable=False),
        Column("post_id", Integer, ForeignKey(f"{posts}.id", ondelete="CASCADE"), nullable=False),
        Column("reaction_type", String(20), server_default="Like"),
        _provenance_column("B"),
        *_timestamps(with_updated=False),
        UniqueConstraint("user_id", "post_id", name=f"uq_{prefix}user_post_like"),
        sqlite_autoincrement=True,
    )
    return metadata
