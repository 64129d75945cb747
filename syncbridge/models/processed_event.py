from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from syncbridge.models.base import Base
from syncbridge.models.types import JSONType


class ProcessedEvent(Base):
    """
    Tracks processed event IDs for deduplication.

    One row per event the engine applied to this store. Rows are written in the
    same transaction as the replicated write, so a redelivered message is
    recognised even after a crash between the write and the transport ack.
    """
    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False)
    provenance: Mapped[str] = mapped_column(String(20), nullable=False)
    primary_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    __table_args__ = (Index("ix_processed_events_entity_pk", "entity_type", "primary_key"),)
