from __future__ import annotations

from sqlalchemy import BigInteger, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from syncbridge.models.base import Base, PrimaryKeyBigIntMixin, TimestampMixin


class EntityMapping(PrimaryKeyBigIntMixin, TimestampMixin, Base):
    """Cross-system identity of one record: its id in System A and in System B."""

    __tablename__ = "entity_mappings"

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    a_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    b_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("entity_type", "a_id", name="uq_entity_mappings_a"),
        UniqueConstraint("entity_type", "b_id", name="uq_entity_mappings_b"),
    )
