from __future__ import annotations

from alembic import op
import sqlalchemy as sa

from syncbridge.models.base import BigIntegerPK
from syncbridge.models.types import JSONType

revision = "20261017_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processed_events",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("operation", sa.String(length=20), nullable=False),
        sa.Column("provenance", sa.String(length=20), nullable=False),
        sa.Column("primary_key", sa.String(length=64), nullable=False),
        sa.Column("payload_snapshot", JSONType(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_processed_events_processed_at", "processed_events", ["processed_at"])
    op.create_index("ix_processed_events_entity_pk", "processed_events", ["entity_type", "primary_key"])

    op.create_table(
        "entity_mappings",
        sa.Column("id", BigIntegerPK, primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("a_id", sa.BigInteger(), nullable=False),
        sa.Column("b_id", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("entity_type", "a_id", name="uq_entity_mappings_a"),
        sa.UniqueConstraint("entity_type", "b_id", name="uq_entity_mappings_b"),
    )


def downgrade() -> None:
    op.drop_table("entity_mappings")
    op.drop_index("ix_processed_events_entity_pk", table_name="processed_events")
    op.drop_index("ix_processed_events_processed_at", table_name="processed_events")
    op.drop_table("processed_events")
