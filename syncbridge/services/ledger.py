from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncbridge.core.logger import get_logger
from syncbridge.db.dialects import insert_ignore_statement, upsert_statement
from syncbridge.models.entity_mapping import EntityMapping
from syncbridge.models.processed_event import ProcessedEvent
from syncbridge.schemas.ledger import LedgerStatistics
from syncbridge.schemas.sync_event import Provenance, SyncEvent

logger = get_logger(component="IdempotencyLedger")


class IdempotencyLedger:
    """Processed-event log and cross-system id mapping living in one store.

    Every method runs on the caller's session and never commits, so ledger
    writes land in the same transaction as the replicated write.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @property
    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    async def is_processed(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def mark_processed(self, event: SyncEvent, written_primary_key: int | str | None) -> bool:
        """Record the event. Returns False when it was already recorded."""
        stmt = insert_ignore_statement(
            self._dialect,
            ProcessedEvent.__table__,
            {
                "event_id": event.event_id,
                "entity_type": event.entity_type,
                "operation": event.operation.value,
                "provenance": event.provenance.value,
                "primary_key": str(written_primary_key if written_primary_key is not None else event.primary_key),
                "payload_snapshot": event.to_json_dict()["payload"],
                "processed_at": datetime.now(tz=timezone.utc),
            },
            conflict_columns=["event_id"],
        )
        result = await self.session.execute(stmt)
        inserted = (result.rowcount or 0) > 0
        if not inserted:
            logger.info("Event already marked as processed", event_id=event.event_id)
        return inserted

    async def lookup_mapped_id(self, entity_type: str, source_system: Provenance, source_id: int | str) -> int | None:
        """Translate ``source_id`` from ``source_system`` numbering into the other system's."""
        source_system = Provenance(source_system)
        if source_system is Provenance.A:
            stmt = select(EntityMapping.b_id).where(
                EntityMapping.entity_type == entity_type, EntityMapping.a_id == int(source_id)
            )
        elif source_system is Provenance.B:
            stmt = select(EntityMapping.a_id).where(
                EntityMapping.entity_type == entity_type, EntityMapping.b_id == int(source_id)
            )
        else:
            raise ValueError("Mappings are only kept for System A and System B ids")
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_mapping(self, entity_type: str, a_id: int, b_id: int, *, origin: Provenance) -> None:
        """Create or update the mapping row, located by the origin system's id.

        A row that still pairs the other system's id with a different origin id
        is stale (the record was re-keyed) and is removed first, so the insert
        cannot trip the second unique key.
        """
        now = datetime.now(tz=timezone.utc)
        a_id, b_id = int(a_id), int(b_id)
        if origin is Provenance.A:
            conflict_columns, update_values = ["entity_type", "a_id"], {"b_id": b_id, "updated_at": now}
            stale = (EntityMapping.b_id == b_id, EntityMapping.a_id != a_id)
        elif origin is Provenance.B:
            conflict_columns, update_values = ["entity_type", "b_id"], {"a_id": a_id, "updated_at": now}
            stale = (EntityMapping.a_id == a_id, EntityMapping.b_id != b_id)
        else:
            raise ValueError("Mapping origin must be System A or System B")

        removed = await self.session.execute(
            delete(EntityMapping).where(EntityMapping.entity_type == entity_type, *stale)
        )
        if removed.rowcount:
            logger.info(
                "Replaced stale entity mapping",
                entity_type=entity_type,
                a_id=a_id,
                b_id=b_id,
                origin=origin.value,
            )

        stmt = upsert_statement(
            self._dialect,
            EntityMapping.__table__,
            {
                "entity_type": entity_type,
                "a_id": a_id,
                "b_id": b_id,
                "created_at": now,
                "updated_at": now,
            },
            conflict_columns=conflict_columns,
            update_values=update_values,
        )
        await self.session.execute(stmt)
        logger.debug("Entity mapping upserted", entity_type=entity_type, a_id=a_id, b_id=b_id, origin=origin.value)

    async def prune_processed_events(self, older_than_days: int) -> int:
        cutoff = datetime.now(tz=timezone.utc) - timedelta(days=older_than_days)
        result = await self.session.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
        deleted = result.rowcount or 0
        logger.info("Pruned processed events", older_than_days=older_than_days, deleted=deleted)
        return deleted

    async def statistics(self) -> LedgerStatistics:
        async def _grouped(column) -> dict[str, int]:
            rows = await self.session.execute(select(column, func.count()).group_by(column))
            return {key: count for key, count in rows.all()}

        total = await self.session.scalar(select(func.count()).select_from(ProcessedEvent))
        since = datetime.now(tz=timezone.utc) - timedelta(hours=24)
        last_24h = await self.session.scalar(
            select(func.count()).select_from(ProcessedEvent).where(ProcessedEvent.processed_at >= since)
        )
        mappings = await self.session.scalar(select(func.count()).select_from(EntityMapping))
        return LedgerStatistics(
            total_processed=total or 0,
            by_entity_type=await _grouped(ProcessedEvent.entity_type),
            by_operation=await _grouped(ProcessedEvent.operation),
            by_provenance=await _grouped(ProcessedEvent.provenance),
            last_24h=last_24h or 0,
            entity_mappings=mappings or 0,
        )


class MappingLookup:
    """Resolves mapped ids across stores, target store first.

    A record that originated on the peer side had its mapping written in the
    peer store, so a single store's table is not enough.
    """

    def __init__(self, session_factories: Sequence[async_sessionmaker[AsyncSession]]) -> None:
        self._session_factories = list(session_factories)

    async def lookup_mapped_id(self, entity_type: str, source_system: Provenance, source_id: int | str) -> int | None:
        for session_factory in self._session_factories:
            async with session_factory() as session:
                mapped = await IdempotencyLedger(session).lookup_mapped_id(entity_type, source_system, source_id)
            if mapped is not None:
                return mapped
        return None
