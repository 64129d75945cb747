from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Table, delete, func, insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Executable

from syncbridge.core.exceptions import PrimaryKeyDriftError, SchemaValidationError, TransientStoreError
from syncbridge.core.logger import get_logger
from syncbridge.db.dialects import (
    insert_ignore_statement,
    is_primary_key_collision,
    repair_id_generator,
    upsert_statement,
)
from syncbridge.schemas.sync_event import Provenance, SyncEvent
from syncbridge.services.ledger import IdempotencyLedger
from syncbridge.services.systems import SystemDescriptor

logger = get_logger(component="IdempotentWriter")


@dataclass(frozen=True)
class WriteResult:
    event_id: str
    entity_type: str
    operation: str
    table: str
    written_primary_key: int | str | None
    rows_affected: int = 0
    skipped: bool = False
    id_generator_repaired: bool = False


class IdempotentWriter:
    """
    Applies transformed records to one target store.

    The write, the entity mapping and the processed-event mark share a single
    transaction; any failure rolls all of them back.

    Features:
    - Atomic upsert (no read-then-write), so a replayed CREATE becomes an UPDATE
    - Deletes that find nothing count as success
    - One in-line repair of a lagging auto-increment counter
    """

    def __init__(self, target: SystemDescriptor, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.target = target
        self._session_factory = session_factory

    async def write(self, entity_type: str, record: dict[str, Any], event: SyncEvent) -> WriteResult:
        table = self.target.table(entity_type)
        unknown = set(record) - set(table.c.keys())
        if unknown:
            raise SchemaValidationError(f"{table.name} has no column(s) {', '.join(sorted(unknown))}")

        async with self._session_factory() as session:
            ledger = IdempotencyLedger(session)
            try:
                if await ledger.is_processed(event.event_id):
                    await session.rollback()
                    logger.info("Duplicate event detected, skipping write", event_id=event.event_id)
                    return WriteResult(
                        event_id=event.event_id,
                        entity_type=entity_type,
                        operation=event.operation.value,
                        table=table.name,
                        written_primary_key=record.get("id"),
                        skipped=True,
                    )

                repaired = False
                if event.is_delete:
                    written_pk, rows = await self._delete(session, table, record)
                else:
                    written_pk, rows, repaired = await self._upsert(session, table, record)

                origin = event.provenance
                if not event.is_delete and written_pk is not None and origin is self.target.system.peer():
                    if origin is Provenance.A:
                        a_id, b_id = event.primary_key, written_pk
                    else:
                        a_id, b_id = written_pk, event.primary_key
                    await ledger.upsert_mapping(entity_type, int(a_id), int(b_id), origin=origin)

                await ledger.mark_processed(event, written_pk)
                await session.commit()
            except Exception as exc:
                await session.rollback()
                logger.warning(
                    "Write failed, transaction rolled back",
                    event_id=event.event_id,
                    table=table.name,
                    error=str(exc),
                    error_kind=type(exc).__name__,
                )
                if isinstance(exc, (DBAPIError, OSError)) and not isinstance(exc, IntegrityError):
                    raise TransientStoreError(str(exc)) from exc
                raise

        logger.info(
            "Write committed",
            event_id=event.event_id,
            table=table.name,
            operation=event.operation.value,
            written_primary_key=written_pk,
            rows_affected=rows,
        )
        return WriteResult(
            event_id=event.event_id,
            entity_type=entity_type,
            operation=event.operation.value,
            table=table.name,
            written_primary_key=written_pk,
            rows_affected=rows,
            id_generator_repaired=repaired,
        )

    async def _delete(self, session: AsyncSession, table: Table, record: dict[str, Any]) -> tuple[Any, int]:
        if "id" not in record:
            logger.info("No target id resolvable for delete, nothing to remove", table=table.name)
            return None, 0
        result = await session.execute(delete(table).where(table.c.id == record["id"]))
        return record["id"], result.rowcount or 0

    def _build_write(self, dialect_name: str, table: Table, record: dict[str, Any]) -> Executable:
        if "id" not in record:
            return insert(table).values(**record)

        update_values: dict[str, Any] = {key: value for key, value in record.items() if key != "id"}
        if "updated_at" in table.c and "updated_at" not in record:
            update_values["updated_at"] = func.now()
        if not update_values:
            return insert_ignore_statement(dialect_name, table, record, conflict_columns=["id"])
        return upsert_statement(dialect_name, table, record, conflict_columns=["id"], update_values=update_values)

    async def _execute_write(self, session: AsyncSession, stmt: Executable) -> CursorResult:
        # SAVEPOINT so a failed insert leaves the outer transaction usable for the repair.
        async with session.begin_nested():
            return await session.execute(stmt)

    async def _upsert(self, session: AsyncSession, table: Table, record: dict[str, Any]) -> tuple[Any, int, bool]:
        dialect_name = session.get_bind().dialect.name
        stmt = self._build_write(dialect_name, table, record)
        repaired = False
        try:
            result = await self._execute_write(session, stmt)
        except IntegrityError as exc:
            if not is_primary_key_collision(exc, table):
                raise SchemaValidationError(f"{table.name} rejected the record: {exc.orig}") from exc
            logger.warning(
                "Auto-increment out of sync detected, attempting to fix",
                table=table.name,
                error=str(exc.orig),
            )
            await repair_id_generator(session, table, self.target.id_repair or dialect_name)
            repaired = True
            try:
                result = await self._execute_write(session, stmt)
            except IntegrityError as retry_exc:
                raise PrimaryKeyDriftError(table.name, str(retry_exc.orig)) from retry_exc

        if "id" in record:
            written_pk = record["id"]
        else:
            written_pk = result.inserted_primary_key[0]
        return written_pk, result.rowcount or 0, repaired
