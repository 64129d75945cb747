from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

from syncbridge.db.session import SESSION_FACTORIES
from syncbridge.schemas.sync_event import Provenance
from syncbridge.services.ledger import IdempotencyLedger


def get_system(system: str = Path(..., description="Store whose ledger to inspect: 'a' or 'b'")) -> Provenance:
    try:
        provenance = Provenance(system.upper())
    except ValueError:
        provenance = None
    if provenance is None or not provenance.is_system:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown system: {system}")
    return provenance


async def get_ledger_session(system: str = Path(...)) -> AsyncGenerator[AsyncSession, None]:
    async with SESSION_FACTORIES[get_system(system)]() as session:
        try:
            yield session
        finally:
            await session.close()


def get_ledger(session: AsyncSession = Depends(get_ledger_session)) -> IdempotencyLedger:
    return IdempotencyLedger(session)
