from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError

from syncbridge.api.dependencies import get_ledger, get_system
from syncbridge.core.config import settings
from syncbridge.core.logger import get_logger
from syncbridge.schemas.ledger import LedgerPruneResponse, LedgerStatisticsResponse
from syncbridge.schemas.sync_event import Provenance
from syncbridge.services.ledger import IdempotencyLedger

router = APIRouter(prefix="/ledger", tags=["ledger"])
logger = get_logger(component="LedgerRoutes")


@router.get("/{system}/stats", response_model=LedgerStatisticsResponse)
async def ledger_statistics(
    system: Provenance = Depends(get_system),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    try:
        statistics = await ledger.statistics()
    except SQLAlchemyError as exc:
        logger.exception("Failed to read ledger statistics", system=system.value)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger unavailable") from exc
    return LedgerStatisticsResponse(system=system, statistics=statistics)


@router.post("/{system}/prune", response_model=LedgerPruneResponse)
async def prune_ledger(
    older_than_days: int = Query(default=settings.ledger_retention_days, ge=1),
    system: Provenance = Depends(get_system),
    ledger: IdempotencyLedger = Depends(get_ledger),
):
    try:
        deleted = await ledger.prune_processed_events(older_than_days)
        await ledger.session.commit()
    except SQLAlchemyError as exc:
        await ledger.session.rollback()
        logger.exception("Failed to prune ledger", system=system.value)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Ledger unavailable") from exc
    return LedgerPruneResponse(system=system, older_than_days=older_than_days, deleted=deleted)
