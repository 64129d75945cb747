from __future__ import annotations

from pydantic import BaseModel, Field

from syncbridge.schemas.sync_event import Provenance


class LedgerStatistics(BaseModel):
    total_processed: int
    by_entity_type: dict[str, int] = Field(default_factory=dict)
    by_operation: dict[str, int] = Field(default_factory=dict)
    by_provenance: dict[str, int] = Field(default_factory=dict)
    last_24h: int = 0
    entity_mappings: int = 0


class LedgerStatisticsResponse(BaseModel):
    system: Provenance
    statistics: LedgerStatistics


class LedgerPruneResponse(BaseModel):
    system: Provenance
    older_than_days: int
    deleted: int
