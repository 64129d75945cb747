from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

CURRENT_SCHEMA_VERSION = "1.0.0"


class Operation(str, PyEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Provenance(str, PyEnum):
    """Which actor last wrote a record. Drives loop prevention."""

    A = "A"
    B = "B"
    SYNC_ENGINE = "sync_engine"

    @property
    def is_system(self) -> bool:
        return self is not Provenance.SYNC_ENGINE

    def peer(self) -> Provenance:
        if self is Provenance.A:
            return Provenance.B
        if self is Provenance.B:
            return Provenance.A
        raise ValueError("sync_engine has no peer system")


class SyncEvent(BaseModel):
    """Canonical, immutable unit of replication work."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1, max_length=36)
    entity_type: str = Field(..., min_length=1)
    operation: Operation
    primary_key: int | str
    payload: dict[str, Any] = Field(default_factory=dict)
    provenance: Provenance
    schema_version: str = CURRENT_SCHEMA_VERSION
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_type")
    @classmethod
    def entity_type_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("entity_type cannot be empty")
        return value

    @field_validator("primary_key")
    @classmethod
    def primary_key_not_blank(cls, value: int | str) -> int | str:
        if isinstance(value, str) and not value.strip():
            raise ValueError("primary_key cannot be empty")
        return value

    @property
    def is_delete(self) -> bool:
        return self.operation is Operation.DELETE

    @property
    def schema_major(self) -> int:
        head = self.schema_version.split(".", 1)[0]
        return int(head) if head.isdigit() else 0

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def __str__(self) -> str:
        return f"[{self.event_id}] {self.operation.value} {self.entity_type}/{self.primary_key} (provenance: {self.provenance.value})"
