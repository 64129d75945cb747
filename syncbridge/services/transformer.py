from __future__ import annotations

from typing import Any

from syncbridge.core.exceptions import SchemaValidationError, UnresolvedReferenceError, UnsupportedEntityError
from syncbridge.core.logger import get_logger
from syncbridge.events.parser import PROVENANCE_FIELD
from syncbridge.schemas.sync_event import Provenance, SyncEvent
from syncbridge.services.entity_schemas import ENTITY_SCHEMAS, EntitySchema, EntityType
from syncbridge.services.ledger import IdempotencyLedger, MappingLookup
from syncbridge.services.systems import SystemDescriptor

logger = get_logger(component="SchemaTransformer")

SUPPORTED_ENTITY_TYPES = frozenset(entity.value for entity in EntityType)


def _as_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise SchemaValidationError(f"{field} must be an integer id, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SchemaValidationError(f"{field} must be an integer id, got {value!r}") from None


class SchemaTransformer:
    """Rewrites a record from the peer system's schema into the target's.

    The same class serves both directions; the target descriptor decides which
    side of each field rule is read and which is written.
    """

    def __init__(
        self,
        target: SystemDescriptor,
        mappings: MappingLookup | IdempotencyLedger,
        *,
        provenance_column: str = PROVENANCE_FIELD,
    ) -> None:
        self.target = target
        self.source_system = target.system.peer()
        self.mappings = mappings
        self.provenance_column = provenance_column

    def can_handle(self, entity_type: str) -> bool:
        return entity_type in SUPPORTED_ENTITY_TYPES

    def _schema(self, entity_type: str) -> EntitySchema:
        if not self.can_handle(entity_type):
            raise UnsupportedEntityError(f"No transformer available for entity type: {entity_type}")
        return ENTITY_SCHEMAS[EntityType(entity_type)]

    async def transform(self, event: SyncEvent) -> dict[str, Any]:
        """Return the target-schema field map for ``event``, stamped as written by the engine.

        Raises:
            UnsupportedEntityError: unknown entity type.
            SchemaValidationError: a value outside its closed enumeration or a non-integer id.
            UnresolvedReferenceError: a referenced parent has no mapping yet.
        """
        schema = self._schema(event.entity_type)
        record: dict[str, Any] = {}

        target_id = await self._resolve_own_id(schema.entity_type, event.primary_key)
        if target_id is not None:
            record["id"] = target_id

        if event.is_delete:
            return record

        for rule in schema.fields:
            source_name = rule.name_in(self.source_system)
            if source_name not in event.payload:
                continue
            value = event.payload[source_name]
            if rule.normalizer is not None:
                value = rule.normalizer.render(value, self.target.system)
            if rule.references is not None and value is not None:
                value = await self._resolve_reference(rule.references, _as_id(value, source_name))
            record[rule.name_in(self.target.system)] = value

        record[self.provenance_column] = Provenance.SYNC_ENGINE.value

        logger.debug(
            "Transformation complete",
            event_id=event.event_id,
            entity_type=event.entity_type,
            target_system=self.target.system.value,
            transformed_fields=list(record),
        )
        return record

    async def _resolve_own_id(self, entity_type: EntityType, primary_key: int | str) -> int | None:
        source_id = _as_id(primary_key, "id")
        mapped = await self.mappings.lookup_mapped_id(entity_type.value, self.source_system, source_id)
        if mapped is not None:
            return mapped
        if self.target.preserve_ids:
            return source_id
        return None

    async def _resolve_reference(self, parent: EntityType, source_id: int) -> int:
        mapped = await self.mappings.lookup_mapped_id(parent.value, self.source_system, source_id)
        if mapped is None:
            raise UnresolvedReferenceError(parent.value, self.source_system.value, source_id)
        return mapped
