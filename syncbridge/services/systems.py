from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import MetaData, Table

from syncbridge.core.config import Settings
from syncbridge.core.exceptions import UnsupportedEntityError
from syncbridge.models.stores import build_system_a_metadata, build_system_b_metadata
from syncbridge.schemas.sync_event import Provenance


@dataclass(frozen=True)
class SystemDescriptor:
    """Everything that differs between writing into System A and System B."""

    system: Provenance
    table_prefix: str
    metadata: MetaData = field(compare=False, repr=False)
    preserve_ids: bool = True
    id_repair: str | None = None  # None picks the strategy matching the store dialect

    def table_name(self, entity_type: str) -> str:
        return f"{self.table_prefix}{entity_type}"

    def table(self, entity_type: str) -> Table:
        name = self.table_name(entity_type)
        try:
            return self.metadata.tables[name]
        except KeyError:
            raise UnsupportedEntityError(f"System {self.system.value} has no table {name!r}") from None


@dataclass(frozen=True)
class SyncDirection:
    source: SystemDescriptor
    target: SystemDescriptor

    @property
    def name(self) -> str:
        return f"{self.source.system.value.lower()}_to_{self.target.system.value.lower()}"


def build_descriptors(settings: Settings) -> dict[Provenance, SystemDescriptor]:
    return {
        Provenance.A: SystemDescriptor(
            system=Provenance.A,
            table_prefix=settings.system_a_table_prefix,
            metadata=build_system_a_metadata(settings.system_a_table_prefix),
            preserve_ids=settings.preserve_ids,
        ),
        Provenance.B: SystemDescriptor(
            system=Provenance.B,
            table_prefix=settings.system_b_table_prefix,
            metadata=build_system_b_metadata(settings.system_b_table_prefix),
            preserve_ids=settings.preserve_ids,
        ),
    }


def table_prefixes(descriptors: dict[Provenance, SystemDescriptor]) -> dict[Provenance, str]:
    return {system: descriptor.table_prefix for system, descriptor in descriptors.items()}
