from __future__ import annotations


class SyncError(Exception):
    """Base class for failures raised while replicating a change event."""

    retryable: bool = True

    @property
    def kind(self) -> str:
        return type(self).__name__


class MalformedEventError(SyncError):
    """Raised when a capture message cannot be turned into a SyncEvent."""

    retryable = False


class UnsupportedEntityError(SyncError):
    """Raised when no schema is registered for an entity type."""

    retryable = False


class SchemaValidationError(SyncError):
    """Raised when a field value falls outside what the target schema accepts."""

    retryable = False


class UnresolvedReferenceError(SyncError):
    """Raised when a foreign key points at a parent that has not been synced yet."""

    def __init__(self, entity_type: str, source_system: str, source_id: object) -> None:
        super().__init__(f"No mapping for {entity_type} id {source_id} from system {source_system}")
        self.entity_type = entity_type
        self.source_system = source_system
        self.source_id = source_id


class PrimaryKeyDriftError(SyncError):
    """Raised when an auto-generated id collides even after the counter was repaired."""

    def __init__(self, table: str, message: str) -> None:
        super().__init__(f"Primary key drift on {table}: {message}")
        self.table = table


class TransientStoreError(SyncError):
    """Connection loss, timeout or deadlock reported by a store driver."""


class DeadLetterPublishError(SyncError):
    """Raised by a publisher when the dead-letter message could not be sent."""


class ConfigurationError(Exception):
    """Raised at startup when the engine cannot be assembled. Always fatal."""
