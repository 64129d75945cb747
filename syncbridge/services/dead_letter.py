from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol

from syncbridge.core.logger import get_logger
from syncbridge.schemas.sync_event import SyncEvent

logger = get_logger(component="DeadLetterHandler")


class DeadLetterPublisher(Protocol):
    async def publish(self, message: dict[str, Any]) -> None: ...


def error_kind(exc: BaseException) -> str:
    return getattr(exc, "kind", None) or type(exc).__name__


def build_dead_letter_message(
    event: SyncEvent | None,
    exc: BaseException,
    retry_count: int,
    context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "original_event": event.to_json_dict() if event is not None else None,
        "error_message": str(exc),
        "error_kind": error_kind(exc),
        "retry_count": retry_count,
        "failed_at": datetime.now(tz=timezone.utc).isoformat(),
        "context": dict(context or {}),
    }


class DeadLetterHandler:
    """Terminal sink for events that cannot be applied.

    Publishing problems are logged and dropped: losing visibility of one failed
    event must not stop the pipeline from moving on.
    """

    def __init__(self, publisher: DeadLetterPublisher | None) -> None:
        self._publisher = publisher

    async def send(
        self,
        event: SyncEvent | None,
        exc: BaseException,
        *,
        retry_count: int,
        context: dict[str, Any] | None = None,
    ) -> bool:
        message = build_dead_letter_message(event, exc, retry_count, context)
        event_id = event.event_id if event is not None else None

        if self._publisher is None:
            logger.error("Dead-letter channel not configured, dropping failed event", event_id=event_id, dead_letter=message)
            return False

        logger.warning(
            "Sending event to dead-letter channel",
            event_id=event_id,
            entity_type=event.entity_type if event is not None else None,
            operation=event.operation.value if event is not None else None,
            error=message["error_message"],
            error_kind=message["error_kind"],
            retry_count=retry_count,
        )
        try:
            await self._publisher.publish(message)
        except Exception as publish_exc:
            logger.critical(
                "Failed to send event to dead-letter channel",
                event_id=event_id,
                dlq_error=str(publish_exc),
                original_error=message["error_message"],
            )
            return False
        return True
