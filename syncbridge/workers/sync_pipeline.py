"""SQS-driven replication pipelines, one per direction (A→B and B→A)."""

from __future__ import annotations

import asyncio
import time
from enum import Enum as PyEnum
from typing import Any
from urllib.parse import urlparse

import aioboto3
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncbridge.core.config import Settings, settings
from syncbridge.core.exceptions import ConfigurationError, MalformedEventError, SchemaValidationError
from syncbridge.core.logger import event_log_context, get_logger
from syncbridge.db.session import SESSION_FACTORIES, verify_connectivity
from syncbridge.events.parser import parse_sync_event
from syncbridge.schemas.sync_event import CURRENT_SCHEMA_VERSION, Provenance, SyncEvent
from syncbridge.services.dead_letter import DeadLetterHandler, DeadLetterPublisher
from syncbridge.services.ledger import IdempotencyLedger, MappingLookup
from syncbridge.services.loop_guard import should_skip
from syncbridge.services.retry import RetryHandler, RetryPolicy
from syncbridge.services.systems import SyncDirection, build_descriptors, table_prefixes
from syncbridge.services.transformer import SchemaTransformer
from syncbridge.services.writer import IdempotentWriter, WriteResult

logger = get_logger(component="SyncPipeline")

SUPPORTED_SCHEMA_MAJOR = int(CURRENT_SCHEMA_VERSION.split(".", 1)[0])


class SyncOutcome(str, PyEnum):
    DONE = "done"
    SKIPPED_LOOP = "skipped_loop"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    DEAD_LETTERED = "dead_lettered"


def channel_for_queue(queue_url: str) -> str:
    """The channel name of an SQS queue is its queue name, the last URL path segment."""
    path = urlparse(queue_url).path if "://" in queue_url else queue_url
    return path.rstrip("/").rsplit("/", 1)[-1]


class SyncPipeline:
    """
    Long-polling consumer that replays one system's change stream into the other.

    Messages are handled strictly one at a time and each is deleted from its
    queue only after reaching a terminal state (applied, skipped or
    dead-lettered), so per-record ordering from the capture agent is kept.

    Features:
    - Loop prevention via the provenance tag
    - Deduplication via the processed_events ledger
    - Transactional writes with retry and dead-lettering
    - Graceful shutdown that never abandons an in-flight event
    """

    def __init__(
        self,
        *,
        direction: SyncDirection,
        queue_urls: list[str],
        transformer: SchemaTransformer,
        writer: IdempotentWriter,
        retry_handler: RetryHandler,
        ledger_session_factory: async_sessionmaker[AsyncSession],
        prefixes: dict[Provenance, str],
        strict_prefix: bool = False,
        consumer_group: str | None = None,
        region_name: str | None = None,
        endpoint_url: str | None = None,
        wait_time_seconds: int = 20,
        visibility_timeout: int | None = None,
        max_messages: int = 5,
    ) -> None:
        self.direction = direction
        self._queue_urls = list(queue_urls)
        self._transformer = transformer
        self._writer = writer
        self._retry_handler = retry_handler
        self._ledger_session_factory = ledger_session_factory
        self._prefixes = prefixes
        self._strict_prefix = strict_prefix
        self._consumer_group = consumer_group or direction.name
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._wait_time_seconds = wait_time_seconds
        self._visibility_timeout = visibility_timeout
        self._max_messages = max_messages
        self._session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            aws_session_token=settings.aws_session_token,
            region_name=region_name,
        )
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._log = logger.bind(direction=direction.name, consumer_group=self._consumer_group)

    @property
    def name(self) -> str:
        return self.direction.name

    async def run_forever(self) -> None:
        """Start the pipeline and process messages until shutdown is requested."""
        self._running = True
        self._shutdown_event.clear()
        self._log.info("Starting sync pipeline", queue_urls=self._queue_urls)

        try:
            while self._running:
                try:
                    await self._process_batch()
                except asyncio.CancelledError:
                    self._log.info("Pipeline task cancelled, shutting down gracefully")
                    break
                except Exception as exc:
                    self._log.exception("Unexpected error in pipeline loop", error=str(exc))
                    await asyncio.sleep(5)
        finally:
            self._log.info("Sync pipeline stopped")
            self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Stop polling once the in-flight event is finished and wait for the loop to exit."""
        self._log.info("Shutdown requested for sync pipeline")
        was_running = self._running
        self._running = False
        if was_running:
            await self._shutdown_event.wait()

    async def _process_batch(self) -> None:
        """Receive and handle one batch from every channel of this direction."""
        async with self._session.client(
            "sqs", region_name=self._region_name, endpoint_url=self._endpoint_url
        ) as sqs_client:
            for queue_url in self._queue_urls:
                if not self._running:
                    return
                await self._process_queue(sqs_client, queue_url)

    async def _process_queue(self, sqs_client, queue_url: str) -> None:
        receive_kwargs: dict[str, Any] = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": self._max_messages,
            "WaitTimeSeconds": self._wait_time_seconds,
            "MessageAttributeNames": ["All"],
        }
        if self._visibility_timeout is not None:
            receive_kwargs["VisibilityTimeout"] = self._visibility_timeout

        response = await sqs_client.receive_message(**receive_kwargs)
        messages = response.get("Messages", [])
        if not messages:
            return  # Poll timed out, nothing to do

        channel = channel_for_queue(queue_url)
        for message in messages:
            # Stop between messages, never inside one; undelivered ones become visible again.
            if not self._running:
                return
            receipt_handle = message["ReceiptHandle"]
            message_id = message.get("MessageId")

            try:
                await self.handle_message(message.get("Body", ""), channel=channel, message_id=message_id)
            except Exception as exc:
                self._log.exception(
                    "Failed to handle message, will retry after visibility timeout",
                    error=str(exc),
                    message_id=message_id,
                )
                continue

            await sqs_client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
            self._log.debug("Message acknowledged and deleted", message_id=message_id, channel=channel)

    async def handle_message(
        self,
        body: bytes | str | dict[str, Any],
        *,
        channel: str,
        message_id: str | None = None,
    ) -> SyncOutcome:
        """Drive one capture message to a terminal state. Event-level failures never escape."""
        started = time.monotonic()
        context = {"channel": channel, "message_id": message_id, "direction": self.name}

        try:
            event = parse_sync_event(
                body,
                channel,
                prefixes=self._prefixes,
                origin=self.direction.source.system,
                strict_prefix=self._strict_prefix,
            )
        except MalformedEventError as exc:
            self._log.error("Invalid event payload, dead-lettering message", error=str(exc), **context)
            raw = body if isinstance(body, (str, dict)) else body.decode("utf-8", errors="replace")
            await self._retry_handler.dead_letters.send(
                None, exc, retry_count=1, context={**context, "raw_message": raw}
            )
            self._log_terminal(None, SyncOutcome.DEAD_LETTERED, started, **context)
            return SyncOutcome.DEAD_LETTERED

        with event_log_context(event.event_id, event.entity_type, event.operation.value, direction=self.name):
            return await self._drive(event, started, context)

    async def _drive(self, event: SyncEvent, started: float, context: dict[str, Any]) -> SyncOutcome:
        self._log.info("Processing event", summary=str(event), **context)

        if should_skip(event):
            self._log.info("Skipping event (loop prevention)", provenance=event.provenance.value)
            self._log_terminal(event, SyncOutcome.SKIPPED_LOOP, started)
            return SyncOutcome.SKIPPED_LOOP

        if await self._is_duplicate(event):
            self._log.info("Duplicate event detected, skipping processing")
            self._log_terminal(event, SyncOutcome.SKIPPED_DUPLICATE, started)
            return SyncOutcome.SKIPPED_DUPLICATE

        outcome = await self._retry_handler.run(event, lambda: self._apply(event), context=context)
        if not outcome.done:
            self._log_terminal(event, SyncOutcome.DEAD_LETTERED, started, attempts=outcome.attempts)
            return SyncOutcome.DEAD_LETTERED

        result: WriteResult = outcome.result
        terminal = SyncOutcome.SKIPPED_DUPLICATE if result.skipped else SyncOutcome.DONE
        self._log_terminal(
            event,
            terminal,
            started,
            attempts=outcome.attempts,
            written_primary_key=result.written_primary_key,
        )
        return terminal

    async def _apply(self, event: SyncEvent) -> WriteResult:
        if event.schema_major > SUPPORTED_SCHEMA_MAJOR:
            raise SchemaValidationError(f"Unsupported event schema version {event.schema_version}")
        record = await self._transformer.transform(event)
        return await self._writer.write(event.entity_type, record, event)

    async def _is_duplicate(self, event: SyncEvent) -> bool:
        try:
            async with self._ledger_session_factory() as session:
                return await IdempotencyLedger(session).is_processed(event.event_id)
        except SQLAlchemyError as exc:
            # The writer repeats this check inside its transaction.
            self._log.warning("Ledger pre-check failed, deferring to the writer", event_id=event.event_id, error=str(exc))
            return False

    def _log_terminal(self, event: SyncEvent | None, outcome: SyncOutcome, started: float, **extra: Any) -> None:
        elapsed_ms = round((time.monotonic() - started) * 1000, 2)
        fields: dict[str, Any] = {"outcome": outcome.value, "elapsed_ms": elapsed_ms, **extra}
        if event is not None:
            fields.update(
                event_id=event.event_id,
                entity_type=event.entity_type,
                operation=event.operation.value,
            )
        if outcome is SyncOutcome.DEAD_LETTERED:
            self._log.warning("Event dead-lettered", **fields)
        else:
            self._log.info("Event reached terminal state", **fields)


def build_pipeline(
    direction: SyncDirection,
    *,
    queue_urls: list[str],
    dead_letters: DeadLetterHandler,
    config: Settings,
    consumer_group: str | None = None,
    session_factories: dict[Provenance, async_sessionmaker[AsyncSession]] | None = None,
    prefixes: dict[Provenance, str] | None = None,
) -> SyncPipeline:
    factories = session_factories or SESSION_FACTORIES
    target_factory = factories[direction.target.system]
    mappings = MappingLookup([target_factory, factories[direction.source.system]])
    return SyncPipeline(
        direction=direction,
        queue_urls=queue_urls,
        transformer=SchemaTransformer(direction.target, mappings),
        writer=IdempotentWriter(direction.target, target_factory),
        retry_handler=RetryHandler(RetryPolicy.from_settings(config), dead_letters),
        ledger_session_factory=target_factory,
        prefixes=prefixes or {direction.source.system: direction.source.table_prefix},
        strict_prefix=config.strict_channel_prefix,
        consumer_group=consumer_group,
        region_name=config.aws_region,
        endpoint_url=str(config.sqs_endpoint_url) if config.sqs_endpoint_url else None,
        wait_time_seconds=config.poll_wait_seconds,
        visibility_timeout=config.visibility_timeout,
        max_messages=config.max_messages,
    )


async def build_pipelines_from_env(
    publisher: DeadLetterPublisher | None,
    config: Settings = settings,
) -> list[SyncPipeline]:
    """
    Assemble both directions from configuration.

    Returns an empty list if pipelines are disabled. Missing queue or dead-letter
    configuration, or an unreachable store, raises ConfigurationError before any
    message is consumed.
    """
    if not config.enable_sync_pipelines:
        logger.info("Sync pipelines are disabled via ENABLE_SYNC_PIPELINES")
        return []

    if not config.a_to_b_queue_url_list or not config.b_to_a_queue_url_list:
        raise ConfigurationError("SYNC_A_TO_B_QUEUE_URLS and SYNC_B_TO_A_QUEUE_URLS must both be configured")
    if not config.dead_letter_queue_url or publisher is None:
        raise ConfigurationError("SYNC_DLQ_URL must be configured")

    for system in (Provenance.A, Provenance.B):
        try:
            await verify_connectivity(system)
        except (SQLAlchemyError, OSError) as exc:
            raise ConfigurationError(f"System {system.value} store is unreachable: {exc}") from exc

    descriptors = build_descriptors(config)
    prefixes = table_prefixes(descriptors)
    dead_letters = DeadLetterHandler(publisher)
    return [
        build_pipeline(
            SyncDirection(source=descriptors[Provenance.A], target=descriptors[Provenance.B]),
            queue_urls=config.a_to_b_queue_url_list,
            dead_letters=dead_letters,
            config=config,
            consumer_group=config.a_to_b_consumer_group,
            prefixes=prefixes,
        ),
        build_pipeline(
            SyncDirection(source=descriptors[Provenance.B], target=descriptors[Provenance.A]),
            queue_urls=config.b_to_a_queue_url_list,
            dead_letters=dead_letters,
            config=config,
            consumer_group=config.b_to_a_consumer_group,
            prefixes=prefixes,
        ),
    ]
