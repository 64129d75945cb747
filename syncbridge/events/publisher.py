from __future__ import annotations

import json
from contextlib import AsyncExitStack
from typing import Any

import aioboto3

from syncbridge.core.config import settings
from syncbridge.core.exceptions import DeadLetterPublishError
from syncbridge.core.logger import get_logger

logger = get_logger(component="DeadLetterPublisher")


class SqsDeadLetterPublisher:
    """Sends dead-letter messages to an SQS queue.

    Owns one SQS client for its lifetime; use it as an async context manager so
    the client is closed when the service stops::

        async with SqsDeadLetterPublisher(queue_url=...) as publisher:
            ...
    """

    def __init__(self, *, queue_url: str, region_name: str | None = None, endpoint_url: str | None = None) -> None:
        self._queue_url = queue_url
        self._region_name = region_name or settings.aws_region
        self._endpoint_url = endpoint_url
        self._session = aioboto3.Session(
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            aws_session_token=settings.aws_session_token,
            region_name=self._region_name,
        )
        self._exit_stack: AsyncExitStack | None = None
        self._client = None

    @property
    def queue_url(self) -> str:
        return self._queue_url

    async def __aenter__(self) -> SqsDeadLetterPublisher:
        self._exit_stack = AsyncExitStack()
        self._client = await self._exit_stack.enter_async_context(
            self._session.client("sqs", region_name=self._region_name, endpoint_url=self._endpoint_url)
        )
        logger.info("Dead-letter publisher opened", queue_url=self._queue_url)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._client = None
        logger.info("Dead-letter publisher closed", queue_url=self._queue_url)

    async def publish(self, message: dict[str, Any]) -> None:
        if self._client is None:
            raise DeadLetterPublishError("Dead-letter publisher used outside of its context")

        body = json.dumps(message, separators=(",", ":"), default=str)
        try:
            await self._client.send_message(
                QueueUrl=self._queue_url,
                MessageBody=body,
                MessageAttributes={
                    "error_kind": {"DataType": "String", "StringValue": str(message.get("error_kind", "unknown"))},
                },
            )
        except Exception as exc:
            raise DeadLetterPublishError(f"Failed to publish to {self._queue_url}: {exc}") from exc
        logger.info("Dead-letter message published", error_kind=message.get("error_kind"))
