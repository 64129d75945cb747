from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Any, TypeVar

from pydantic import ValidationError

from syncbridge.core.config import Settings
from syncbridge.core.exceptions import SyncError
from syncbridge.core.logger import get_logger
from syncbridge.schemas.sync_event import SyncEvent
from syncbridge.services.dead_letter import DeadLetterHandler, error_kind

logger = get_logger(component="RetryHandler")

T = TypeVar("T")


class AttemptState(str, PyEnum):
    DONE = "done"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff after the ``attempt``-th failure (1-based), capped at ``max_delay``."""
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class RetryOutcome:
    state: AttemptState
    attempts: int
    result: Any = None
    error: BaseException | None = None

    @property
    def done(self) -> bool:
        return self.state is AttemptState.DONE


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, SyncError):
        return exc.retryable
    if isinstance(exc, ValidationError):
        return False
    return True


class RetryHandler:
    """Runs one event's work through Attempting until Done or DeadLettered."""

    def __init__(
        self,
        policy: RetryPolicy,
        dead_letters: DeadLetterHandler,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self.dead_letters = dead_letters
        self._sleep = sleep

    async def run(
        self,
        event: SyncEvent,
        operation: Callable[[], Awaitable[T]],
        *,
        context: dict[str, Any] | None = None,
    ) -> RetryOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except Exception as exc:
                retryable = is_retryable(exc)
                logger.warning(
                    "Attempt failed",
                    event_id=event.event_id,
                    attempt=attempt,
                    max_attempts=self.policy.max_attempts,
                    error=str(exc),
                    error_kind=error_kind(exc),
                    retryable=retryable,
                )
                if not retryable or attempt >= self.policy.max_attempts:
                    if retryable:
                        logger.error("All retry attempts failed", event_id=event.event_id, total_attempts=attempt)
                    await self.dead_letters.send(
                        event,
                        exc,
                        retry_count=attempt,
                        context={**(context or {}), "max_attempts": self.policy.max_attempts},
                    )
                    return RetryOutcome(state=AttemptState.DEAD_LETTERED, attempts=attempt, error=exc)

                delay = self.policy.delay_for(attempt)
                logger.debug("Waiting before retry", event_id=event.event_id, delay_seconds=delay, next_attempt=attempt + 1)
                await self._sleep(delay)
                continue

            if attempt > 1:
                logger.info("Succeeded on retry", event_id=event.event_id, attempt=attempt)
            return RetryOutcome(state=AttemptState.DONE, attempts=attempt, result=result)
