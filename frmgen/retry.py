from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import TransportError

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryNotice:
    """Details of one scheduled backoff, handed to ``on_retry`` callbacks."""

    attempt: int  # 1-based number of the attempt that just failed
    max_attempts: int
    delay_ms: int
    error: TransportError


def backoff_delay_ms(base_delay_ms: int, attempt: int) -> int:
    """Delay before the retry that follows zero-based ``attempt``."""
    return int(base_delay_ms * (2**attempt))


class RetryExecutor:
    """Bounded exponential-backoff wrapper around an async operation.

    Only :class:`TransportError` failures are retried, and not when they carry
    HTTP 401/403/404. Anything else propagates on first occurrence. No delay
    follows the final attempt; its error is re-raised unchanged.
    """

    def __init__(
        self,
        *,
        sleep: Sleep = asyncio.sleep,
        on_retry: Optional[Callable[[RetryNotice], None]] = None,
    ) -> None:
        self._sleep = sleep
        self._on_retry = on_retry

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        *,
        context: str = "request",
    ) -> T:
        max_retries = max(0, int(max_retries))
        max_attempts = max_retries + 1

        for attempt in range(max_attempts):
            try:
                return await operation()
            except TransportError as exc:
                if not exc.retryable:
                    _LOGGER.error(
                        "Non-retryable failure while %s (attempt %s/%s, HTTP %s): %s",
                        context,
                        attempt + 1,
                        max_attempts,
                        exc.status_code,
                        exc,
                    )
                    raise
                if attempt == max_retries:
                    _LOGGER.error(
                        "Giving up on %s after %s attempts (%s): %s",
                        context,
                        max_attempts,
                        exc.kind.value,
                        exc,
                    )
                    raise

                delay_ms = backoff_delay_ms(base_delay_ms, attempt)
                _LOGGER.warning(
                    "Request failed while %s (attempt %s/%s) (%s), retrying in %sms...",
                    context,
                    attempt + 1,
                    max_attempts,
                    exc.kind.value,
                    delay_ms,
                )
                if self._on_retry is not None:
                    self._on_retry(
                        RetryNotice(attempt=attempt + 1, max_attempts=max_attempts, delay_ms=delay_ms, error=exc)
                    )
                await self._sleep(delay_ms / 1000.0)

        raise AssertionError("unreachable")  # pragma: no cover


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    *,
    context: str = "request",
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[RetryNotice], None]] = None,
) -> T:
    executor = RetryExecutor(sleep=sleep, on_retry=on_retry)
    return await executor.execute(operation, max_retries, base_delay_ms, context=context)


__all__ = ["RetryExecutor", "RetryNotice", "backoff_delay_ms", "execute_with_retry"]
