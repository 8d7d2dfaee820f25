from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from sync.errors import is_terminal

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    # Cancellation and other BaseExceptions go straight through.
    return isinstance(exc, Exception) and not is_terminal(exc)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.debug(f"Retry attempt {retry_state.attempt_number} in {delay:.2f}s: {exc}")


class RetryExecutor:
    """Retries transient failures with linear backoff; terminal ones propagate at once."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self._sleep = sleep

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run ``op`` until it succeeds.

        Args:
            op: Zero-argument callable returning a fresh awaitable per attempt.
            max_attempts: Overrides the executor default for this call.

        Raises:
            The terminal error as soon as one is seen, or the last transient
            error once attempts are exhausted.
        """
        attempts = max(1, max_attempts or self.max_attempts)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_incrementing(start=self.base_delay_s, increment=self.base_delay_s),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await op()
        except Exception as e:
            if is_terminal(e):
                logger.debug(f"Not retrying terminal error: {e}")
            else:
                logger.warning(f"Giving up after {attempts} attempts: {e}")
            raise

        raise AssertionError("unreachable")
