"""Retry policy and executor for the delivery stage, built on tenacity."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

import tenacity

from transport.errors import ErrorKind, classify_error

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Errors worth another attempt; permanent ones fail immediately
RETRYABLE_KINDS = (ErrorKind.TRANSIENT, ErrorKind.LOCKED)


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter, bounded by ``max_attempts``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def backoff(self, attempt: int) -> float:
        """Delay before the attempt after ``attempt``, without jitter."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def wait_strategy(self) -> tenacity.wait.wait_base:
        return tenacity.wait_exponential_jitter(
            initial=self.base_delay,
            max=self.max_delay,
            exp_base=self.multiplier,
            jitter=self.jitter,
        )


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) in RETRYABLE_KINDS


class RetryExecutor:
    """Runs calls or per-item rounds under a ``RetryPolicy``.

    ``sleep`` is injectable so tests can run without real delays.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = 'delivery',
    ):
        self.policy = policy or RetryPolicy()
        self.name = name
        self._sleep = sleep
        self._backoff = self.policy.wait_strategy()

    def _log_retry(self, retry_state: tenacity.RetryCallState) -> None:
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if exc is not None:
            logger.warning(
                f"[RETRY] {self.name} attempt {retry_state.attempt_number} failed: "
                f"{type(exc).__name__}: {exc}, waiting {wait:.1f}s"
            )
        else:
            logger.info(
                f"[RETRY] {self.name} attempt {retry_state.attempt_number} left "
                f"{len(retry_state.outcome.result())} items unsettled, waiting {wait:.1f}s"
            )

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        lock_wait: Optional[Callable[[], float]] = None,
    ) -> T:
        """Call ``fn`` until it succeeds, fails permanently or attempts run out.

        A locked rejection waits at least ``lock_wait()`` seconds.

        Raises:
            Exception: The last error once retries are exhausted or it is permanent
        """
        def wait(retry_state: tenacity.RetryCallState) -> float:
            delay = self._backoff(retry_state)
            exc = retry_state.outcome.exception()
            if lock_wait is not None and exc is not None and classify_error(exc) is ErrorKind.LOCKED:
                delay = max(delay, lock_wait())
            return delay

        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(is_retryable),
            stop=tenacity.stop_after_attempt(self.policy.max_attempts),
            wait=wait,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(fn)

    async def until_settled(
        self,
        round_fn: Callable[[List[T]], Awaitable[List[T]]],
        items: List[T],
        lock_wait: Optional[Callable[[List[T]], float]] = None,
    ) -> List[T]:
        """Run ``round_fn`` over the items still unsettled until none remain.

        ``round_fn`` handles one attempt for the given items and returns the
        ones that deserve another attempt. Between rounds the executor waits
        for the backoff delay or the longest remaining lock among the leftover
        items, whichever is longer.

        Returns:
            Items still unsettled after the last attempt
        """
        pending = list(items)
        if not pending:
            return []

        async def run_round() -> List[T]:
            nonlocal pending
            pending = await round_fn(pending)
            return pending

        def wait(retry_state: tenacity.RetryCallState) -> float:
            delay = self._backoff(retry_state)
            if lock_wait is not None:
                delay = max(delay, lock_wait(pending))
            return delay

        retrying = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_result(bool),
            stop=tenacity.stop_after_attempt(self.policy.max_attempts),
            wait=wait,
            sleep=self._sleep,
            before_sleep=self._log_retry,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return await retrying(run_round)
