"""Retry policy shared by every stage that talks to Azure.

A policy bundles a bounded attempt count, a backoff function and a
predicate deciding which exceptions are worth retrying.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_incrementing,
)

from .exceptions import TransientCommandError
from .logging import logger

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a pluggable backoff.

    ``backoff`` is ``"exponential"`` (min_wait doubling up to max_wait) or
    ``"linear"`` (min_wait, 2*min_wait, ... capped at max_wait).
    """

    max_attempts: int = 5
    min_wait: float = 2.0
    max_wait: float = 60.0
    backoff: str = "exponential"
    retry_on: Tuple[Type[BaseException], ...] = (TransientCommandError,)
    predicate: Optional[Callable[[BaseException], bool]] = field(
        default=None, compare=False
    )

    @classmethod
    def linear(
        cls,
        max_attempts: int,
        step: float,
        retry_on: Tuple[Type[BaseException], ...] = (TransientCommandError,),
        predicate: Optional[Callable[[BaseException], bool]] = None,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts,
            min_wait=step,
            max_wait=step * max_attempts,
            backoff="linear",
            retry_on=retry_on,
            predicate=predicate,
        )

    def is_retryable(self, error: BaseException) -> bool:
        if self.predicate is not None:
            return self.predicate(error)
        return isinstance(error, self.retry_on)

    def _wait(self) -> Any:
        if self.backoff == "linear":
            return wait_incrementing(
                start=self.min_wait, increment=self.min_wait, max=self.max_wait
            )
        return wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait)

    def _before_sleep(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        logger.warning(
            f"Transient failure, retrying (attempt {state.attempt_number}/{self.max_attempts}): {error}",
            attempt=state.attempt_number,
            max_attempts=self.max_attempts,
        )

    async def call(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await ``func(*args, **kwargs)`` under this policy.

        The last exception is re-raised once attempts are exhausted or a
        non-retryable exception occurs.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait(),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=self._before_sleep,
            reraise=True,
        ):
            with attempt:
                return await func(*args, **kwargs)
        raise AssertionError("unreachable")  # pragma: no cover


NO_RETRY = RetryPolicy(max_attempts=1)
