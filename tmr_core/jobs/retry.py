from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tmr_core.embeddings.errors import EmbeddingRateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, BaseException, float], None]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for retryable provider errors.

    ``max_retries`` counts attempts after the first one, so a call runs at
    most ``max_retries + 1`` times. A ``retry_after`` hint on the error
    raises the delay, still capped at ``max_delay_seconds``.
    """

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (EmbeddingRateLimitError,)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must not be negative")

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    def _backoff(self) -> wait_exponential:
        return wait_exponential(
            multiplier=self.base_delay_seconds,
            exp_base=self.multiplier,
            min=0,
            max=self.max_delay_seconds,
        )

    def _delay(self, retry_state: RetryCallState) -> float:
        delay = self._backoff()(retry_state)
        outcome = retry_state.outcome
        hint = getattr(outcome.exception(), "retry_after", None) if outcome is not None else None
        if isinstance(hint, (int, float)) and hint > delay:
            delay = float(hint)
        return min(delay, self.max_delay_seconds)

    def delay_for(self, retry_number: int, exc: BaseException | None = None) -> float:
        """Delay before retry ``retry_number`` (1-based)."""

        retry_state = RetryCallState(retry_object=None, fn=None, args=(), kwargs={})  # type: ignore[arg-type]
        retry_state.attempt_number = retry_number
        if exc is not None:
            retry_state.set_exception((type(exc), exc, exc.__traceback__))
        return self._delay(retry_state)

    def call(
        self,
        fn: Callable[[], T],
        *,
        sleep: Callable[[float], object] = time.sleep,
        on_retry: RetryHook | None = None,
    ) -> T:
        """Run ``fn`` and retry it on retryable errors.

        The last retryable error is re-raised when retries run out; other
        errors propagate immediately. ``sleep`` may return True to abort the
        wait early (as ``threading.Event.wait`` does), which re-raises the
        pending error without another attempt.
        """

        pending: list[BaseException] = []

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
            if exc is None:
                return
            pending[:] = [exc]
            delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
            logger.warning(
                "Retryable error (retry %d/%d in %.1fs): %s",
                retry_state.attempt_number,
                self.max_retries,
                delay,
                exc,
            )
            if on_retry is not None:
                on_retry(retry_state.attempt_number, exc, delay)

        def _sleep(delay: float) -> None:
            if sleep(delay) is True and pending:
                raise pending[0]

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._delay,
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=_before_sleep,
            sleep=_sleep,
            reraise=True,
        )
        return retrying(fn)
