"""Retry scheduling with exponential backoff and per-attempt timeouts.

A ``RetryScheduler`` turns a zero-argument async callable and a
``RetryPolicy`` into a ``RetryableOperation`` handle. The handle drives a
bounded attempt loop: every attempt is capped by ``policy.timeout_ms``
(the attempt coroutine is cancelled on expiry), every failure is classified,
and retryable failures are retried after a backoff delay until the policy's
attempt budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from eventsync.core.errors.resilience import (
    AttemptTimeoutError,
    OperationFailedError,
    RetryExhaustedError,
)
from eventsync.core.observability import audit_log
from eventsync.core.resilience.classifier import ErrorClassifier
from eventsync.core.resilience.models import (
    TERMINAL_RETRY_STATUSES,
    ClassifiedError,
    RetryPolicy,
    RetryStatus,
    SleepFunc,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[["RetryableOperation", ClassifiedError, float], None]


class RetryableOperation(Generic[T]):
    """Stateful handle for one retried invocation.

    Mutated only by its own ``execute()``. ``attempt_count`` and ``status``
    can be inspected while the loop is running.
    """

    def __init__(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        classifier: ErrorClassifier,
        sleep_func: SleepFunc,
        rng: random.Random,
        on_retry: Optional[RetryHook] = None,
        label: Optional[str] = None,
    ) -> None:
        self.policy = policy
        self.label = label
        self.attempt_count = 0
        self.status = RetryStatus.PENDING
        self.last_error: Optional[ClassifiedError] = None
        self.result: Optional[T] = None
        self.delays_ms: list[float] = []
        self._op = op
        self._classifier = classifier
        self._sleep = sleep_func
        self._rng = rng
        self._on_retry = on_retry

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_RETRY_STATUSES

    def can_retry(self) -> bool:
        """Whether another attempt is permitted. No side effects."""
        if self.done:
            return False
        if self.attempt_count >= self.policy.max_attempts:
            return False
        return self.last_error is None or self.last_error.retryable

    async def _attempt(self) -> T:
        timeout = self.policy.timeout_ms / 1000.0
        try:
            return await asyncio.wait_for(self._op(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            audit_log(
                "attempt_timeout",
                operation=self.label,
                attempt=self.attempt_count,
                timeout_ms=self.policy.timeout_ms,
            )
            raise AttemptTimeoutError(
                f"Attempt {self.attempt_count} timed out after {self.policy.timeout_ms}ms",
                timeout_ms=self.policy.timeout_ms,
                attempt=self.attempt_count,
            ) from exc

    async def execute(self) -> T:
        """Run the operation until it succeeds or the policy gives up.

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: Every permitted attempt failed.
            OperationFailedError: A non-retryable failure occurred.
            RuntimeError: The handle was already executed.
        """
        if self.status != RetryStatus.PENDING:
            raise RuntimeError(f"RetryableOperation already {self.status.value}")

        self.status = RetryStatus.RUNNING
        while True:
            self.attempt_count += 1
            try:
                result = await self._attempt()
            except Exception as exc:
                classified = self._classifier.classify(exc)
                self.last_error = classified

                if self.attempt_count >= self.policy.max_attempts:
                    self.status = RetryStatus.EXHAUSTED
                    logger.debug(
                        "Operation %s exhausted after %d attempt(s): %s",
                        self.label or "<anonymous>",
                        self.attempt_count,
                        classified.category.value,
                    )
                    raise RetryExhaustedError(
                        f"Operation failed after {self.attempt_count} attempt(s): {classified.message}",
                        classified=classified,
                        attempts=self.attempt_count,
                        operation=self.label,
                    ) from exc

                if not classified.retryable:
                    self.status = RetryStatus.FAILED
                    raise OperationFailedError(
                        f"Operation failed with non-retryable {classified.category.value} error: "
                        f"{classified.message}",
                        classified=classified,
                        attempts=self.attempt_count,
                        operation=self.label,
                    ) from exc

                delay_ms = self.policy.delay_ms_for(self.attempt_count, self._rng)
                self.delays_ms.append(delay_ms)
                audit_log(
                    "retry_attempt",
                    operation=self.label,
                    attempt=self.attempt_count + 1,
                    max_attempts=self.policy.max_attempts,
                    error_type=classified.category.value,
                    error_message=classified.message[:200],
                    delay_ms=round(delay_ms, 1),
                )
                if self._on_retry is not None:
                    self._on_retry(self, classified, delay_ms)
                await self._sleep(delay_ms / 1000.0)
                continue

            self.result = result
            self.status = RetryStatus.SUCCEEDED
            return result


class RetryScheduler:
    """Factory for independent ``RetryableOperation`` handles.

    Holds no cross-operation state: handles scheduled concurrently run
    concurrently.

    Example:
        >>> scheduler = RetryScheduler()
        >>> handle = scheduler.schedule(lambda: client.get(url), RetryPolicy(max_attempts=4))
        >>> response = await handle.execute()
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        *,
        sleep_func: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep_func or asyncio.sleep
        self._rng = rng or random.Random()

    def schedule(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        on_retry: Optional[RetryHook] = None,
        label: Optional[str] = None,
    ) -> RetryableOperation[T]:
        """Wrap ``op`` in a new handle without running it."""
        return RetryableOperation(
            op,
            policy,
            classifier=self.classifier,
            sleep_func=self._sleep,
            rng=self._rng,
            on_retry=on_retry,
            label=label,
        )

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        label: Optional[str] = None,
    ) -> T:
        """Schedule and execute in one step."""
        start = time.monotonic()
        handle = self.schedule(op, policy, label=label)
        try:
            return await handle.execute()
        finally:
            logger.debug(
                "Operation %s finished as %s in %.1fms (%d attempt(s))",
                label or "<anonymous>",
                handle.status.value,
                (time.monotonic() - start) * 1000,
                handle.attempt_count,
            )
