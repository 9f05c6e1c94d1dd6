# app/services/batch.py
"""Bounded-concurrency batch execution with per-item outcome capture."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, Iterator, List, Optional, Sequence, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
)

from app.core.redaction import sanitize_error_message

logger = logging.getLogger("tthubs.batch")

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int], Any]
SuccessCallback = Callable[[Any, Any], Any]
ErrorCallback = Callable[[Any, BaseException], Any]


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


@dataclass(slots=True)
class ItemResult(Generic[T, R]):
    item: T
    success: bool
    result: Optional[R] = None
    error: Optional[BaseException] = None


@dataclass(slots=True)
class BatchResult(Generic[T, R]):
    total: int
    successful: int
    failed: int
    results: List[ItemResult[T, R]] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def errors(self) -> List[ItemResult[T, R]]:
        return [r for r in self.results if not r.success]


class BatchRunner:
    """
    Runs ``op`` over items in consecutive batches of ``concurrency``.

    A batch starts only after every item of the previous one has settled, so at
    most ``concurrency`` operations are in flight. Item failures are recorded
    in the result, never raised.
    """

    def __init__(
        self,
        concurrency: int = 20,
        delay_between_batches: float = 0.0,
        *,
        on_progress: ProgressCallback | None = None,
        on_item_success: SuccessCallback | None = None,
        on_item_error: ErrorCallback | None = None,
    ) -> None:
        if int(concurrency) < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = int(concurrency)
        self.delay_between_batches = max(0.0, float(delay_between_batches or 0.0))
        self.on_progress = on_progress
        self.on_item_success = on_item_success
        self.on_item_error = on_item_error

    def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001 - observers must not change outcomes
            logger.exception("batch callback failed")

    async def run(
        self,
        items: Iterable[T],
        op: Callable[[T], Awaitable[R]],
    ) -> BatchResult[T, R]:
        pending = list(items)
        started = time.monotonic()
        total = len(pending)
        results: List[ItemResult[T, R]] = []

        async def _invoke(item: T) -> R:
            return await op(item)

        batches = list(chunked(pending, self.concurrency))
        for index, batch in enumerate(batches):
            outcomes = await asyncio.gather(*(_invoke(item) for item in batch), return_exceptions=True)
            for item, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    results.append(ItemResult(item=item, success=False, error=outcome))
                    self._notify(self.on_item_error, item, outcome)
                elif isinstance(outcome, BaseException):
                    # cancellation / interpreter exit
                    raise outcome
                else:
                    results.append(ItemResult(item=item, success=True, result=outcome))
                    self._notify(self.on_item_success, item, outcome)

            self._notify(self.on_progress, len(results), total)

            if index < len(batches) - 1 and self.delay_between_batches > 0:
                await asyncio.sleep(self.delay_between_batches)

        successful = sum(1 for r in results if r.success)
        return BatchResult(
            total=total,
            successful=successful,
            failed=total - successful,
            results=results,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def run_with_retry(
        self,
        items: Iterable[T],
        op: Callable[[T], Awaitable[R]],
        *,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        backoff: float = 1.0,
        retry_if: Callable[[BaseException], bool] | None = None,
    ) -> BatchResult[T, R]:
        """
        Same as :meth:`run`, but each item is attempted up to ``max_retries``
        extra times. The wait between attempts starts at ``retry_delay`` and is
        multiplied by ``backoff`` after each retry.
        """
        retries = max(0, int(max_retries))
        delay = max(0.0, float(retry_delay))
        if backoff and backoff != 1.0:
            wait = wait_exponential(multiplier=delay, exp_base=backoff)
        else:
            wait = wait_fixed(delay)

        def _should_retry(exc: BaseException) -> bool:
            if not isinstance(exc, Exception):
                return False
            return retry_if is None or bool(retry_if(exc))

        def _log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.info(
                "batch item failed, retrying",
                extra={
                    "attempt": state.attempt_number,
                    "max_retries": retries,
                    "error": sanitize_error_message(exc),
                },
            )

        async def _attempt(item: T) -> R:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(retries + 1),
                wait=wait,
                retry=retry_if_exception(_should_retry),
                before_sleep=_log_retry,
                sleep=asyncio.sleep,
                reraise=True,
            )
            return await retrying(op, item)

        return await self.run(items, _attempt)
