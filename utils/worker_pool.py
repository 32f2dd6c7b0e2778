"""
Bounded worker pool for batch jobs.

Items are pulled lazily from an iterable so paged sources are only read
as fast as workers consume them. Cancellation and timeout stop new work
from being scheduled; items already running are allowed to finish.
"""

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ItemOutcome(Generic[T, R]):
    """Result of one item: either a value or the exception it raised."""
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PoolResult(Generic[T, R]):
    outcomes: list = field(default_factory=list)
    cancelled: bool = False
    timed_out: bool = False
    source_error: Optional[BaseException] = None

    @property
    def stopped_early(self) -> bool:
        return self.cancelled or self.timed_out or self.source_error is not None


def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], R],
    concurrency: int = 4,
    timeout_seconds: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
) -> PoolResult:
    """
    Run `worker` over `items` with at most `concurrency` in flight.

    Args:
        items: Work items, consumed lazily
        worker: Called once per item in a pool thread
        concurrency: Maximum items in flight
        timeout_seconds: Stop scheduling after this long
        cancel_event: Stop scheduling once set

    Returns:
        PoolResult with one outcome per scheduled item, in completion order.
        A worker exception is captured on its outcome, never raised.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    result = PoolResult()
    deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
    source = iter(items)
    exhausted = False
    in_flight: dict[Future, Any] = {}

    def should_stop() -> bool:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            return True
        if deadline is not None and time.monotonic() >= deadline:
            result.timed_out = True
            return True
        return False

    def collect(done) -> None:
        for future in done:
            item = in_flight.pop(future)
            error = future.exception()
            if error is not None:
                result.outcomes.append(ItemOutcome(item=item, error=error))
            else:
                result.outcomes.append(ItemOutcome(item=item, result=future.result()))

    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        while not exhausted:
            while len(in_flight) < concurrency:
                if should_stop():
                    exhausted = True
                    break
                try:
                    item = next(source)
                except StopIteration:
                    exhausted = True
                    break
                except Exception as e:
                    logger.error("worker_pool_source_failed", error=str(e))
                    result.source_error = e
                    exhausted = True
                    break
                in_flight[executor.submit(worker, item)] = item

            if in_flight and not exhausted:
                # Wake periodically so cancellation is noticed while all slots are busy
                done, _ = wait(list(in_flight), timeout=0.5, return_when=FIRST_COMPLETED)
                collect(done)

        # Let in-flight items finish
        if in_flight:
            done, _ = wait(list(in_flight))
            collect(done)

    if result.stopped_early:
        logger.warning(
            "worker_pool_stopped_early",
            completed=len(result.outcomes),
            cancelled=result.cancelled,
            timed_out=result.timed_out
        )

    return result
