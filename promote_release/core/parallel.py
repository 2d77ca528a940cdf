"""Thread-pool fan-out for independent I/O-bound work units."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_parallel(fn: Callable[[T], R], items: Iterable[T], max_workers: int) -> list[R]:
    """Apply ``fn`` to every item concurrently and return results in order.

    The first exception cancels all work that has not started yet and is
    re-raised once running units finish. KeyboardInterrupt does the same.
    """
    items = list(items)
    if not items:
        return []
    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(items)))
    futures: list[Future[R]] = []
    try:
        futures = [executor.submit(fn, item) for item in items]
        done, _pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()  # type: ignore[misc]
        return [future.result() for future in futures]
    except BaseException:
        for future in futures:
            future.cancel()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
