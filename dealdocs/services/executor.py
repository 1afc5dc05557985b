"""Bounded-concurrency executor for batch uploads.

Items wait in a FIFO queue and are started in order while fewer than
``concurrency`` are in flight. Each completion frees a slot and starts the
next queued item straight away, so the pipeline stays full instead of
waiting for a whole wave to finish.
"""

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 4


class BoundedExecutor(Generic[T, R]):
    """Runs a task over items with at most ``concurrency`` running at once."""

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.concurrency = concurrency

    def run(self, items: Iterable[T], task: Callable[[T], R | None]) -> list[R]:
        """Run ``task`` over every item and wait for all of them.

        Args:
            items: Items to process, started in the given order
            task: Called once per item; return None to mark the item failed

        Returns:
            Non-None task results in completion order
        """
        queue: deque[T] = deque(items)
        if not queue:
            return []

        results: list[R] = []
        cond = threading.Condition()
        active = 0

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="upload"
        ) as pool:

            def launch_next() -> None:
                # Caller holds cond
                nonlocal active
                while queue and active < self.concurrency:
                    item = queue.popleft()
                    active += 1
                    future = pool.submit(task, item)
                    future.add_done_callback(lambda f, it=item: on_done(f, it))

            def on_done(future: Future, item: T) -> None:
                nonlocal active
                try:
                    result = future.result()
                except Exception:
                    logger.exception("Upload task failed for %r", item)
                    result = None
                with cond:
                    if result is not None:
                        results.append(result)
                    active -= 1
                    launch_next()
                    cond.notify_all()

            with cond:
                launch_next()
                while queue or active:
                    cond.wait()

        return results
