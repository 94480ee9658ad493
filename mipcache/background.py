"""
TaskRunner - Fire-and-forget work that outlives the request.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Set


class TaskRunner:
    """
    Runs detached tasks on a thread pool.

    Every submission returns a Future, so callers that need to (tests,
    the warm-up CLI) can wait for completion; everyone else ignores it.
    Task failures are logged, never re-raised into the submitting request.
    """

    def __init__(
        self,
        max_workers: int = 2,
        name: str = 'thumbs',
        logger: Optional[logging.Logger] = None
    ):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self.logger = logger or logging.getLogger(__name__)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, func: Callable[..., Any], *args, **kwargs) -> Future:
        """Schedule a task and return its future."""
        future = self.executor.submit(func, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(f"Background task failed: {error!r}")

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for all tasks, including ones submitted while waiting.

        Returns:
            True if everything finished within the timeout
        """
        while True:
            with self._lock:
                pending = {f for f in self._pending if not f.done()}
            if not pending:
                return True
            done, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        self.executor.shutdown(wait=wait_for_tasks)
