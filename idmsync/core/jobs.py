"""Background execution for asynchronous propagation and reconciliation jobs."""
from __future__ import annotations
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class JobRunner:
    """Thread pool owned by the service container.

    Submitted callables run fire-and-forget; failures are logged, the
    returned future still carries them for callers that want to wait.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="idmsync-job")
        self._futures: List[Future] = []
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Background job failed: {error}")

    def wait(self, timeout: float | None = None) -> None:
        """Block until every job, including those queued by running jobs, has completed.

        Raises:
            TimeoutError: Jobs were still pending after ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                return
            for future in pending:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(f"{len(pending)} background job(s) still running after {timeout}s")
                try:
                    future.result(timeout=remaining)
                except FutureTimeoutError as e:
                    if future.done():
                        continue
                    raise TimeoutError(f"Background job still running after {timeout}s") from e
                except Exception:
                    # Already logged by _log_failure
                    continue

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
