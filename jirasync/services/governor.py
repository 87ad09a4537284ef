"""Outbound call governor (FIFO rate throttle)"""

import functools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class CallGovernor:
    """Serialize calls and space their starts at least ``interval_seconds`` apart.

    Calls are queued in FIFO order and executed one at a time on a worker thread
    that exists only while the queue is non-empty. The spacing is measured from
    the previous call's dispatch, not its return. Each caller gets a Future that
    resolves with exactly what the wrapped call returned or raised.

    One governor is owned by one process; it does not coordinate with other
    processes talking to the same remote system.
    """

    def __init__(
        self,
        interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._queue: Deque[Tuple[Callable[[], Any], Future]] = deque()
        self._processing = False
        self._last_dispatch: Optional[float] = None

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Enqueue ``fn(*args, **kwargs)`` and return its Future."""
        future: Future = Future()
        with self._lock:
            self._queue.append((functools.partial(fn, *args, **kwargs), future))
            if not self._processing:
                self._processing = True
                worker = threading.Thread(target=self._drain, name="call-governor", daemon=True)
                worker.start()
        return future

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Enqueue and block until the call has run; re-raises its exception."""
        return self.submit(fn, *args, **kwargs).result()

    def _next_wait(self) -> float:
        if self._last_dispatch is None:
            return 0.0
        return max(0.0, self._last_dispatch + self.interval_seconds - self._clock())

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._processing = False
                    return
                wait = self._next_wait()

            if wait > 0:
                logger.debug(f"Delaying Jira call by {wait:.3f}s")
                self._sleep(wait)

            with self._lock:
                call, future = self._queue.popleft()
                self._last_dispatch = self._clock()

            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = call()
            except BaseException as e:  # handed to the caller through the Future
                future.set_exception(e)
            else:
                future.set_result(result)
