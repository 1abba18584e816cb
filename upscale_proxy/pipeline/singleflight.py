"""
In-flight deduplication.

Concurrent callers asking for the same key share one computation: the
first caller runs it, the others block on its Future and receive the same
result or the same exception. The entry is dropped as soon as the
computation finishes, so failures are never cached.
"""

import threading
from concurrent.futures import Future
from typing import Callable, Dict, Hashable, Tuple, TypeVar

T = TypeVar("T")


class SingleFlight:
    """Mutex-guarded mapping of key -> in-progress Future."""

    def __init__(self):
        self._lock = threading.Lock()
        self._inflight: Dict[Hashable, Future] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> Tuple[T, bool]:
        """
        Run `fn` once per concurrent burst of callers for `key`.

        Returns:
            Tuple of (result, shared) where shared is True when this caller
            waited on a computation started by another caller.
        """
        with self._lock:
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future

        if not leader:
            return future.result(), True

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def pending(self) -> int:
        """Number of computations currently in flight."""
        with self._lock:
            return len(self._inflight)
