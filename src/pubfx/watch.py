"""watch() — run a background producer in a managed daemon thread.

Producers post to buses and set reactive states directly; both marshal
onto their delivery context when it has a marshal hook, so watch() is
purely about thread lifecycle. The producer receives its own WatchHandle
and should check ``handle.cancelled`` in long-running loops.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger("pubfx.watch")


class WatchHandle:
    """Cancellation flag and join point for a producer thread."""

    __slots__ = ("_cancelled", "_thread")

    def __init__(self) -> None:
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Signal the producer to stop. Idempotent."""
        self._cancelled.set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout, waking early on cancel. True if cancelled."""
        return self._cancelled.wait(timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the producer to return. True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()


def watch(producer: Callable[..., None], *args) -> WatchHandle:
    """Run producer(handle, *args) in a daemon thread. Returns the handle.

    Exceptions escaping the producer are logged, not lost.

    Usage:
        status = ReactiveState("idle", context=ctx)

        def poll(handle):
            while not handle.cancelled:
                status.set(fetch_status())
                handle.wait(2)

        handle = watch(poll)
    """
    handle = WatchHandle()

    def _run() -> None:
        try:
            producer(handle, *args)
        except Exception:
            logger.exception("Producer %s failed", getattr(producer, "__name__", producer))

    thread = threading.Thread(target=_run, daemon=True, name=f"pubfx-watch-{getattr(producer, '__name__', 'producer')}")
    handle._thread = thread
    thread.start()
    return handle
