"""Delivery context — the single execution context that owns delivery.

Every bus and state container delivers on one designated thread (think UI
main thread). A DeliveryContext records that thread, knows how to hop onto
it from background producers, and owns the deferred drain point used by
queued posts and batched state notifications.

Contexts are constructed and passed explicitly. There is no process-wide
default instance.

Batching: mutations inside ``with ctx.batch()`` (or a ``@ctx.batched``
function) defer notifications and flush them once at the end, so
dependents never see a half-applied group of updates.
"""

from __future__ import annotations

import functools
import threading
from contextlib import contextmanager
from typing import Callable, ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

Callback = Callable[[], None]
Scheduler = Callable[[Callback], object]


class DeliveryContext:
    """Thread affinity, marshaling and deferred drain for one delivery graph.

    ``scheduler(fn)`` must run ``fn`` later on the delivery thread (the next
    tick of an event loop). ``marshal(fn)`` must run ``fn`` on the delivery
    thread when called from another thread; it defaults to the scheduler.
    Without either hook the context is purely synchronous: deferred work
    waits for an explicit ``drain()`` or the end of the outermost batch.
    """

    def __init__(self, scheduler: Scheduler | None = None, marshal: Scheduler | None = None) -> None:
        self._scheduler = scheduler
        self._marshal = marshal or scheduler
        self._thread = threading.current_thread()
        self._lock = threading.Lock()
        self._deferred: list[Callback] = []
        self._drain_scheduled = False
        self._batch_depth = 0

    @classmethod
    def for_loop(cls, loop) -> DeliveryContext:
        """Bind to an asyncio event loop. Call from the loop's thread."""
        return cls(scheduler=loop.call_soon, marshal=loop.call_soon_threadsafe)

    # ─── Thread affinity ────────────────────────────────────────────────

    def is_delivery_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def run(self, fn: Callable[..., object], *args) -> None:
        """Run fn now, or marshal it onto the delivery thread.

        Calls from the delivery thread, and calls on a context without a
        marshal hook, run synchronously.
        """
        if self._marshal is not None and not self.is_delivery_thread():
            self._marshal(functools.partial(fn, *args))
        else:
            fn(*args)

    # ─── Deferred drain point ───────────────────────────────────────────

    @property
    def batching(self) -> bool:
        return self._batch_depth > 0

    @property
    def pending_count(self) -> int:
        """Number of deferred callbacks waiting for a drain. Useful for testing."""
        return len(self._deferred)

    def defer(self, fn: Callback) -> None:
        """Queue fn for the next drain point."""
        with self._lock:
            self._deferred.append(fn)
            schedule = (
                self._scheduler is not None
                and self._batch_depth == 0
                and not self._drain_scheduled
            )
            if schedule:
                self._drain_scheduled = True
        if schedule:
            if self.is_delivery_thread():
                self._scheduler(self.drain)
            else:
                self._marshal(self.drain)

    def drain(self) -> int:
        """Run deferred callbacks FIFO, including any queued while draining."""
        ran = 0
        while True:
            # Snapshot and clear — callbacks may defer new ones.
            with self._lock:
                batch = self._deferred
                self._deferred = []
                if not batch:
                    self._drain_scheduled = False
                    return ran
            for index, fn in enumerate(batch):
                try:
                    fn()
                except BaseException:
                    # Put the unrun remainder back in front for the next drain.
                    with self._lock:
                        self._deferred[:0] = batch[index + 1:]
                        self._drain_scheduled = False
                    raise
                ran += 1

    # ─── Batching ───────────────────────────────────────────────────────

    def begin_batch(self) -> None:
        """Enter a batching scope. Nested batches are supported."""
        self._batch_depth += 1

    def end_batch(self) -> None:
        """Exit a batching scope. The outermost exit drains."""
        self._batch_depth -= 1
        if self._batch_depth == 0:
            self.drain()

    @contextmanager
    def batch(self):
        """Context manager for batching mutations.

        Usage:
            with ctx.batch():
                width.set(10)
                height.set(20)
                # subscribers are notified here, after both are set
        """
        self.begin_batch()
        try:
            yield self
        finally:
            self.end_batch()

    def batched(self, fn: Callable[P, R]) -> Callable[P, R]:
        """Decorator: batch all notifications raised inside fn."""

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            self.begin_batch()
            try:
                return fn(*args, **kwargs)
            finally:
                self.end_batch()

        return wrapper

    def __repr__(self) -> str:
        mode = "scheduled" if self._scheduler is not None else "synchronous"
        return f"DeliveryContext({mode}, thread={self._thread.name!r})"
