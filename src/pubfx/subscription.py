"""Subscriptions — scoped handles linking one subscriber to one stream.

A Subscription owns its upstream (through teardown callbacks); streams
only ever reference subscriptions weakly. Keep the handle for as long as
delivery is wanted: dropping it detaches it once it is collected, and
cancel() detaches it right away.

Every state other than ACTIVE is terminal. cancel() is idempotent.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")

Disposer = Callable[[], None]

logger = logging.getLogger("pubfx.stream")


class SubscriptionState(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Subscription(Generic[T]):
    """Delivery endpoint for one subscriber of one stream."""

    __slots__ = ("_on_value", "_on_error", "_on_complete", "_state", "_teardowns", "__weakref__")

    def __init__(
        self,
        on_value: Callable[[T], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        on_complete: Callable[[], Any] | None = None,
    ) -> None:
        self._on_value = on_value
        self._on_error = on_error
        self._on_complete = on_complete
        self._state = SubscriptionState.ACTIVE
        self._teardowns: list[Disposer] = []

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state is SubscriptionState.ACTIVE

    @property
    def cancelled(self) -> bool:
        return self._state is SubscriptionState.CANCELLED

    def cancel(self) -> None:
        """Stop future deliveries and detach from upstream. Idempotent."""
        if self._state is not SubscriptionState.ACTIVE:
            return
        self._state = SubscriptionState.CANCELLED
        self._teardown()

    def add_teardown(self, fn: Disposer) -> None:
        """Run fn when this subscription ends. Runs now if it already has."""
        if self._state is SubscriptionState.ACTIVE:
            self._teardowns.append(fn)
        else:
            fn()

    # --- Delivery (called by streams) ---

    def _value(self, value: T) -> None:
        if self._state is not SubscriptionState.ACTIVE or self._on_value is None:
            return
        try:
            self._on_value(value)
        except Exception:
            # Subscriber isolation: a failing callback never reaches the emitter.
            logger.exception("Subscriber on_value failed for %r", value)

    def _error(self, exc: BaseException) -> None:
        if self._state is not SubscriptionState.ACTIVE:
            return
        self._state = SubscriptionState.FAILED
        self._teardown()
        if self._on_error is None:
            logger.error("Unhandled stream error: %s", exc)
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("Subscriber on_error failed")

    def _complete(self) -> None:
        if self._state is not SubscriptionState.ACTIVE:
            return
        self._state = SubscriptionState.COMPLETED
        self._teardown()
        if self._on_complete is None:
            return
        try:
            self._on_complete()
        except Exception:
            logger.exception("Subscriber on_complete failed")

    def _teardown(self) -> None:
        teardowns, self._teardowns = self._teardowns, []
        for fn in teardowns:
            fn()

    def __repr__(self) -> str:
        return f"Subscription({self._state.value})"


class CancelBag:
    """Holds cancellation handles and cancels them together.

    Accepts anything with a ``cancel()`` method: stream subscriptions and
    registry observation handles alike.

    Usage:
        with CancelBag() as bag:
            bag.add(state.subscribe(render))
            bag.add(bus.observe("saved", on_saved))
            ...
        # everything cancelled here
    """

    def __init__(self) -> None:
        self._handles: list = []

    def add(self, handle):
        """Retain handle until cancel_all(). Returns it for chaining."""
        self._handles.append(handle)
        return handle

    def cancel_all(self) -> None:
        handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()

    def __len__(self) -> int:
        return len(self._handles)

    def __enter__(self) -> CancelBag:
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel_all()
