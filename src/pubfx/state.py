"""Reactive state — a current value that re-publishes on mutation.

set() updates the value and synchronously notifies every active
subscription in subscription order. Inside a batch on the state's
delivery context the notification is deferred and coalesced: subscribers
see one emission carrying the latest value when the batch exits.

Thread safety: give the state a DeliveryContext with a marshal hook.
After that, any set() from a background thread is marshaled onto the
delivery thread. Delivery-thread set() remains synchronous.

There is no implicit teardown: cancel subscriptions before discarding.
"""

from __future__ import annotations

from typing import Any, Callable, Generic, TypeVar

from pubfx.context import DeliveryContext
from pubfx.stream import EventStream, Stream
from pubfx.subscription import Subscription

T = TypeVar("T")


class ReactiveState(Generic[T]):
    """A single observable value bridged into the stream core."""

    __slots__ = ("_value", "_context", "_distinct", "_changes", "_flush_pending")

    def __init__(self, value: T, *, context: DeliveryContext | None = None, distinct: bool = False) -> None:
        self._value = value
        self._context = context
        self._distinct = distinct
        self._changes: EventStream[T] = EventStream()
        self._flush_pending = False

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, value: T) -> None:
        self.set(value)

    def get(self) -> T:
        """Read the current value."""
        return self._value

    def set(self, value: T) -> None:
        """Write a new value. Auto-marshals from background threads."""
        if self._context is not None:
            self._context.run(self._set_direct, value)
        else:
            self._set_direct(value)

    def update(self, fn: Callable[[T], T]) -> None:
        """Replace the value with fn(current)."""
        if self._context is not None:
            self._context.run(lambda: self._set_direct(fn(self._value)))
        else:
            self._set_direct(fn(self._value))

    def _set_direct(self, value: T) -> None:
        """Set value and notify. Always runs on the delivery thread."""
        if self._distinct:
            old = self._value
            if old is value or old == value:
                return
        self._value = value
        if self._context is not None and self._context.batching:
            if not self._flush_pending:
                self._flush_pending = True
                self._context.defer(self._flush)
        else:
            self._changes.emit(value)

    def _flush(self) -> None:
        self._flush_pending = False
        self._changes.emit(self._value)

    def as_stream(self) -> Stream[T]:
        """Replay the current value to each new subscriber, then updates."""
        return _StateStream(self)

    def subscribe(
        self,
        on_value: Callable[[T], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        on_complete: Callable[[], Any] | None = None,
    ) -> Subscription[T]:
        """Shorthand for ``as_stream().subscribe(...)``."""
        return self.as_stream().subscribe(on_value, on_error, on_complete)

    @property
    def subscriber_count(self) -> int:
        return self._changes.subscriber_count

    def __repr__(self) -> str:
        return f"ReactiveState({self._value!r})"


class _StateStream(Stream[T]):
    """Bridge from a ReactiveState into the stream core."""

    def __init__(self, state: ReactiveState[T]) -> None:
        self._state = state

    def _attach(self, sub: Subscription[T]) -> None:
        # A pending batch flush delivers the current value to us anyway.
        if not self._state._flush_pending:
            sub._value(self._state._value)
        if sub.active:
            self._state._changes._attach(sub)
