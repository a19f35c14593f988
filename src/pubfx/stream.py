"""Push-based streams with lazy operator chaining.

A Stream describes where values come from; nothing flows until a
subscriber attaches. Each operator returns a new Stream (immutable
chain), and every subscribe() activates its own copy of the chain up to
the root source, so subscribers are isolated from one another.

Roots:
- Stream.just / Stream.from_iterable: finite, replayed to each subscriber.
- EventStream: live multicast. Late subscribers miss earlier values.
- ReactiveState.as_stream(): replays the current value, then updates.

Streams reference subscriptions weakly; a subscription owns its upstream.
"""

from __future__ import annotations

import itertools
import threading
import weakref
from collections import deque
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

from pubfx.errors import StreamTerminalError
from pubfx.subscription import Subscription

if TYPE_CHECKING:
    from pubfx.context import DeliveryContext

T = TypeVar("T")
U = TypeVar("U")
V = TypeVar("V")

_UNSET = object()


class Stream(Generic[T]):
    """A lazy, composable source of values with completion and errors."""

    def subscribe(
        self,
        on_value: Callable[[T], Any] | None = None,
        on_error: Callable[[BaseException], Any] | None = None,
        on_complete: Callable[[], Any] | None = None,
    ) -> Subscription[T]:
        """Activate the chain. Keep the returned handle to keep receiving."""
        sub: Subscription[T] = Subscription(on_value, on_error, on_complete)
        self._attach(sub)
        return sub

    def _attach(self, sub: Subscription[T]) -> None:
        raise NotImplementedError

    # ─── Sources ────────────────────────────────────────────────────────

    @classmethod
    def create(cls, source) -> Stream:
        """Wrap a value source as a Stream.

        Streams pass through, state containers are bridged with their
        ``as_stream()``, non-string iterables become finite (or infinite)
        sequences, and anything else is a single value.
        """
        if isinstance(source, Stream):
            return source
        as_stream = getattr(source, "as_stream", None)
        if callable(as_stream):
            return as_stream()
        if isinstance(source, Iterable) and not isinstance(source, (str, bytes, bytearray, Mapping)):
            return cls.from_iterable(source)
        return cls.just(source)

    @staticmethod
    def just(value: T) -> Stream[T]:
        """Emit value, then complete. Replayed for every subscriber."""

        def _attach(sub: Subscription[T]) -> None:
            sub._value(value)
            sub._complete()

        return _DerivedStream(_attach)

    @staticmethod
    def from_iterable(iterable: Iterable[T]) -> Stream[T]:
        """Emit each item, then complete.

        Iteration stops as soon as the subscription ends, so an endless
        iterator is fine downstream of take(). A one-shot iterator is
        exhausted by its first subscriber.
        """

        def _attach(sub: Subscription[T]) -> None:
            if not sub.active:
                return
            try:
                for item in iterable:
                    sub._value(item)
                    if not sub.active:
                        return
            except Exception as exc:
                sub._error(StreamTerminalError.wrap(exc))
                return
            sub._complete()

        return _DerivedStream(_attach)

    @staticmethod
    def fail(exc: BaseException) -> Stream:
        """Fail every subscriber immediately."""
        return _DerivedStream(lambda sub: sub._error(StreamTerminalError.wrap(exc)))

    @staticmethod
    def empty() -> Stream:
        """Complete every subscriber immediately."""
        return _DerivedStream(lambda sub: sub._complete())

    # ─── Operators ──────────────────────────────────────────────────────

    def map(self, fn: Callable[[T], U]) -> Stream[U]:
        """Transform values through fn."""

        def _attach(sub: Subscription[U]) -> None:
            def _on_value(value: T) -> None:
                try:
                    result = fn(value)
                except Exception as exc:
                    sub._error(StreamTerminalError.wrap(exc))
                    return
                sub._value(result)

            _link(self, sub, _on_value)

        return _DerivedStream(_attach)

    def filter(self, predicate: Callable[[T], bool]) -> Stream[T]:
        """Only pass values where predicate returns True."""

        def _attach(sub: Subscription[T]) -> None:
            def _on_value(value: T) -> None:
                try:
                    keep = predicate(value)
                except Exception as exc:
                    sub._error(StreamTerminalError.wrap(exc))
                    return
                if keep:
                    sub._value(value)

            _link(self, sub, _on_value)

        return _DerivedStream(_attach)

    def take(self, count: int) -> Stream[T]:
        """Pass the first count values, then complete and detach."""

        def _attach(sub: Subscription[T]) -> None:
            if count <= 0:
                sub._complete()
                return
            remaining = [count]

            def _on_value(value: T) -> None:
                remaining[0] -= 1
                sub._value(value)
                if remaining[0] <= 0:
                    sub._complete()

            _link(self, sub, _on_value)

        return _DerivedStream(_attach)

    def combine_latest(
        self, other: Stream[U], combiner: Callable[[T, U], V] | None = None
    ) -> Stream[V]:
        """Emit the latest pair whenever either side emits.

        Nothing is emitted until both sides have produced a value. Emits
        ``(a, b)`` tuples, or ``combiner(a, b)`` when given.
        """

        def _attach(sub: Subscription[V]) -> None:
            latest = [_UNSET, _UNSET]
            done = [False, False]

            def _side(index: int):
                def _on_value(value) -> None:
                    latest[index] = value
                    if all(v is not _UNSET for v in latest):
                        _emit_pair(sub, combiner, latest[0], latest[1])

                def _on_complete() -> None:
                    done[index] = True
                    # A side that never emitted means no pair can ever form.
                    if all(done) or latest[index] is _UNSET:
                        sub._complete()

                return _on_value, _on_complete

            for index, source in enumerate((self, other)):
                on_value, on_complete = _side(index)
                _link(source, sub, on_value, on_complete=on_complete)
                if not sub.active:
                    return

        return _DerivedStream(_attach)

    def zip(self, other: Stream[U], combiner: Callable[[T, U], V] | None = None) -> Stream[V]:
        """Pair values strictly by index, buffering the faster side."""

        def _attach(sub: Subscription[V]) -> None:
            buffers: tuple[deque, deque] = (deque(), deque())
            done = [False, False]

            def _check_done() -> None:
                if any(done[i] and not buffers[i] for i in (0, 1)):
                    sub._complete()

            def _side(index: int):
                def _on_value(value) -> None:
                    buffers[index].append(value)
                    while buffers[0] and buffers[1]:
                        _emit_pair(sub, combiner, buffers[0].popleft(), buffers[1].popleft())
                        if not sub.active:
                            return
                    _check_done()

                def _on_complete() -> None:
                    done[index] = True
                    _check_done()

                return _on_value, _on_complete

            for index, source in enumerate((self, other)):
                on_value, on_complete = _side(index)
                _link(source, sub, on_value, on_complete=on_complete)
                if not sub.active:
                    return

        return _DerivedStream(_attach)

    def debounce(self, seconds: float, context: DeliveryContext | None = None) -> Stream[T]:
        """Coalesce rapid values — emit the last one after a quiet period.

        Uses threading.Timer (daemon=True). Each new value cancels the
        previous timer, so only the last value in a burst fires. With a
        context, delivery is marshaled onto its delivery thread; otherwise
        it happens on the timer thread. Completion flushes a pending value.
        """

        def _attach(sub: Subscription[T]) -> None:
            timer_lock = threading.Lock()
            timer_ref: list[threading.Timer | None] = [None]
            pending: list[Any] = [_UNSET]

            def _take_pending():
                with timer_lock:
                    if timer_ref[0] is not None:
                        timer_ref[0].cancel()
                        timer_ref[0] = None
                    value, pending[0] = pending[0], _UNSET
                return value

            def _deliver() -> None:
                value = _take_pending()
                if value is not _UNSET:
                    sub._value(value)

            def _fire() -> None:
                if context is not None:
                    context.run(_deliver)
                else:
                    _deliver()

            def _on_value(value: T) -> None:
                with timer_lock:
                    if timer_ref[0] is not None:
                        timer_ref[0].cancel()
                    pending[0] = value
                    t = threading.Timer(seconds, _fire)
                    t.daemon = True
                    timer_ref[0] = t
                    t.start()

            def _on_complete() -> None:
                _deliver()
                sub._complete()

            sub.add_teardown(_take_pending)
            _link(self, sub, _on_value, on_complete=_on_complete)

        return _DerivedStream(_attach)


class _DerivedStream(Stream[T]):
    """A stream defined by how it attaches a subscription."""

    def __init__(self, attach_fn: Callable[[Subscription[T]], None]) -> None:
        self._attach_fn = attach_fn

    def _attach(self, sub: Subscription[T]) -> None:
        self._attach_fn(sub)


def _link(
    source: Stream,
    sub: Subscription,
    on_value: Callable[[Any], None],
    on_complete: Callable[[], None] | None = None,
) -> Subscription:
    """Attach an inner subscription to source on behalf of sub.

    sub owns the inner subscription: ending sub cancels it. Errors flow
    down unchanged; completion flows down unless on_complete overrides it.
    """
    inner: Subscription = Subscription(on_value, sub._error, on_complete or sub._complete)
    sub.add_teardown(inner.cancel)
    source._attach(inner)
    return inner


def _emit_pair(sub: Subscription, combiner, a, b) -> None:
    if combiner is None:
        sub._value((a, b))
        return
    try:
        result = combiner(a, b)
    except Exception as exc:
        sub._error(StreamTerminalError.wrap(exc))
        return
    sub._value(result)


class EventStream(Stream[T]):
    """Live multicast stream: emit values to every attached subscription.

    Subscriptions are held through weak references only. Late subscribers
    miss earlier values; subscribing after complete()/error() ends the new
    subscription immediately the same way.
    """

    def __init__(self, context: DeliveryContext | None = None) -> None:
        self._context = context
        self._subscribers: dict[int, weakref.ref[Subscription[T]]] = {}
        self._tokens = itertools.count()
        self._lock = threading.Lock()
        self._completed = False
        self._failure: StreamTerminalError | None = None

    @property
    def closed(self) -> bool:
        return self._completed or self._failure is not None

    @property
    def subscriber_count(self) -> int:
        """Live attached subscriptions. Useful for testing."""
        return sum(1 for ref in self._snapshot() if ref() is not None)

    def emit(self, value: T) -> None:
        """Push a value to all live subscriptions, in subscription order."""
        if self._context is not None:
            self._context.run(self._emit_direct, value)
        else:
            self._emit_direct(value)

    def complete(self) -> None:
        """End the stream. Each live subscription completes exactly once."""
        if self._context is not None:
            self._context.run(self._complete_direct)
        else:
            self._complete_direct()

    def error(self, exc: BaseException) -> None:
        """Fail the stream. Each live subscription gets on_error once."""
        if self._context is not None:
            self._context.run(self._error_direct, exc)
        else:
            self._error_direct(exc)

    def _emit_direct(self, value: T) -> None:
        if self.closed:
            return
        for ref in self._snapshot():
            sub = ref()
            if sub is not None:
                sub._value(value)

    def _complete_direct(self) -> None:
        if self.closed:
            return
        self._completed = True
        for sub in self._release_all():
            sub._complete()

    def _error_direct(self, exc: BaseException) -> None:
        if self.closed:
            return
        self._failure = StreamTerminalError.wrap(exc)
        for sub in self._release_all():
            sub._error(self._failure)

    def _attach(self, sub: Subscription[T]) -> None:
        if self._failure is not None:
            sub._error(self._failure)
            return
        if self._completed:
            sub._complete()
            return
        token = next(self._tokens)
        subscribers = self._subscribers

        def _collected(_ref, token=token) -> None:
            subscribers.pop(token, None)

        with self._lock:
            subscribers[token] = weakref.ref(sub, _collected)
        sub.add_teardown(lambda: subscribers.pop(token, None))

    def _snapshot(self) -> list[weakref.ref[Subscription[T]]]:
        with self._lock:
            return list(self._subscribers.values())

    def _release_all(self) -> list[Subscription[T]]:
        with self._lock:
            refs = list(self._subscribers.values())
            self._subscribers.clear()
        return [sub for sub in (ref() for ref in refs) if sub is not None]

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"{self.subscriber_count} subscribers"
        return f"EventStream({state})"
