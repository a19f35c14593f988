"""Event bus — named events broadcast to every matching observer.

Two delivery modes:
- IMMEDIATE: synchronous, in registration order, on the caller's context.
- QUEUED: appended to the pending list and flushed FIFO at the next drain
  point of the bus's DeliveryContext. post_coalesced() replaces the payload
  of an already pending event with the same key, keeping its slot.

Fan-out is best effort: an observer that raises is logged and recorded in
``errors``; the poster and the remaining observers are unaffected.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Callable, Hashable

from pubfx.context import DeliveryContext
from pubfx.errors import ObserverCallbackError, check_key
from pubfx.registry import ObservationHandle, SubscriptionRegistry
from pubfx.stream import Stream, _DerivedStream
from pubfx.subscription import Subscription

logger = logging.getLogger("pubfx.bus")


class DeliveryMode(enum.Enum):
    IMMEDIATE = "immediate"
    QUEUED = "queued"


class _Pending:
    __slots__ = ("key", "payload")

    def __init__(self, key: Hashable, payload: Any) -> None:
        self.key = key
        self.payload = payload


def freeze(payload: Any) -> Any:
    """Mappings are copied into a read-only view; other values pass as is."""
    if isinstance(payload, Mapping) and not isinstance(payload, MappingProxyType):
        return MappingProxyType(dict(payload))
    return payload


class EventBus:
    """Posts keyed events through a SubscriptionRegistry."""

    def __init__(
        self,
        context: DeliveryContext | None = None,
        *,
        registry: SubscriptionRegistry | None = None,
        error_limit: int = 100,
        on_error: Callable[[ObserverCallbackError], Any] | None = None,
    ) -> None:
        self._context = context or DeliveryContext()
        self._registry = registry or SubscriptionRegistry()
        self._errors: deque[ObserverCallbackError] = deque(maxlen=error_limit)
        self._on_error = on_error
        self._pending: list[_Pending] = []
        self._pending_lock = threading.Lock()
        # True while a drain of ours sits in the context's deferred list.
        self._drain_deferred = False

    @property
    def context(self) -> DeliveryContext:
        return self._context

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    # ─── Consumers ──────────────────────────────────────────────────────

    def observe(self, key: Hashable, callback: Callable[[Any], Any], owner=None) -> ObservationHandle:
        """Register callback for key. Keep the handle to unregister later."""
        return self._registry.register(key, callback, owner)

    def unregister(self, handle: ObservationHandle) -> None:
        self._registry.unregister(handle)

    def unregister_all(self, owner) -> int:
        """Owner-teardown hook: drop every observation owned by owner."""
        return self._registry.unregister_all(owner)

    def stream(self, key: Hashable) -> Stream:
        """Payloads posted under key, as a live stream.

        Each subscription is its own observation. Cancelling it unregisters
        the observation; dropping it does once the handle is collected.
        """
        check_key(key)

        def _attach(sub: Subscription) -> None:
            handle = self._registry.register(key, sub._value, owner=sub)
            sub.add_teardown(handle.unregister)

        return _DerivedStream(_attach)

    # ─── Producers ──────────────────────────────────────────────────────

    def post(self, key: Hashable, payload: Any = None, mode: DeliveryMode = DeliveryMode.IMMEDIATE) -> None:
        """Broadcast payload to every observer of key.

        Raises InvalidKeyError synchronously. Posts from a background
        thread are marshaled onto the delivery context.
        """
        check_key(key)
        payload = freeze(payload)
        if mode is DeliveryMode.QUEUED:
            self._enqueue(key, payload, coalesce=False)
        else:
            self._context.run(self._deliver, key, payload)

    def post_coalesced(self, key: Hashable, payload: Any = None) -> None:
        """Queue payload, replacing a pending event with the same key."""
        check_key(key)
        self._enqueue(key, freeze(payload), coalesce=True)

    @property
    def pending(self) -> list[tuple[Hashable, Any]]:
        """Queued (key, payload) pairs awaiting the next drain, in order."""
        with self._pending_lock:
            return [(p.key, p.payload) for p in self._pending]

    def drain(self) -> int:
        """Deliver all queued events FIFO. Returns how many were delivered."""
        delivered = 0
        while True:
            # Snapshot and clear — observers may queue more while we deliver.
            with self._pending_lock:
                batch, self._pending = self._pending, []
            if not batch:
                return delivered
            for pending in batch:
                self._deliver(pending.key, pending.payload)
                delivered += 1

    def _enqueue(self, key: Hashable, payload: Any, coalesce: bool) -> None:
        with self._pending_lock:
            if coalesce:
                for pending in reversed(self._pending):
                    if pending.key == key:
                        pending.payload = payload
                        logger.debug("Coalesced pending %r", key)
                        return
            self._pending.append(_Pending(key, payload))
            schedule = not self._drain_deferred
            self._drain_deferred = True
        if schedule:
            self._context.defer(self._deferred_drain)

    def _deferred_drain(self) -> None:
        with self._pending_lock:
            self._drain_deferred = False
        self.drain()

    def _deliver(self, key: Hashable, payload: Any) -> None:
        for error in self._registry.dispatch(key, payload):
            self._errors.append(error)
            if self._on_error is not None:
                try:
                    self._on_error(error)
                except Exception:
                    logger.exception("Bus on_error hook failed for %r", key)

    # ─── Error record ───────────────────────────────────────────────────

    @property
    def errors(self) -> list[ObserverCallbackError]:
        """Most recent observer failures, oldest first."""
        return list(self._errors)

    def clear_errors(self) -> None:
        self._errors.clear()

    def __repr__(self) -> str:
        return f"EventBus({self._registry.count()} observations, {len(self._pending)} pending)"

