"""Subscription registry — keyed observations with weak ownership.

An observation binds a callback to an event key and, optionally, to an
owner object. The registry never keeps an owner alive: owners are held
through weak references, and a callback that is a bound method of its
owner is held through a weak method reference. Once the owner is
collected the observation goes inactive and is removed from its key.

Dispatch works on a snapshot taken when it starts, so callbacks may
register or unregister observations freely while it runs.
"""

from __future__ import annotations

import itertools
import logging
import threading
import types
import weakref
from typing import Any, Callable, Hashable

from pubfx.errors import ObserverCallbackError, check_key

logger = logging.getLogger("pubfx.registry")

Callback = Callable[[Any], None]


class Observation:
    """One registered callback. Owned by the registry."""

    __slots__ = ("seq", "key", "_callback", "_owner_ref", "active", "__weakref__")

    def __init__(self, seq: int, key: Hashable, callback: Callback, owner=None, on_release=None) -> None:
        self.seq = seq
        self.key = key
        self.active = True
        if owner is None:
            self._owner_ref = None
            self._callback = callback
            return
        # Owner teardown hook: the finalizer marks us dead right away.
        self_ref = weakref.ref(self)

        def _owner_released(_ref) -> None:
            observation = self_ref()
            if observation is not None:
                observation.active = False
                if on_release is not None:
                    on_release(observation)

        self._owner_ref = weakref.ref(owner, _owner_released)
        if isinstance(callback, types.MethodType) and callback.__self__ is owner:
            self._callback = weakref.WeakMethod(callback)
        else:
            self._callback = callback

    @property
    def owner(self):
        return self._owner_ref() if self._owner_ref is not None else None

    @property
    def alive(self) -> bool:
        """False once the owner has been collected."""
        return self._owner_ref is None or self._owner_ref() is not None

    def resolve(self) -> Callback | None:
        """The callable to invoke, or None if the observation is dead."""
        if not self.active or not self.alive:
            return None
        if isinstance(self._callback, weakref.WeakMethod):
            return self._callback()
        return self._callback

    def __repr__(self) -> str:
        state = "active" if self.active and self.alive else "inactive"
        return f"Observation({self.key!r}, #{self.seq}, {state})"


class ObservationHandle:
    """Caller-facing token for an observation. Releasing it is idempotent."""

    __slots__ = ("_registry", "_observation")

    def __init__(self, registry: SubscriptionRegistry, observation: Observation) -> None:
        self._registry = registry
        self._observation = observation

    @property
    def key(self) -> Hashable:
        return self._observation.key

    @property
    def active(self) -> bool:
        return self._observation.active and self._observation.alive

    def unregister(self) -> None:
        self._registry.unregister(self)

    # Same vocabulary as Subscription so both fit in a CancelBag.
    cancel = unregister

    def __repr__(self) -> str:
        return f"ObservationHandle({self._observation!r})"


class SubscriptionRegistry:
    """Tracks observations per event key, in registration order."""

    def __init__(self) -> None:
        self._observations: dict[Hashable, list[Observation]] = {}
        self._seq = itertools.count(1)
        # Re-entrant: a callback may post again on the same thread.
        self._lock = threading.RLock()

    def register(self, key: Hashable, callback: Callback, owner=None) -> ObservationHandle:
        """Store a new observation and return its handle.

        Raises InvalidKeyError for a bad key and TypeError when callback is
        not callable or owner cannot be weakly referenced.
        """
        check_key(key)
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {type(callback).__name__}")
        observation = Observation(next(self._seq), key, callback, owner, self._release_hook())
        with self._lock:
            self._observations.setdefault(key, []).append(observation)
        logger.debug("Registered %r", observation)
        return ObservationHandle(self, observation)

    def unregister(self, handle: ObservationHandle) -> None:
        """Deactivate and remove an observation. Calling twice is a no-op."""
        observation = handle._observation
        with self._lock:
            observation.active = False
            self._remove(observation)

    def unregister_all(self, owner) -> int:
        """Remove every observation owned by owner. Returns how many."""
        if owner is None:
            return 0
        removed = 0
        with self._lock:
            for key in list(self._observations):
                for observation in list(self._observations[key]):
                    if observation.active and observation.owner is owner:
                        observation.active = False
                        self._remove(observation)
                        removed += 1
        if removed:
            logger.debug("Removed %d observations for %r", removed, owner)
        return removed

    def dispatch(self, key: Hashable, payload: Any) -> list[ObserverCallbackError]:
        """Invoke every live observation for key, in registration order.

        Callback errors are logged and returned; they never interrupt the
        fan-out to the remaining observers.
        """
        errors: list[ObserverCallbackError] = []
        with self._lock:
            snapshot = list(self._observations.get(key, ()))
            for observation in snapshot:
                callback = observation.resolve()
                if callback is None:
                    if observation.active:
                        observation.active = False
                    self._remove(observation)
                    continue
                try:
                    callback(payload)
                except Exception as exc:
                    logger.exception("Observer failed for %r", key)
                    errors.append(ObserverCallbackError(key, callback, exc))
        return errors

    def count(self, key: Hashable | None = None) -> int:
        """Number of live observations for key, or for every key."""
        with self._lock:
            if key is None:
                groups = list(self._observations.values())
            else:
                groups = [self._observations.get(key, [])]
            return sum(1 for group in groups for o in group if o.active and o.alive)

    def keys(self) -> list[Hashable]:
        """Keys that currently have at least one live observation."""
        with self._lock:
            return [k for k, group in self._observations.items() if any(o.active and o.alive for o in group)]

    def _release_hook(self):
        """Finalizer callback dropping a dead owner's observation at once."""
        registry_ref = weakref.ref(self)

        def _release(observation: Observation) -> None:
            registry = registry_ref()
            if registry is not None:
                with registry._lock:
                    registry._remove(observation)

        return _release

    def _remove(self, observation: Observation) -> None:
        group = self._observations.get(observation.key)
        if group is None:
            return
        try:
            group.remove(observation)
        except ValueError:
            pass  # already pruned
        if not group:
            del self._observations[observation.key]
