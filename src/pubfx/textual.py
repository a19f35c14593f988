"""Textual integration for pubfx. Opt-in — requires textual.

Textual coupling is isolated in this module; the core stays agnostic.
Pause state is owned here, keyed by id(app), never stored on the app.
"""

from __future__ import annotations

import types
import weakref
from contextlib import contextmanager

from textual.css.query import NoMatches

from pubfx.context import DeliveryContext

# Module-owned pause state — keyed by id(app) so multiple apps work in tests.
_paused_apps: set[int] = set()


def delivery_context(app) -> DeliveryContext:
    """A context delivering on the app's thread.

    Call from the app thread (e.g. in ``on_mount``). Deferred drains run on
    the next message-loop tick; background posts hop in via
    call_from_thread.
    """
    return DeliveryContext(scheduler=app.call_later, marshal=app.call_from_thread)


@contextmanager
def pause(app):
    """Suspend guarded delivery during widget replacement."""
    key = id(app)
    _paused_apps.add(key)
    try:
        yield
    finally:
        _paused_apps.discard(key)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused_apps


def guard(app, fn):
    """Wrap a widget-updating callback.

    The wrapper skips while the app is paused, not running or collected,
    and swallows NoMatches from widget queries. Other errors propagate as
    usual. The app (and fn, when it is one of the app's methods) is held
    weakly.
    """
    app_ref = weakref.ref(app)
    method_ref = None
    if isinstance(fn, types.MethodType) and fn.__self__ is app:
        method_ref = weakref.WeakMethod(fn)
        fn = None

    def _guarded(value) -> None:
        target = app_ref()
        callback = method_ref() if method_ref is not None else fn
        if target is None or callback is None or not is_safe(target):
            return
        try:
            callback(value)
        except NoMatches:
            pass

    return _guarded


def subscribe(app, stream, on_value):
    """stream.subscribe() with a guarded on_value. Keep the returned handle."""
    return stream.subscribe(guard(app, on_value))


def observe(app, bus, key, callback):
    """bus.observe() with a guarded callback, owned by the app."""
    return bus.observe(key, guard(app, callback), owner=app)
