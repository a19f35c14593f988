"""Error taxonomy for pubfx.

Registry-level errors (bad keys) are raised synchronously to the caller.
Observer callback errors are isolated: caught at the dispatch boundary,
logged, and recorded, never raised to the poster. Stream errors travel
only along the subscription chain that produced them.

Cancellation is idempotent, so there is no double-cancel error.
"""

from __future__ import annotations


class PubfxError(Exception):
    """Base class for every error raised or recorded by pubfx."""


class InvalidKeyError(PubfxError, ValueError):
    """An event key is None, empty, whitespace-only, or unhashable."""


class ObserverCallbackError(PubfxError):
    """An observer callback raised during dispatch.

    The original exception is kept as ``__cause__``; the callback itself
    is recorded by name only.
    """

    def __init__(self, key, callback, exc: BaseException) -> None:
        name = getattr(callback, "__qualname__", None) or repr(callback)
        super().__init__(f"observer {name} failed for {key!r}: {exc!r}")
        self.key = key
        self.callback_name = name
        self.__cause__ = exc


class StreamTerminalError(PubfxError):
    """A stream's source (or one of its operators) failed."""

    @classmethod
    def wrap(cls, exc: BaseException) -> StreamTerminalError:
        """Return exc unchanged if it already is one, else wrap it."""
        if isinstance(exc, cls):
            return exc
        err = cls(f"stream failed: {exc!r}")
        err.__cause__ = exc
        return err


def check_key(key) -> None:
    """Raise InvalidKeyError unless key can name an event."""
    if key is None:
        raise InvalidKeyError("event key must not be None")
    if isinstance(key, str) and not key.strip():
        raise InvalidKeyError("event key must not be empty")
    try:
        hash(key)
    except TypeError:
        raise InvalidKeyError(f"event key must be hashable, got {type(key).__name__}") from None
