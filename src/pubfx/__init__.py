"""pubfx: observable event bus and reactive stream engine for Python."""

from importlib.metadata import version as _version

__version__ = _version("pubfx")

from pubfx.errors import (
    InvalidKeyError,
    ObserverCallbackError,
    PubfxError,
    StreamTerminalError,
)
from pubfx.context import DeliveryContext
from pubfx.registry import ObservationHandle, SubscriptionRegistry
from pubfx.subscription import CancelBag, Subscription, SubscriptionState
from pubfx.stream import EventStream, Stream
from pubfx.state import ReactiveState
from pubfx.bus import DeliveryMode, EventBus
from pubfx.watch import watch, WatchHandle
# textual NOT auto-imported — opt-in only

__all__ = [
    "PubfxError",
    "InvalidKeyError",
    "ObserverCallbackError",
    "StreamTerminalError",
    "DeliveryContext",
    "SubscriptionRegistry",
    "ObservationHandle",
    "Subscription",
    "SubscriptionState",
    "CancelBag",
    "Stream",
    "EventStream",
    "ReactiveState",
    "EventBus",
    "DeliveryMode",
    "watch",
    "WatchHandle",
]
