"""
CDC (Change Data Capture) module for MongoDB changestream processing.
"""

from .errors import (
    CDCError, AlreadyWatchingError, NotWatchingError, ChangeNormalizationError,
    SubscriptionClosedError, ReconnectExhaustedError
)
from .models import ChangeEvent, ChangeOperationType, Namespace, UpdateDescription
from .options import CDCConfig, FullDocumentMode
from .handlers import CDCEventHandler, HandlerRegistry
from .hooks import OperationHooks
from .dispatcher import EventDispatcher
from .reconnect import ReconnectionController, WatchState
from .subscription import ChangeStreamSubscription, FeedSignal, SignalKind
from .mongo_changestream import ChangeStreamWatcher

__all__ = [
    "ChangeStreamWatcher",
    "CDCConfig",
    "FullDocumentMode",
    "ChangeEvent",
    "ChangeOperationType",
    "Namespace",
    "UpdateDescription",
    "CDCEventHandler",
    "HandlerRegistry",
    "OperationHooks",
    "EventDispatcher",
    "ReconnectionController",
    "WatchState",
    "ChangeStreamSubscription",
    "FeedSignal",
    "SignalKind",
    "CDCError",
    "AlreadyWatchingError",
    "NotWatchingError",
    "ChangeNormalizationError",
    "SubscriptionClosedError",
    "ReconnectExhaustedError",
]
