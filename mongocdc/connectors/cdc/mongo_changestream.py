"""
MongoDB CDC using changestreams with automatic reconnection.

ChangeStreamWatcher:
1. Opens a changestream on a collection (resuming from the last token it saw)
2. Feeds every change through one worker thread, strictly in order
3. Runs the per-operation hook, then every registered handler
4. Reopens the stream after errors or unsolicited closes, within a budget
5. Keeps the resume token in memory and exposes it for external persistence
"""

import logging
import queue
import threading
from typing import Any, Dict, Iterable, Optional

from .dispatcher import EventDispatcher
from .errors import AlreadyWatchingError, NotWatchingError, SubscriptionClosedError
from .handlers import HandlerRegistry
from .hooks import OperationHooks
from .metrics import cdc_feed_errors, cdc_watching
from .options import CDCConfig
from .reconnect import ReconnectionController, WatchState
from .subscription import ChangeStreamSubscription, FeedSignal, SignalKind

logger = logging.getLogger(__name__)

_SHUTDOWN = object()


class ChangeStreamWatcher:
    """
    Watch a MongoDB changestream and dispatch normalized change events.

    Features:
    - Resume tokens carried across reconnects (no gap between sessions)
    - Bounded reconnect budget with a fixed delay, cancellable by stop()
    - Handler failures isolated from each other and from the stream
    - start()/stop()/register/unregister callable from any thread

    Thread Safety: thread-safe. One instance per collection; changes are
    dispatched on a single worker thread, so a slow handler delays the next
    change.

    Example:
        >>> watcher = ChangeStreamWatcher(
        ...     collection=db['users'],
        ...     config=CDCConfig(full_document="updateLookup"),
        ...     hooks=UserHooks()
        ... )
        >>> watcher.register_handler(AuditHandler())
        >>> watcher.start()
        >>> ...
        >>> watcher.stop()
    """

    join_timeout = 10.0

    def __init__(
        self,
        collection,
        config: Optional[CDCConfig] = None,
        hooks: Optional[OperationHooks] = None,
        handlers: Optional[Iterable[Any]] = None,
        queue_size: int = 1000
    ):
        """
        Initialize changestream watcher.

        Args:
            collection: PyMongo collection (anything with ``watch()``)
            config: CDC configuration (defaults when None)
            hooks: Operation hooks run before handlers
            handlers: Handlers to register immediately
            queue_size: Max changes buffered between reader and worker

        Raises:
            TypeError: If collection has no watch() method
            ValueError: If queue_size is not positive
        """
        if not callable(getattr(collection, "watch", None)):
            raise TypeError("collection must be a PyMongo Collection (missing watch())")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self.collection = collection
        self.config = config or CDCConfig()
        self.collection_name = getattr(collection, "name", None) or "unknown"
        self.queue_size = queue_size

        self._lock = threading.RLock()
        self._position_lock = threading.Lock()
        self._resume_token: Any = None

        self._registry = HandlerRegistry()
        self._controller = ReconnectionController(self.config, self._lock, self.collection_name)
        self._dispatcher = EventDispatcher(
            self._registry,
            record_position=self._record_position,
            hooks=hooks,
            collection_name=self.collection_name
        )

        self._subscription: Optional[ChangeStreamSubscription] = None
        self._signals: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None

        for handler in handlers or ():
            self.register_handler(handler)

        logger.info(
            f"Initialized ChangeStreamWatcher for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "full_document": self.config.full_document.value,
                "auto_reconnect": self.config.auto_reconnect,
                "max_reconnect_attempts": self.config.max_reconnect_attempts
            }
        )

    # Lifecycle

    def start(self) -> None:
        """
        Open the changestream and start dispatching (non-blocking).

        A second call while running only logs a warning.

        Raises:
            PyMongoError: If the stream cannot be opened; the watcher stays stopped
            TypeError: If the driver rejects the configured options
        """
        with self._lock:
            if self._controller.state != WatchState.STOPPED:
                logger.warning(
                    str(AlreadyWatchingError(
                        f"Watcher for {self.collection_name} is already {self._controller.state.value}"
                    )),
                    extra={"collection": self.collection_name}
                )
                return

            signals: queue.Queue = queue.Queue(maxsize=self.queue_size)
            self._signals = signals
            try:
                subscription = self._open_subscription()
            except Exception as e:
                self._signals = None
                logger.error(
                    f"Failed to start changestream watcher: {e}",
                    extra={"collection": self.collection_name, "error_type": type(e).__name__}
                )
                raise

            self._subscription = subscription
            self._controller.mark_watching()
            cdc_watching.labels(collection=self.collection_name).set(1)

            self._worker = threading.Thread(
                target=self._run_worker,
                args=(signals,),
                name=f"mongocdc-worker-{self.collection_name}",
                daemon=True
            )
            self._worker.start()

        logger.info(
            "Changestream watcher started",
            extra={"collection": self.collection_name}
        )

    def stop(self) -> None:
        """
        Close the changestream and stop dispatching.

        Cancels a pending reconnect. Calling it while stopped only logs a
        warning. Safe to call from inside a handler.
        """
        with self._lock:
            if self._controller.state == WatchState.STOPPED:
                logger.warning(
                    str(NotWatchingError(f"Watcher for {self.collection_name} is not watching")),
                    extra={"collection": self.collection_name}
                )
                return

            self._controller.mark_stopped()
            subscription, self._subscription = self._subscription, None
            signals, self._signals = self._signals, None
            worker, self._worker = self._worker, None
            cdc_watching.labels(collection=self.collection_name).set(0)

        if subscription is not None:
            subscription.close()
        if signals is not None:
            self._post_shutdown(signals)
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=self.join_timeout)

        logger.info(
            "Changestream watcher stopped",
            extra={"collection": self.collection_name, "resume_token": str(self.get_resume_token())}
        )

    def shutdown(self) -> None:
        """Host shutdown hook: stop if running, silently otherwise."""
        if self.state != WatchState.STOPPED:
            self.stop()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the watcher stops (stop(), or reconnect budget spent).

        Returns:
            True if the watcher is stopped
        """
        with self._lock:
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
        return self.state == WatchState.STOPPED

    def __enter__(self) -> "ChangeStreamWatcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    # Handlers

    def register_handler(self, handler: Any) -> None:
        """Register a handler; registering the same object twice is a no-op."""
        self._registry.register(handler)

    def unregister_handler(self, handler: Any) -> None:
        """Unregister a handler; it will not see any later change."""
        self._registry.unregister(handler)

    # Introspection

    @property
    def state(self) -> WatchState:
        return self._controller.state

    @property
    def reconnect_attempts(self) -> int:
        return self._controller.attempts

    def is_watching(self) -> bool:
        return self._controller.state == WatchState.WATCHING

    def get_resume_token(self) -> Any:
        """Last resume token seen, or None. Treat it as opaque."""
        with self._position_lock:
            return self._resume_token

    def get_status(self) -> Dict[str, Any]:
        """Current watcher status."""
        last_error = self._controller.last_error
        return {
            "collection": self.collection_name,
            "state": self.state.value,
            "watching": self.is_watching(),
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.config.max_reconnect_attempts,
            "handlers": len(self._registry),
            "events_dispatched": self._dispatcher.events_dispatched,
            "resume_token": self.get_resume_token(),
            "last_error": str(last_error) if last_error else None,
        }

    # Internals

    def _record_position(self, token: Any) -> None:
        with self._position_lock:
            self._resume_token = token

    def _open_subscription(self) -> ChangeStreamSubscription:
        # Caller holds the lock
        subscription = ChangeStreamSubscription(
            self.collection,
            self.config.watch_pipeline(),
            self.config.watch_kwargs(self.get_resume_token()),
            self._signals,
            collection_name=self.collection_name
        )
        subscription.open()
        return subscription

    def _reopen(self) -> bool:
        with self._lock:
            if self._controller.state != WatchState.RECONNECTING:
                return False
            self._subscription = self._open_subscription()
            self._controller.mark_watching()
            cdc_watching.labels(collection=self.collection_name).set(1)
            return True

    def _post_shutdown(self, signals: queue.Queue) -> None:
        try:
            signals.put_nowait(_SHUTDOWN)
        except queue.Full:
            # The worker checks for retirement after every signal
            pass

    def _is_current(self, signals: queue.Queue) -> bool:
        with self._lock:
            return self._signals is signals

    def _run_worker(self, signals: queue.Queue) -> None:
        while True:
            signal = signals.get()
            if signal is _SHUTDOWN or not self._is_current(signals):
                break

            with self._lock:
                current_id = self._subscription.id if self._subscription else None
            if signal.subscription_id != current_id:
                logger.debug(
                    f"Dropping {signal.kind.value} from superseded subscription {signal.subscription_id}",
                    extra={"collection": self.collection_name}
                )
                continue

            try:
                self._handle_signal(signal)
            except Exception as e:
                logger.error(
                    f"Unexpected error handling {signal.kind.value} signal: {e}",
                    exc_info=True,
                    extra={"collection": self.collection_name, "error_type": type(e).__name__}
                )
                self._handle_feed_failure(e, closed=False)

            if not self._is_current(signals):
                break

        logger.debug("Worker exited", extra={"collection": self.collection_name})

    def _handle_signal(self, signal: FeedSignal) -> None:
        if signal.kind == SignalKind.CHANGE:
            error = self._dispatcher.dispatch(signal.payload)
            if error is not None:
                self._handle_feed_failure(error, closed=False)
        elif signal.kind == SignalKind.ERROR:
            self._handle_feed_failure(signal.payload, closed=False)
        else:
            self._handle_feed_failure(
                SubscriptionClosedError("Changestream closed unexpectedly"), closed=True
            )

    def _handle_feed_failure(self, error: BaseException, closed: bool) -> None:
        """WATCHING -> RECONNECTING, notify handlers, then try to recover."""
        with self._lock:
            if not self._controller.begin(error):
                return
            subscription, self._subscription = self._subscription, None
            signals = self._signals
            cdc_watching.labels(collection=self.collection_name).set(0)

        if subscription is not None:
            try:
                subscription.close()
            except Exception as e:
                logger.warning(
                    f"Error releasing failed changestream: {e}",
                    extra={"collection": self.collection_name, "error_type": type(e).__name__}
                )

        cdc_feed_errors.labels(
            collection=self.collection_name,
            error_type="close" if closed else type(error).__name__
        ).inc()

        if closed:
            logger.info("Change stream closed", extra={"collection": self.collection_name})
            self._registry.notify_close()
        else:
            logger.error(
                f"CDC watcher error: {error}",
                extra={"collection": self.collection_name, "error_type": type(error).__name__}
            )
            self._registry.notify_error(error)

        if self._controller.run(self._reopen):
            return

        with self._lock:
            if self._signals is signals and self._controller.state == WatchState.STOPPED:
                # Budget spent: retire this worker
                self._signals = None
                self._worker = None
