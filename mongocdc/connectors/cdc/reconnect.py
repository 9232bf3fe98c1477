"""
Reconnection state machine for the change stream watcher.

States:
    WATCHING      a change stream is open
    RECONNECTING  the stream failed or closed by itself; waiting to reopen
    STOPPED       no stream; only start() leaves this state

The retry loop is explicit, so a server that keeps refusing connections
cannot grow the stack.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Optional

from .errors import ReconnectExhaustedError
from .metrics import cdc_reconnect_attempts
from .options import CDCConfig

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    """Watcher lifecycle states."""
    WATCHING = "watching"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


class ReconnectionController:
    """
    Owns the watcher state and the reconnect attempt counter.

    Thread Safety: all transitions happen under the lock shared with the
    watcher, so start()/stop() from other threads see a consistent state.
    """

    def __init__(
        self,
        config: CDCConfig,
        lock: threading.RLock,
        collection_name: str = "unknown"
    ):
        self.config = config
        self.collection_name = collection_name
        self._lock = lock
        self._state = WatchState.STOPPED
        self._attempts = 0
        self._cancel = threading.Event()
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> WatchState:
        with self._lock:
            return self._state

    @property
    def attempts(self) -> int:
        with self._lock:
            return self._attempts

    def mark_watching(self) -> None:
        """A stream is open: forgive earlier failures."""
        with self._lock:
            self._state = WatchState.WATCHING
            self._attempts = 0

    def mark_stopped(self) -> None:
        """Explicit stop: cancel any pending reconnect wait."""
        with self._lock:
            self._state = WatchState.STOPPED
            self._cancel.set()

    def begin(self, error: BaseException) -> bool:
        """
        Enter RECONNECTING after a feed error or unsolicited close.

        Returns:
            False if the watcher was not WATCHING (already stopped or
            already recovering), in which case nothing should be done
        """
        with self._lock:
            if self._state != WatchState.WATCHING:
                return False
            self._state = WatchState.RECONNECTING
            self._cancel = threading.Event()
            self.last_error = error
            return True

    def should_reconnect(self) -> bool:
        with self._lock:
            if not self.config.auto_reconnect:
                return False
            return self.config.unlimited_reconnects or self._attempts < self.config.max_reconnect_attempts

    def run(self, reopen: Callable[[], bool]) -> bool:
        """
        Retry until reopened, out of budget, or stopped.

        Args:
            reopen: Opens a new stream and marks the watcher WATCHING.
                Returns False if the watcher left RECONNECTING meanwhile;
                raises if the stream could not be opened.

        Returns:
            True if the stream was reopened
        """
        while True:
            with self._lock:
                if self._state != WatchState.RECONNECTING:
                    return False
                if not self.should_reconnect():
                    self._give_up()
                    return False
                self._attempts += 1
                attempt = self._attempts
                cancel = self._cancel

            max_attempts = self.config.max_reconnect_attempts or '∞'
            logger.info(
                f"Attempting to reconnect ({attempt}/{max_attempts}) in {self.config.reconnect_delay}s",
                extra={
                    "collection": self.collection_name,
                    "attempt": attempt,
                    "delay_seconds": self.config.reconnect_delay
                }
            )

            if cancel.wait(self.config.reconnect_delay):
                logger.info(
                    "Reconnect cancelled by stop()",
                    extra={"collection": self.collection_name, "attempt": attempt}
                )
                return False

            try:
                reopened = reopen()
            except Exception as e:
                self.last_error = e
                cdc_reconnect_attempts.labels(
                    collection=self.collection_name, outcome="failed"
                ).inc()
                logger.error(
                    f"Reconnection failed: {e}",
                    extra={
                        "collection": self.collection_name,
                        "attempt": attempt,
                        "error_type": type(e).__name__
                    }
                )
                continue

            if not reopened:
                return False

            cdc_reconnect_attempts.labels(
                collection=self.collection_name, outcome="succeeded"
            ).inc()
            logger.info(
                "Reconnected successfully",
                extra={"collection": self.collection_name, "attempt": attempt}
            )
            return True

    def _give_up(self) -> None:
        # Caller holds the lock
        self._state = WatchState.STOPPED
        if not self.config.auto_reconnect:
            logger.warning(
                "Auto-reconnect disabled, watcher stopped",
                extra={"collection": self.collection_name}
            )
            return

        exhausted = ReconnectExhaustedError(self._attempts, self.config.max_reconnect_attempts)
        self.last_error = exhausted
        logger.error(
            str(exhausted),
            extra={
                "collection": self.collection_name,
                "attempts": self._attempts,
                "max_attempts": self.config.max_reconnect_attempts
            }
        )
