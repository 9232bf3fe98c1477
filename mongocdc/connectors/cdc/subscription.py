"""
One open MongoDB change stream and the thread that reads it.

The reader thread never dispatches anything itself. It turns everything the
stream produces into FeedSignals on a queue that the watcher's single worker
consumes in order.
"""

import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


class SignalKind(str, Enum):
    """What a subscription can report."""
    CHANGE = "change"
    ERROR = "error"
    CLOSE = "close"


@dataclass(frozen=True)
class FeedSignal:
    """A change, error or close reported by one subscription."""
    kind: SignalKind
    subscription_id: int
    payload: Any = None


class ChangeStreamSubscription:
    """
    Wraps ``collection.watch()`` and a reader thread.

    ``open()`` runs in the caller's thread, so invalid options fail there.
    A ``close()`` requested by the watcher is never reported as a CLOSE signal;
    only a stream that ends by itself (for example after ``invalidate``) is.
    """

    # How often a reader blocked on a full queue re-checks for close()
    put_timeout = 0.1
    join_timeout = 5.0

    def __init__(
        self,
        collection,
        pipeline: List[Dict[str, Any]],
        watch_kwargs: Dict[str, Any],
        signals: queue.Queue,
        collection_name: str = "unknown"
    ):
        self.id = next(_subscription_ids)
        self.collection = collection
        self.pipeline = pipeline
        self.watch_kwargs = watch_kwargs
        self.collection_name = collection_name
        self._signals = signals
        self._stream = None
        self._thread: Optional[threading.Thread] = None
        self._closing = threading.Event()
        self._stream_closed = False
        self._close_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._stream is not None and not self._closing.is_set()

    def open(self) -> None:
        """
        Open the change stream and start the reader thread.

        Raises:
            PyMongoError: If the server rejects the request
            TypeError: If the options are not accepted by the driver
        """
        logger.info(
            f"Opening changestream for collection {self.collection_name}",
            extra={
                "collection": self.collection_name,
                "subscription_id": self.id,
                "has_resume_token": "resume_after" in self.watch_kwargs
            }
        )
        self._stream = self.collection.watch(self.pipeline, **self.watch_kwargs)

        self._thread = threading.Thread(
            target=self._read_loop,
            name=f"mongocdc-reader-{self.collection_name}-{self.id}",
            daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop the reader and close the stream. Safe to call more than once."""
        if self._closing.is_set():
            return
        self._closing.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                logger.warning(
                    f"Reader thread for subscription {self.id} did not exit in time",
                    extra={"collection": self.collection_name, "subscription_id": self.id}
                )
        self._close_stream()

    def _close_stream(self) -> None:
        with self._close_lock:
            if self._stream is None or self._stream_closed:
                return
            self._stream_closed = True
        try:
            self._stream.close()
        except PyMongoError as e:
            logger.warning(
                f"Error closing changestream: {e}",
                extra={"collection": self.collection_name, "subscription_id": self.id}
            )

    def _read_loop(self) -> None:
        stream = self._stream
        try:
            while not self._closing.is_set() and stream.alive:
                change = stream.try_next()
                if change is not None:
                    self._emit(SignalKind.CHANGE, change)
        except Exception as e:
            if not self._closing.is_set():
                logger.warning(
                    f"Changestream error: {e}",
                    extra={
                        "collection": self.collection_name,
                        "subscription_id": self.id,
                        "error_type": type(e).__name__
                    }
                )
                self._emit(SignalKind.ERROR, e)
            return
        finally:
            self._close_stream()

        if not self._closing.is_set():
            logger.info(
                "Changestream closed by server",
                extra={"collection": self.collection_name, "subscription_id": self.id}
            )
            self._emit(SignalKind.CLOSE)

    def _emit(self, kind: SignalKind, payload: Any = None) -> None:
        signal = FeedSignal(kind=kind, subscription_id=self.id, payload=payload)
        while not self._closing.is_set():
            try:
                self._signals.put(signal, timeout=self.put_timeout)
                return
            except queue.Full:
                continue
