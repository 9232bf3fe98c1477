"""
Change event handlers and the registry that tracks them.

A handler is any object with an ``on_event(event)`` method and, optionally,
``on_error(error)`` and ``on_close()``. Each may be a plain function or a
coroutine function; coroutines are run to completion before the next handler
is called.
"""

import asyncio
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .models import ChangeEvent

logger = logging.getLogger(__name__)


class CDCEventHandler:
    """
    Base class for change event observers.

    Subclasses must implement ``on_event``. ``on_error`` and ``on_close``
    default to doing nothing. Any of the three may be declared ``async``.

    Example:
        >>> class AuditHandler(CDCEventHandler):
        ...     def on_event(self, event):
        ...         audit_log.append(event.to_dict())
        >>> watcher.register_handler(AuditHandler())
    """

    def on_event(self, event: ChangeEvent) -> Any:
        raise NotImplementedError

    def on_error(self, error: Exception) -> Any:
        pass

    def on_close(self) -> Any:
        pass


_loops = threading.local()


def _thread_loop() -> asyncio.AbstractEventLoop:
    """Event loop private to the calling thread, created on first use."""
    loop = getattr(_loops, "loop", None)
    if loop is None or loop.is_closed():
        loop = asyncio.new_event_loop()
        _loops.loop = loop
    return loop


def resolve(result: Any) -> Any:
    """Wait for ``result`` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(result):
        return _thread_loop().run_until_complete(_as_coroutine(result))
    return result


async def _as_coroutine(awaitable: Awaitable) -> Any:
    return await awaitable


def _handler_name(handler: Any) -> str:
    return getattr(handler, "__name__", None) or handler.__class__.__name__


class HandlerRegistry:
    """
    Ordered, thread-safe set of handlers.

    Dispatch always iterates a snapshot taken when the dispatch starts, so a
    handler may unregister itself (or any other handler) from inside a
    callback without disturbing the rest of that dispatch.
    """

    def __init__(self):
        self._handlers: List[Any] = []
        self._lock = threading.Lock()

    def register(self, handler: Any) -> bool:
        """
        Add a handler at the end of the dispatch order.

        Args:
            handler: Object exposing ``on_event``

        Returns:
            False if the handler was already registered

        Raises:
            TypeError: If the handler has no callable ``on_event``
        """
        if not callable(getattr(handler, "on_event", None)):
            raise TypeError("handler must define an on_event(event) method")

        with self._lock:
            if any(existing is handler for existing in self._handlers):
                return False
            self._handlers.append(handler)

        logger.debug(f"Event handler registered: {_handler_name(handler)}")
        return True

    def unregister(self, handler: Any) -> bool:
        """Remove a handler. Returns False if it was not registered."""
        with self._lock:
            for index, existing in enumerate(self._handlers):
                if existing is handler:
                    del self._handlers[index]
                    break
            else:
                return False

        logger.debug(f"Event handler unregistered: {_handler_name(handler)}")
        return True

    def snapshot(self) -> Tuple[Any, ...]:
        with self._lock:
            return tuple(self._handlers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __contains__(self, handler: Any) -> bool:
        with self._lock:
            return any(existing is handler for existing in self._handlers)

    def notify_event(self, event: ChangeEvent) -> int:
        """Call ``on_event`` on every handler. Returns the number that failed."""
        return self._notify("on_event", (event,), required=True)

    def notify_error(self, error: Exception) -> int:
        """Call ``on_error`` on every handler that defines it."""
        return self._notify("on_error", (error,))

    def notify_close(self) -> int:
        """Call ``on_close`` on every handler that defines it."""
        return self._notify("on_close", ())

    def _notify(self, method: str, args: tuple, required: bool = False) -> int:
        failures = 0
        for handler in self.snapshot():
            callback: Optional[Callable] = getattr(handler, method, None)
            if callback is None:
                if required:
                    logger.warning(f"Handler {_handler_name(handler)} has no {method}")
                continue
            try:
                resolve(callback(*args))
            except Exception as e:
                failures += 1
                logger.error(
                    f"Error in {method} of handler {_handler_name(handler)}: {e}",
                    exc_info=True,
                    extra={"handler": _handler_name(handler), "callback": method}
                )
        return failures
