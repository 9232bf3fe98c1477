"""
Turns raw change documents into ChangeEvents and routes them.

For each change the dispatcher:
1. Records the resume token (before anything else can fail)
2. Normalizes the document into a ChangeEvent
3. Runs the matching operation hook
4. Calls ``on_event`` on every registered handler, in order

Handler failures are isolated. Normalization and hook failures are returned
to the caller so they can be treated like a feed error.
"""

import logging
import time
from typing import Any, Callable, Mapping, Optional

from .errors import ChangeNormalizationError
from .handlers import HandlerRegistry, resolve
from .hooks import OperationHooks
from .metrics import cdc_dispatch_duration, cdc_events_processed, cdc_handler_failures
from .models import ChangeEvent, ChangeOperationType
from ...utils.logging import CorrelationContext

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Routes one change at a time to hooks and handlers."""

    def __init__(
        self,
        registry: HandlerRegistry,
        record_position: Callable[[Any], None],
        hooks: Optional[OperationHooks] = None,
        collection_name: str = "unknown"
    ):
        """
        Initialize dispatcher.

        Args:
            registry: Handlers notified after the operation hook
            record_position: Called with each change's resume token
            hooks: Operation hooks (log-only defaults when None)
            collection_name: Label used in logs and metrics
        """
        self.registry = registry
        self.hooks = hooks or OperationHooks()
        self.collection_name = collection_name
        self._record_position = record_position
        self.events_dispatched = 0

    def dispatch(self, change: Mapping[str, Any]) -> Optional[Exception]:
        """
        Dispatch a single raw change.

        Args:
            change: Raw change stream document

        Returns:
            The normalization or hook error, if one occurred, else None
        """
        token = change.get("_id") if isinstance(change, Mapping) else None
        if token is not None:
            self._record_position(token)

        with CorrelationContext():
            started = time.time()

            try:
                event = ChangeEvent.from_change(change)
            except ChangeNormalizationError as e:
                logger.error(
                    f"Could not normalize change: {e}",
                    extra={"collection": self.collection_name}
                )
                cdc_handler_failures.labels(
                    collection=self.collection_name, stage="normalize"
                ).inc()
                return e

            if event.operation_type == ChangeOperationType.UNKNOWN:
                logger.warning(
                    f"Unrecognized operation type {event.raw_operation_type!r}, routing to other hook",
                    extra={"collection": self.collection_name}
                )

            hook_error = self._run_hook(event)

            failures = self.registry.notify_event(event)
            if failures:
                cdc_handler_failures.labels(
                    collection=self.collection_name, stage="handler"
                ).inc(failures)

            self.events_dispatched += 1
            cdc_events_processed.labels(
                collection=self.collection_name,
                operation=event.operation_type.value
            ).inc()
            cdc_dispatch_duration.labels(collection=self.collection_name).observe(
                time.time() - started
            )

            return hook_error

    def _run_hook(self, event: ChangeEvent) -> Optional[Exception]:
        hook = self.hooks.hook_for(event.operation_type)
        try:
            resolve(hook(event))
        except Exception as e:
            logger.error(
                f"Error in {hook.__name__} hook: {e}",
                exc_info=True,
                extra={
                    "collection": self.collection_name,
                    "operation": event.operation_type.value
                }
            )
            cdc_handler_failures.labels(
                collection=self.collection_name, stage="hook"
            ).inc()
            return e
        return None
