"""
Per-operation hooks run by the dispatcher before registered handlers.

Pass an ``OperationHooks`` subclass to the watcher to act on specific
operations; every method defaults to a debug log line.

Example:
    >>> class UserHooks(OperationHooks):
    ...     def on_insert(self, event):
    ...         send_welcome_email(event.full_document["email"])
    >>> watcher = ChangeStreamWatcher(users, hooks=UserHooks())
"""

import logging
from typing import Any

from .models import ChangeEvent, ChangeOperationType
from ...mongodb.connection import serialize_doc

logger = logging.getLogger(__name__)


class OperationHooks:
    """Strategy with one method per operation kind. All default to logging only."""

    def on_insert(self, event: ChangeEvent) -> Any:
        logger.debug(f"Insert operation: {serialize_doc(event.document_key)}")

    def on_update(self, event: ChangeEvent) -> Any:
        logger.debug(f"Update operation: {serialize_doc(event.document_key)}")

    def on_replace(self, event: ChangeEvent) -> Any:
        logger.debug(f"Replace operation: {serialize_doc(event.document_key)}")

    def on_delete(self, event: ChangeEvent) -> Any:
        logger.debug(f"Delete operation: {serialize_doc(event.document_key)}")

    def on_other(self, event: ChangeEvent) -> Any:
        """Drop, rename, dropDatabase, invalidate and unrecognized operations."""
        logger.debug(f"Other operation: {event.raw_operation_type}")

    def hook_for(self, operation_type: ChangeOperationType):
        """Return the bound hook that handles ``operation_type``."""
        if operation_type == ChangeOperationType.INSERT:
            return self.on_insert
        if operation_type == ChangeOperationType.UPDATE:
            return self.on_update
        if operation_type == ChangeOperationType.REPLACE:
            return self.on_replace
        if operation_type == ChangeOperationType.DELETE:
            return self.on_delete
        return self.on_other
