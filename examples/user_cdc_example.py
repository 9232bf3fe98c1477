#!/usr/bin/env python3
"""
Example: watch a users collection.

Shows the two ways to react to changes:
1. Operation hooks (one method per operation kind)
2. Registered handlers (see every event, plus errors and closes)

Run a replica set, then:
    MONGO_URI="mongodb://localhost:27017/?replicaSet=rs0" python examples/user_cdc_example.py
and in another shell:
    python scripts/cdc_data_generator.py --duration 60
"""

import logging
import signal

from mongocdc.config.settings import get_settings
from mongocdc.connectors.cdc import (
    CDCConfig, CDCEventHandler, ChangeEvent, ChangeStreamWatcher, OperationHooks
)
from mongocdc.mongodb.connection import open_collection
from mongocdc.utils.logging import configure_logging

logger = logging.getLogger("mongocdc.examples.users")


class UserHooks(OperationHooks):
    """React to specific user operations."""

    def on_insert(self, event: ChangeEvent):
        user = event.full_document
        if user:
            logger.info(f"New user created: {user.get('name')} ({user.get('email')})")

    def on_update(self, event: ChangeEvent):
        updated = event.update_description.updated_fields
        logger.info(f"User updated: {event.document_key}")
        if "email" in updated:
            logger.info(f"User email changed to: {updated['email']}")
        if "email" in event.update_description.removed_fields:
            logger.info("User email removed")

    def on_delete(self, event: ChangeEvent):
        logger.info(f"User deleted: {event.document_key.get('_id')}")


class AuditHandler(CDCEventHandler):
    """Keep an in-memory audit trail of every change."""

    def __init__(self):
        self.trail = []

    def on_event(self, event: ChangeEvent):
        self.trail.append(event.to_dict())

    def on_error(self, error: Exception):
        logger.warning(f"Audit trail may have a gap after error: {error}")

    def on_close(self):
        logger.info(f"Change stream closed after {len(self.trail)} audited changes")


def main():
    settings = get_settings()
    configure_logging(settings.log.level, settings.log.json_format)

    watcher = ChangeStreamWatcher(
        open_collection(settings.mongo),
        CDCConfig.from_settings(settings.cdc, max_reconnect_attempts=10, reconnect_delay=2.0),
        hooks=UserHooks(),
        handlers=[AuditHandler()]
    )

    signal.signal(signal.SIGTERM, lambda signum, frame: watcher.shutdown())
    watcher.start()
    try:
        while not watcher.join(timeout=1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        watcher.shutdown()
        logger.info(f"Last resume token: {watcher.get_resume_token()}")


if __name__ == "__main__":
    main()
