"""
Exception types raised or logged by the CDC engine.
"""


class CDCError(Exception):
    """Base exception for CDC errors."""
    pass


class AlreadyWatchingError(CDCError):
    """start() called while the watcher is already running."""
    pass


class NotWatchingError(CDCError):
    """stop() called while the watcher is not running."""
    pass


class ChangeNormalizationError(CDCError):
    """A raw change document could not be turned into a ChangeEvent."""
    pass


class SubscriptionClosedError(CDCError):
    """The change stream was closed without being asked to."""
    pass


class ReconnectExhaustedError(CDCError):
    """
    The reconnect budget ran out.

    Never raised to callers; it is built so the terminal condition can be
    logged and inspected the same way as other CDC errors.
    """

    def __init__(self, attempts: int, max_attempts: int):
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            f"Maximum reconnection attempts reached ({attempts}/{max_attempts})"
        )
