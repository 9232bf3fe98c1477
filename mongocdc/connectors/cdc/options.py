"""
Change stream watcher options.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ...config.settings import CDCSettings


class FullDocumentMode(str, Enum):
    """Lookup mode controlling when a change carries the full document."""
    DEFAULT = "default"
    UPDATE_LOOKUP = "updateLookup"
    WHEN_AVAILABLE = "whenAvailable"
    REQUIRED = "required"


@dataclass(frozen=True)
class CDCConfig:
    """Configuration for the change stream watcher."""
    full_document: FullDocumentMode = FullDocumentMode.UPDATE_LOOKUP
    pipeline: Optional[Sequence[Dict[str, Any]]] = None  # Changestream filter pipeline
    resume_after: Any = None  # Opaque resume token to start from
    start_at_operation_time: Any = None  # bson.Timestamp
    batch_size: Optional[int] = None
    max_await_time_ms: Optional[int] = None
    auto_reconnect: bool = True
    reconnect_delay: float = 1.0  # Seconds between reopen attempts
    max_reconnect_attempts: int = 5  # 0 = unlimited
    change_stream_options: Mapping[str, Any] = field(default_factory=dict)  # Extra watch() kwargs

    def __post_init__(self):
        """Validate configuration values."""
        if not isinstance(self.full_document, FullDocumentMode):
            try:
                object.__setattr__(self, "full_document", FullDocumentMode(self.full_document))
            except ValueError:
                raise ValueError(
                    f"full_document must be one of: {[m.value for m in FullDocumentMode]}"
                ) from None
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.max_await_time_ms is not None and self.max_await_time_ms <= 0:
            raise ValueError("max_await_time_ms must be positive")
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay must be non-negative")
        if self.max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be non-negative")
        if self.pipeline is not None and not isinstance(self.pipeline, (list, tuple)):
            raise ValueError("pipeline must be a list of stages")

        # Detached from the caller's list and dict
        if self.pipeline is not None:
            object.__setattr__(self, "pipeline", tuple(copy.deepcopy(list(self.pipeline))))
        object.__setattr__(
            self, "change_stream_options",
            MappingProxyType(copy.deepcopy(dict(self.change_stream_options)))
        )

    @classmethod
    def from_settings(cls, settings: CDCSettings, **overrides: Any) -> "CDCConfig":
        """Build options from environment-backed settings."""
        values = dict(
            full_document=settings.full_document,
            batch_size=settings.batch_size,
            max_await_time_ms=settings.max_await_time_ms,
            auto_reconnect=settings.auto_reconnect,
            reconnect_delay=settings.reconnect_delay,
            max_reconnect_attempts=settings.max_reconnect_attempts,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def unlimited_reconnects(self) -> bool:
        return self.max_reconnect_attempts == 0

    def watch_pipeline(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(list(self.pipeline or ()))

    def watch_kwargs(self, resume_token: Any = None) -> Dict[str, Any]:
        """
        Build keyword arguments for ``Collection.watch``.

        A known resume token (from an earlier session) wins over the configured
        starting point. The server refuses a request carrying both a resume
        token and ``start_at_operation_time``, so the latter is only sent when
        there is nothing to resume from.

        Args:
            resume_token: Last token seen by this watcher, if any

        Returns:
            Dict of keyword arguments
        """
        kwargs: Dict[str, Any] = dict(self.change_stream_options)
        kwargs["full_document"] = self.full_document.value

        token = resume_token if resume_token is not None else self.resume_after
        if token is not None:
            kwargs["resume_after"] = token
        elif self.start_at_operation_time is not None:
            kwargs["start_at_operation_time"] = self.start_at_operation_time

        if self.batch_size:
            kwargs["batch_size"] = self.batch_size
        if self.max_await_time_ms:
            kwargs["max_await_time_ms"] = self.max_await_time_ms

        return kwargs
