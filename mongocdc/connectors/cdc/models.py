"""
Normalized change event model.

Raw MongoDB change documents are turned into ChangeEvent instances before any
hook or handler sees them, so consumers never depend on the driver's
document layout.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import ChangeNormalizationError
from ...mongodb.connection import serialize_doc, serialize_value


class ChangeOperationType(str, Enum):
    """Change stream operation types."""
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    DROP = "drop"
    RENAME = "rename"
    DROP_DATABASE = "dropDatabase"
    INVALIDATE = "invalidate"
    UNKNOWN = "unknown"  # Anything the server added after this list was written

    @classmethod
    def parse(cls, value: str) -> "ChangeOperationType":
        """Map a wire value to a member, falling back to UNKNOWN."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Namespace:
    """Database and collection a change happened in."""
    database: str
    collection: Optional[str] = None

    def __str__(self) -> str:
        if self.collection:
            return f"{self.database}.{self.collection}"
        return self.database


@dataclass
class UpdateDescription:
    """Fields touched by an update operation."""
    updated_fields: Dict[str, Any] = field(default_factory=dict)
    removed_fields: List[str] = field(default_factory=list)
    truncated_arrays: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_change(cls, raw: Mapping[str, Any]) -> "UpdateDescription":
        """
        Raises:
            ChangeNormalizationError: If a field does not have the driver's shape
        """
        if not isinstance(raw, Mapping):
            raise ChangeNormalizationError(
                f"updateDescription must be a mapping, got {type(raw).__name__}"
            )
        updated = raw.get("updatedFields") or {}
        if not isinstance(updated, Mapping):
            raise ChangeNormalizationError("updateDescription.updatedFields must be a mapping")
        for key in ("removedFields", "truncatedArrays"):
            if not isinstance(raw.get(key) or [], (list, tuple)):
                raise ChangeNormalizationError(f"updateDescription.{key} must be a list")

        return cls(
            updated_fields=dict(updated),
            removed_fields=list(raw.get("removedFields") or []),
            truncated_arrays=list(raw.get("truncatedArrays") or []),
        )


@dataclass
class ChangeEvent:
    """
    Unified change event passed to hooks and handlers.

    ``update_description`` is only ever set for updates. ``full_document`` can
    be missing for any operation, depending on the lookup mode and on whether
    the server could still find the document.
    """
    operation_type: ChangeOperationType
    document_key: Optional[Dict[str, Any]] = None
    full_document: Optional[Dict[str, Any]] = None
    update_description: Optional[UpdateDescription] = None
    namespace: Optional[Namespace] = None
    cluster_time: Any = None
    raw_operation_type: Optional[str] = None

    def __str__(self) -> str:
        return f"ChangeEvent({self.raw_operation_type or self.operation_type.value} on {self.namespace})"

    @classmethod
    def from_change(cls, change: Mapping[str, Any]) -> "ChangeEvent":
        """
        Build an event from a raw change stream document.

        Args:
            change: Document as yielded by ``ChangeStream.try_next()``

        Returns:
            Normalized ChangeEvent

        Raises:
            ChangeNormalizationError: If the document has no operation type
                or is not a mapping, or if ``ns``,
                ``documentKey``, ``fullDocument`` or ``updateDescription`` has
                the wrong shape
        """
        if not isinstance(change, Mapping):
            raise ChangeNormalizationError(
                f"Change must be a mapping, got {type(change).__name__}"
            )

        raw_type = change.get("operationType")
        if not raw_type:
            raise ChangeNormalizationError("Change document has no operationType")
        if not isinstance(raw_type, str):
            raise ChangeNormalizationError("operationType must be a string")

        operation_type = ChangeOperationType.parse(raw_type)

        for key in ("documentKey", "fullDocument"):
            if change.get(key) is not None and not isinstance(change.get(key), Mapping):
                raise ChangeNormalizationError(f"{key} must be a mapping")

        update_description = None
        if operation_type == ChangeOperationType.UPDATE:
            update_description = UpdateDescription.from_change(
                change.get("updateDescription") or {}
            )

        namespace = None
        ns = change.get("ns")
        if ns and not isinstance(ns, Mapping):
            raise ChangeNormalizationError(f"ns must be a mapping, got {type(ns).__name__}")
        if ns:
            namespace = Namespace(database=ns.get("db"), collection=ns.get("coll"))

        return cls(
            operation_type=operation_type,
            document_key=change.get("documentKey"),
            full_document=change.get("fullDocument"),
            update_description=update_description,
            namespace=namespace,
            cluster_time=change.get("clusterTime"),
            raw_operation_type=raw_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for logs and API responses."""
        data: Dict[str, Any] = {
            "operation_type": self.raw_operation_type or self.operation_type.value,
            "document_key": serialize_doc(self.document_key),
            "full_document": serialize_doc(self.full_document),
            "namespace": str(self.namespace) if self.namespace else None,
            "cluster_time": serialize_value(self.cluster_time),
        }
        if self.update_description is not None:
            data["update_description"] = {
                "updated_fields": serialize_doc(self.update_description.updated_fields),
                "removed_fields": list(self.update_description.removed_fields),
            }
        return data
