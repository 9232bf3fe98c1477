from typing import Any, Dict, Optional
import pymongo
from pymongo.collection import Collection
from bson import ObjectId, Binary, Decimal128, Timestamp
from bson.json_util import default as bson_default
from datetime import datetime as py_datetime
import base64

from ..config.settings import MongoSettings


def get_client(mongo_uri: str, settings: Optional[MongoSettings] = None) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Importing pymongo.MongoClient at call time allows tests to monkeypatch
    `pymongo.MongoClient` and have our code pick it up.
    """
    settings = settings or MongoSettings()
    client = pymongo.MongoClient(
        mongo_uri,
        connectTimeoutMS=settings.connect_timeout * 1000,
        serverSelectionTimeoutMS=settings.server_selection_timeout * 1000,
        maxPoolSize=settings.max_pool_size,
    )
    return client


def get_collection(client: pymongo.MongoClient, database: str, collection: str) -> Collection:
    """Return the collection a change stream will be opened against."""
    return client[database][collection]


def open_collection(settings: MongoSettings) -> Collection:
    """Connect using the configured URI and return the configured collection."""
    client = get_client(settings.uri, settings)
    return get_collection(client, settings.database, settings.collection)


def _serialize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Binary):
        # Encode binary as base64 string with type info
        return {
            "$binary": {
                "base64": base64.b64encode(bytes(value)).decode('utf-8'),
                "subType": "%02x" % value.subtype
            }
        }
    if isinstance(value, py_datetime):
        return value.isoformat()
    if isinstance(value, Decimal128):
        # String keeps the precision
        return str(value)
    if isinstance(value, Timestamp):
        return {"$timestamp": {"t": value.time, "i": value.inc}}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    try:
        return bson_default(value)
    except (TypeError, ValueError):
        return str(value)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Recursively serialize a MongoDB document to JSON-serializable format.

    Handles:
    - ObjectId -> string
    - Binary -> base64 encoded string with metadata
    - datetime -> ISO format string
    - Decimal128 -> string
    - Timestamp -> {"$timestamp": {"t": ..., "i": ...}}
    - Other BSON types -> bson.json_util representation
    """
    if not isinstance(doc, dict):
        return doc
    return {key: _serialize_value(value) for key, value in doc.items()}


def serialize_value(value: Any) -> Any:
    """Serialize any BSON value (document or scalar) to a JSON-friendly form."""
    return _serialize_value(value)
