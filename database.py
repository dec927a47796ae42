"""
MongoDB access.

Each collection is named after the lowercase schema class in ``schemas.py``
(``Cart`` -> ``cart``). Modules import ``database`` and reach the handle as
``database.db`` so tests can swap it for an in-memory client.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import ValidationError

logger = logging.getLogger("artify.database")

client = MongoClient(config.MONGO_URL, serverSelectionTimeoutMS=5000, tz_aware=True)
db = client[config.DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Stored datetimes may come back naive depending on the client; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    doc.setdefault("created_at", now())
    doc["updated_at"] = now()
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def to_object_id(value: Any, label: str = "record") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label} ID format", reason="invalid_id")


def serialize(value: Any) -> Any:
    """Make a stored document JSON-safe; ``_id`` becomes ``id``."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, val in value.items():
            out["id" if key == "_id" else key] = serialize(val)
        return out
    return value


def ensure_indexes() -> None:
    db["cart"].create_index([("user", ASCENDING)], unique=True)
    db["coupon"].create_index([("code", ASCENDING)], unique=True)
    db["coupon"].create_index([("code", ASCENDING), ("isActive", ASCENDING)])
    db["order"].create_index([("paymentIntentId", ASCENDING)], unique=True)
    db["order"].create_index([("user", ASCENDING)])
    db["order"].create_index([("created_at", DESCENDING)])
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["payment_event"].create_index([("paymentIntentId", ASCENDING)])
    logger.info("Indexes ensured on %s", db.name)
