"""
MongoDB access helpers.

Collections: users, products, categories, orders, admins, counters.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from .config import Settings
from .errors import InvalidIdError


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["users"].create_index("telegramId", unique=True)
    db["users"].create_index([("lastActiveAt", DESCENDING)])
    db["products"].create_index("slug", unique=True)
    db["products"].create_index("categoryId")
    db["products"].create_index([("orderCount", DESCENDING)])
    db["categories"].create_index("slug", unique=True)
    db["orders"].create_index("orderNumber", unique=True)
    db["orders"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    db["orders"].create_index("status")
    db["admins"].create_index("email", unique=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id."""
    now = utcnow()
    doc = {**data, "createdAt": now, "updatedAt": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def parse_object_id(value: Any, entity: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InvalidIdError(entity, str(value))


def serialize_doc(value: Any) -> Any:
    """Convert a Mongo document into its JSON projection.

    ``_id`` becomes ``id``; ObjectIds become strings and datetimes ISO strings,
    at any nesting depth.
    """
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value
