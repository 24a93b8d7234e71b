"""
MongoDB access helpers.

Each Pydantic schema in schemas.py is stored in the collection named after
the lowercased class name (Product -> "product"). The module-level ``db``
is created lazily by pymongo, so importing this module never blocks on a
connection.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from settings import settings

client = MongoClient(settings.DATABASE_URL)
db = client[settings.DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def collection(name: str):
    return db[name]


UNIQUE_INDEXES = (
    ("user", "email"),
    ("product", "slug"),
    ("cart", "user_id"),
)


def ensure_indexes() -> None:
    """Create the unique indexes the services rely on. Idempotent."""
    for collection_name, field in UNIQUE_INDEXES:
        db[collection_name].create_index([(field, ASCENDING)], unique=True)


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def is_object_id(value: str) -> bool:
    return ObjectId.is_valid(value) and len(value) == 24


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, id_str: str) -> Optional[Dict[str, Any]]:
    return db[collection_name].find_one({"_id": to_object_id(id_str)})


def update_document(collection_name: str, id_str: str, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    changes = {**changes, "updated_at": utcnow()}
    oid = to_object_id(id_str)
    res = db[collection_name].update_one({"_id": oid}, {"$set": changes})
    if res.matched_count == 0:
        return None
    return db[collection_name].find_one({"_id": oid})


def delete_document(collection_name: str, id_str: str) -> bool:
    res = db[collection_name].delete_one({"_id": to_object_id(id_str)})
    return res.deleted_count > 0


def serialize_doc(doc):
    """Make a Mongo document JSON friendly: ``_id`` becomes ``id`` and
    nested ObjectIds/datetimes become strings."""
    if not doc:
        return doc
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    out = {}
    for k, v in dict(doc).items():
        if k == "_id":
            k = "id"
        out[k] = _serialize_value(v)
    return out


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value
