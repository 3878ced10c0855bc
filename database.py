"""
Database Helper Functions

MongoDB helper functions used by the services and route handlers.
Collections are named after the lowercase schema class: User -> "user", Book -> "book", Order -> "order".
"""

from pymongo import MongoClient
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
from typing import Union, Optional, Dict, Any, List
from pydantic import BaseModel

import config

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def _ensure_db():
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")


def collection(name: str):
    _ensure_db()
    return db[name]


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id from a path or body; malformed ids become None so callers can answer 404."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    """Insert a single document with timestamps"""
    _ensure_db()

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = datetime.now(timezone.utc)
    data_dict['created_at'] = now
    data_dict['updated_at'] = now

    result = db[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    """Get documents from collection"""
    _ensure_db()
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document_by_id(collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
    """Get a single document by id; unknown or malformed ids return None"""
    _ensure_db()
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    return db[collection_name].find_one({"_id": oid})


def get_documents_by_ids(collection_name: str, ids: List[Any]) -> Dict[ObjectId, dict]:
    """Fetch many documents in one query, keyed by _id"""
    _ensure_db()
    oids = [oid for oid in (to_object_id(i) for i in ids) if oid is not None]
    if not oids:
        return {}
    return {doc["_id"]: doc for doc in db[collection_name].find({"_id": {"$in": oids}})}


def update_document(collection_name: str, doc_id: Any, data: dict) -> bool:
    """Update a document by id with $set and updated_at; returns whether it matched"""
    _ensure_db()
    oid = to_object_id(doc_id)
    if oid is None:
        return False
    data = data.copy()
    data['updated_at'] = datetime.now(timezone.utc)
    res = db[collection_name].update_one({"_id": oid}, {"$set": data})
    return res.matched_count > 0


def delete_document(collection_name: str, doc_id: Any) -> bool:
    """Delete a document by id"""
    _ensure_db()
    oid = to_object_id(doc_id)
    if oid is None:
        return False
    res = db[collection_name].delete_one({"_id": oid})
    return res.deleted_count > 0


def serialize_doc(doc: Any) -> Any:
    """Make a document JSON friendly: `_id` becomes `id` and ObjectIds become strings."""
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, dict):
        out = {}
        for key, value in doc.items():
            out["id" if key == "_id" else key] = serialize_doc(value)
        return out
    return doc
