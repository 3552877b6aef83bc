"""
MongoDB access for the ordering service.

Collections are named after the lowercase schema class (Order -> "order",
ChatMessage -> "chatmessage"). Helpers take the database explicitly so the
stores can run against any pymongo-compatible handle.
"""

import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFound, TransientIOError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "15000"))

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency; tests override it with an in-memory database."""
    if db is None:
        raise TransientIOError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def current_time() -> datetime:
    # Mongo keeps millisecond precision; truncate up front so stored and
    # in-memory values compare equal.
    now = datetime.now()
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_object_id(value: str, what: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a stored document, exposing ``_id`` as a string ``id``."""
    if doc is None:
        return None
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict], now: Optional[datetime] = None) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now or current_time()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def get_setting(database: Database, key: str, default: Any = None) -> Any:
    doc = database["sitesetting"].find_one({"key": key})
    if doc is None:
        return default
    return doc.get("value", default)


def ensure_indexes(database: Database) -> None:
    database["order"].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING)])
    database["chatmessage"].create_index([("order_id", ASCENDING), ("timestamp", ASCENDING)])
    database["chatreadstatus"].create_index([("order_id", ASCENDING), ("role", ASCENDING)], unique=True)
    database["ordermodification"].create_index([("order_id", ASCENDING), ("timestamp", DESCENDING)])
    database["voucher"].create_index([("code", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["ratelimit"].create_index([("user_id", ASCENDING), ("endpoint", ASCENDING), ("window_start", ASCENDING)])
