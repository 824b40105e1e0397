"""
MongoDB access helpers.

`db` is the configured database handle, or None when DATABASE_URL /
DATABASE_NAME are not set. The application reads it at startup, so tests can
swap in another handle before the app starts.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)


def connect(url: Optional[str] = None, name: Optional[str] = None) -> Optional[Database]:
    url = url or config.DATABASE_URL
    name = name or config.DATABASE_NAME
    if not url or not name:
        return None
    client = MongoClient(url)
    return client[name]


db = connect()


def now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def query_time(value: datetime) -> datetime:
    """Naive UTC, the form BSON stores and range filters compare against."""
    return as_utc(value).replace(tzinfo=None)


def to_object_id(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[Dict[str, Any], Any]) -> str:
    """Insert a document with created/updated timestamps and return its id."""
    if hasattr(data, "model_dump"):
        data = data.model_dump()
    doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, datetime):
            d[k] = as_utc(v).isoformat()
        elif isinstance(v, dict):
            d[k] = serialize(v)
    return d


def ensure_indexes(database: Database) -> None:
    database["account"].create_index([("email", ASCENDING)], unique=True)
    for name in ("waste_request", "bulk_request"):
        database[name].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])
        database[name].create_index([("collector_id", ASCENDING), ("status", ASCENDING)])
    database["expense"].create_index([("owner_id", ASCENDING), ("date", DESCENDING)])
    database["scheduled_pickup"].create_index([("owner_id", ASCENDING)])
    database["collector_profile"].create_index([("account_id", ASCENDING)], unique=True)
    logger.info("Database indexes ensured on %s", database.name)
