"""
Database connection and helpers

MongoDB connection is configured from the DATABASE_URL and DATABASE_NAME
environment variables. When either is missing, `db` stays None and routes
answer with "Database not available".
"""

import os
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the active database handle."""
    return db


def ensure_indexes(database) -> None:
    database["reviews"].create_index([("book_id", ASCENDING), ("approved", ASCENDING)])
    database["reviews"].create_index([("user_email", ASCENDING), ("timestamp", DESCENDING)])
    # bookId -> orders lookup used by the cascade delete
    database["orders"].create_index("items.book_id")
    database["orders"].create_index([("user_email", ASCENDING), ("timestamp", DESCENDING)])
    database["comments"].create_index([("book_title", ASCENDING), ("timestamp", ASCENDING)])


def create_document(collection_name: str, data: Any, database=None) -> str:
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    if target is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


class MongoKeyValue(MutableMapping):
    """String key-value records stored one per document in a collection."""

    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, key: str) -> str:
        doc = self.collection.find_one({"_id": key})
        if doc is None:
            raise KeyError(key)
        return doc["value"]

    def __setitem__(self, key: str, value: str) -> None:
        self.collection.update_one({"_id": key}, {"$set": {"value": value}}, upsert=True)

    def __delitem__(self, key: str) -> None:
        res = self.collection.delete_one({"_id": key})
        if res.deleted_count == 0:
            raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        return self.collection.count_documents({"_id": key}, limit=1) > 0

    def __iter__(self) -> Iterator[str]:
        return (doc["_id"] for doc in self.collection.find({}, {"_id": 1}))

    def __len__(self) -> int:
        return self.collection.count_documents({})
