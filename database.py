"""
MongoDB connection and document helpers.

The collection for a schema is its lowercase class name. Documents store
references to other documents as hex id strings.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "pintxopote")

# MongoClient connects lazily, so importing this module never blocks.
client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]

COLLECTIONS = ("user", "pub", "pintxopote", "order")


def get_db() -> Database:
    """
    Dependency for getting the database handle.
    Use in FastAPI route dependencies.
    """
    return db


def utcnow() -> datetime:
    """Naive UTC now, which is what MongoDB hands back for stored dates."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["pintxopote"].create_index([("pub", ASCENDING), ("date", ASCENDING)])
    database["order"].create_index([("user", ASCENDING)])
    database["order"].create_index([("pintxopote", ASCENDING)])


def reset_collections(database: Database) -> None:
    for name in COLLECTIONS:
        database[name].delete_many({})


def collection_name(data: BaseModel) -> str:
    return type(data).__name__.lower()


def create_document(database: Database, data: BaseModel, _id: Optional[ObjectId] = None) -> str:
    doc = data.model_dump()
    if _id is not None:
        doc["_id"] = _id
    res = database[collection_name(data)].insert_one(doc)
    logger.debug("Inserted %s %s", collection_name(data), res.inserted_id)
    return str(res.inserted_id)


def get_documents(database: Database, collection: str, query: Optional[Dict[str, Any]] = None, limit: int = 0) -> List[Dict]:
    cursor = database[collection].find(query or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
