"""
Database connection

The Mongo client is created once at import time from DATABASE_URL and
DATABASE_NAME. When DATABASE_URL is not set, `db` stays None and the API
answers database-backed routes with 503.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient

load_dotenv()

logger = logging.getLogger("pharma.database")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "pharma-care")

_client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_indexes(database) -> None:
    """Unique keys that replace the check-then-insert duplicate guards."""
    database["users"].create_index([("email", ASCENDING)], unique=True)
    database["carts"].create_index(
        [("email", ASCENDING), ("medicineId", ASCENDING)], unique=True
    )
    database["categories"].create_index([("name", ASCENDING)], unique=True)
    database["orders"].create_index([("transactionId", ASCENDING)], unique=True)
    database["medicines"].create_index([("seller.email", ASCENDING)])
    logger.info("indexes ensured on %s", database.name)


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    data = dict(data)
    data.setdefault("created_at", utcnow())
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
