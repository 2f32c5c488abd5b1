"""
MongoDB access for the order engine.

Collections are named after the lowercase schema class (see schemas.py):
``order``, ``coupon``, ``cart``, ``product``, ``user``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info(f"Using MongoDB database '{DATABASE_NAME}'")
else:
    logger.warning("DATABASE_URL / DATABASE_NAME not set, database unavailable")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form BSON dates come back in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _resolve(database: Optional[Database]) -> Database:
    if database is not None:
        return database
    if db is None:
        raise RuntimeError("Database not configured")
    return db


def create_document(
    collection_name: str,
    data: Dict[str, Any],
    database: Optional[Database] = None,
) -> str:
    """Insert into ``collection_name`` on ``database``, or the configured db."""
    database = _resolve(database)
    now = utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    skip: int = 0,
    limit: int = 0,
    database: Optional[Database] = None,
) -> List[Dict[str, Any]]:
    database = _resolve(database)
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the engine's atomic updates rely on."""
    database["order"].create_index([("id", ASCENDING)], unique=True)
    database["order"].create_index([("idempotency_key", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["cart"].create_index([("user_id", ASCENDING)])
    database["product"].create_index([("id", ASCENDING)])
