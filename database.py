"""
MongoDB access for the workshop backend.

`db` is None when DATABASE_URL is not set; every helper goes through
`collection()` so callers get a 500 instead of an AttributeError.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "workshop")
TRANSACTIONS_ENABLED = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL, retryWrites=True, retryReads=True)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    # naive UTC, matching what pymongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")


def collection(name: str):
    ensure_db()
    return db[name]


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID format")


def with_id(doc):
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a document, stamping created_at, and return its id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    doc.setdefault("created_at", utcnow())
    result = collection(collection_name).insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[list] = None) -> List[dict]:
    cursor = collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [with_id(d) for d in cursor]


def get_or_404(collection_name: str, id_str: str, label: str, session=None) -> dict:
    doc = collection(collection_name).find_one({"_id": oid(id_str)}, session=session)
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def next_sequence(name: str, session=None) -> int:
    counter = collection("counter").find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return int(counter["value"])


def run_transaction(callback: Callable[[Any], Any]):
    """Run callback(session) as one multi-document transaction.

    The driver retries the whole callback on transient errors and retries the
    commit on unknown results. With transactions disabled the callback runs
    with session=None against the plain collections.
    """
    ensure_db()
    if not TRANSACTIONS_ENABLED:
        return callback(None)
    with client.start_session() as session:
        return session.with_transaction(callback)


def ensure_indexes():
    """Unique keys the API relies on. Safe to run on every startup."""
    ensure_db()
    db.user.create_index("email", unique=True)
    db.product.create_index("sku", unique=True, partialFilterExpression={"sku": {"$type": "string"}})
    db.vehicle.create_index("plate", unique=True)
    db.serviceorder.create_index([("customer_id", 1), ("status", 1)])
    db.serviceorder.create_index("vehicle_plate")
    db.ledgerentry.create_index("date")
    logger.info("Indexes ensured on database %s", db.name)
