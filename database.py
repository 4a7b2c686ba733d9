"""
Database helpers (MongoDB via pymongo).

`db` is the configured database or None when DATABASE_URL / DATABASE_NAME
are not set. Service functions take the database as their first argument so
tests can hand in any pymongo-compatible database.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

import config
from errors import ValidationError

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def optional_db():
    return db


def get_db(database=Depends(optional_db)):
    if database is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str, label: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy a stored document into a JSON friendly dict with a string `id`."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        else:
            out[key] = value
    out.pop("hashed_password", None)
    return out


def create_document(database, collection_name: str, data) -> str:
    """Insert a pydantic model or dict, stamping created_at / updated_at."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def next_sequence(database, name: str) -> int:
    """Atomically bump and return a named counter."""
    counter = database["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["value"]


def ensure_indexes(database) -> None:
    database["user"].create_index("username", unique=True)
    database["user"].create_index("email", unique=True)
    database["product"].create_index("sku", unique=True)
    database["product"].create_index([("is_active", ASCENDING), ("created_at", DESCENDING)])
    database["license_key"].create_index("key_value", unique=True)
    database["license_key"].create_index([("product_id", ASCENDING), ("is_used", ASCENDING)])
    database["cart_item"].create_index(
        [("user_id", ASCENDING), ("tenant_id", ASCENDING), ("product_id", ASCENDING)],
        unique=True,
    )
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("tenant_id", ASCENDING)])
    database["order_item"].create_index("order_id")
    database["category"].create_index("path")
    database["user_pricing"].create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
    )
    database["support_ticket"].create_index([("tenant_id", ASCENDING), ("user_id", ASCENDING)])
