"""
MongoDB access

The connection is configured from DATABASE_URL and DATABASE_NAME. When either
is missing `db` stays None and the helpers refuse to run.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def now() -> datetime:
    # naive UTC, truncated to the millisecond precision of BSON dates
    current = datetime.now(timezone.utc).replace(tzinfo=None)
    return current.replace(microsecond=current.microsecond // 1000 * 1000)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()
    stamp = now()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", -1)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database):
    database["transaction"].create_index([("payment_id", ASCENDING)], unique=True)
    database["oauth_state"].create_index([("state", ASCENDING)], unique=True)
    database["subscription"].create_index([("payment_id", ASCENDING)], unique=True)
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["product"].create_index([("seller_id", ASCENDING)])
    database["chat"].create_index([("product_id", ASCENDING), ("buyer_id", ASCENDING), ("seller_id", ASCENDING)])
    logger.info("Database indexes ensured")
