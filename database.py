"""
MongoDB access

One process-wide MongoClient (thread-safe, lazily connecting). ``db`` is None
when DATABASE_URL is not configured; routes then answer 500 through get_db().
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from exceptions import StorageError
from logging_config import logger

ALUMNI = "alumni"
USERS = "users"
SETTINGS = "settings"
ACADEMIC_UNITS = "academic_units"
CONTACTS = "contacts"

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(
        settings.DATABASE_URL,
        maxPoolSize=10,
        serverSelectionTimeoutMS=5000,
        socketTimeoutMS=45000,
        tz_aware=True,
    )
    db = client[settings.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL is not set; database features are unavailable")


def get_db() -> Database:
    """FastAPI dependency returning the configured database"""
    if db is None:
        raise StorageError("Database not configured", operation="connect")
    return db


def ensure_indexes(database: Database) -> None:
    """Create the unique indexes that are the authoritative uniqueness checks"""
    database[ALUMNI].create_index([("registrationNumber", ASCENDING)], unique=True)
    database[ALUMNI].create_index([("createdAt", ASCENDING)])
    database[USERS].create_index([("email", ASCENDING)], unique=True)
    database[SETTINGS].create_index([("userId", ASCENDING)], unique=True)
    database[ACADEMIC_UNITS].create_index([("name", ASCENDING)], unique=True)
    database[CONTACTS].create_index([("createdAt", ASCENDING)])


def create_document(database: Database, collection_name: str,
                    data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    """Insert a document stamped with createdAt/updatedAt and return it with its _id"""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    result = database[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(database: Database, collection_name: str,
                  filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List[Any]] = None,
                  limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
