from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pymongo import MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _connect() -> Optional[Database]:
    try:
        client: MongoClient = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=3000, tz_aware=True)
        return client[settings.DATABASE_NAME]
    except Exception as e:
        logger.error("Could not configure database client: %s", e)
        return None


db: Optional[Database] = _connect()


def create_document(collection_name: str, data: dict[str, Any]) -> str:
    if db is None:
        raise RuntimeError("Database not configured")
    now = now_utc()
    doc = {**data, "created_at": now, "updated_at": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: dict[str, Any] | None = None, limit: int = 100) -> list[dict[str, Any]]:
    if db is None:
        raise RuntimeError("Database not configured")
    cursor = db[collection_name].find(filter_dict or {}).limit(limit)
    docs = []
    for d in cursor:
        d["id"] = str(d.pop("_id"))
        docs.append(d)
    return docs
