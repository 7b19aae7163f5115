"""
MongoDB connection

Holds the process-wide client and database handles, index setup, and the
``create_document`` / ``get_documents`` helpers the data-access layer builds on.
Every helper takes an optional database handle and falls back to ``db``.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient

from config import settings

logger = logging.getLogger(__name__)

client: Optional[AsyncMongoClient] = None
db = None


def connect(database_url: Optional[str] = None, database_name: Optional[str] = None):
    """Create the client. Connections are opened lazily on first use."""
    global client, db

    url = database_url or settings.database_url
    if not url:
        logger.warning("DATABASE_URL is not set; running without a database")
        return None
    client = AsyncMongoClient(url, tz_aware=True)
    db = client[database_name or settings.database_name]
    logger.info("MongoDB client created for database %s", db.name)
    return db


async def disconnect() -> None:
    global client, db

    if client is not None:
        await client.close()
    client = None
    db = None


def _database(handle=None):
    target = handle if handle is not None else db
    if target is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return target


async def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], handle=None) -> str:
    """Insert one document and return its id as a string. ``data`` is not mutated."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    result = await _database(handle)[collection_name].insert_one(doc)
    return str(result.inserted_id)


async def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[Sequence[Tuple[str, int]]] = None,
    skip: int = 0,
    limit: int = 0,
    handle=None,
) -> List[Dict[str, Any]]:
    cursor = _database(handle)[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(list(sort))
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return await cursor.to_list(length=None)


async def ensure_indexes(handle=None) -> None:
    target = handle if handle is not None else db
    if target is None:
        return
    await target["user"].create_index([("email", ASCENDING)], unique=True)
    await target["conversation"].create_index([("participants", ASCENDING)])
    await target["conversation"].create_index(
        [("direct_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_group": False},
        name="unique_direct_pair",
    )
    await target["message"].create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
    await target["message"].create_index([("sender_id", ASCENDING)])
    logger.info("MongoDB indexes ensured")
